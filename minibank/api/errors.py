"""
Translation of ledger errors into HTTP errors
"""

from fastapi import HTTPException

from ..errors import (
    LedgerError, ValidationError, AccountNotFound, InsufficientBalance,
    TransientStoreFailure, DuplicateAccount, DuplicateTransaction
)


STATUS_CODES = {
    ValidationError: 422,
    AccountNotFound: 404,
    InsufficientBalance: 409,
    DuplicateAccount: 409,
    DuplicateTransaction: 409,
    TransientStoreFailure: 503,
}


def to_http_exception(error: LedgerError) -> HTTPException:
    """Map a ledger error onto an HTTPException with a structured detail"""
    status_code = 400
    for error_type, code in STATUS_CODES.items():
        if isinstance(error, error_type):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail=error.to_dict())
