"""
Transaction endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .auth import LedgerSystem, get_ledger_system
from .errors import to_http_exception
from .schemas import CreateTransactionRequest
from ..errors import LedgerError


router = APIRouter()


@router.get("")
def list_transactions(system: LedgerSystem = Depends(get_ledger_system)):
    """List the audit log in insertion order"""
    return {"transactions": [t.to_public_dict() for t in system.audit_log.list_all()]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_transaction(
    request: CreateTransactionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Post a self-deposit or a transfer"""
    try:
        transaction = system.engine.post(request.to_request())
    except LedgerError as e:
        raise to_http_exception(e)
    return transaction.to_public_dict()


@router.get("/integrity")
def verify_audit_integrity(system: LedgerSystem = Depends(get_ledger_system)):
    """Verify the audit log hash chain"""
    return system.audit_log.verify_integrity()


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get a single audit entry"""
    transaction = system.audit_log.get(transaction_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction.to_public_dict()


@router.delete("/{transaction_id}")
def delete_transaction(transaction_id: str):
    """Audit entries are immutable"""
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Transactions are immutable and cannot be deleted"
    )
