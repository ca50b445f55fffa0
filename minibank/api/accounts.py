"""
Account management endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .auth import LedgerSystem, get_ledger_system, create_access_token, require_account_owner
from .errors import to_http_exception
from .schemas import CreateAccountRequest
from ..errors import LedgerError


router = APIRouter()


@router.get("")
def list_accounts(system: LedgerSystem = Depends(get_ledger_system)):
    """List all accounts"""
    return {"accounts": [account.to_public_dict() for account in system.accounts.list_all()]}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create a new account and issue its bearer token"""
    try:
        account = system.accounts.create_account(
            first_name=request.first_name,
            last_name=request.last_name,
            email=request.email
        )
    except LedgerError as e:
        raise to_http_exception(e)

    return {
        "account": account.to_public_dict(),
        "token": create_access_token(account.id, system.config),
        "message": "Account created successfully"
    }


@router.get("/{account_id}")
def get_account(
    account_id: str = Depends(require_account_owner),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get account details"""
    try:
        account = system.accounts.lookup(account_id)
    except LedgerError as e:
        raise to_http_exception(e)
    return account.to_public_dict()


@router.delete("/{account_id}")
def delete_account(
    account_id: str = Depends(require_account_owner),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Delete an account"""
    if not system.accounts.delete(account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    return {"account_id": account_id, "message": "Account deleted successfully"}


@router.get("/{account_id}/transactions")
def get_account_transactions(
    account_id: str = Depends(require_account_owner),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get transaction history for account"""
    if not system.accounts.exists(account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    transactions = system.audit_log.list_for_account(account_id)
    return {"transactions": [t.to_public_dict() for t in transactions]}
