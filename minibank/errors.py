"""
Ledger Error Taxonomy

Typed failures raised by the account store, the audit log and the ledger
engine. Every error carries a machine-readable code and the structured
fields a caller needs to render it, so the HTTP layer never has to parse
messages.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        """Structured fields specific to this error"""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.code, "message": self.message}
        result.update(self.details())
        return result


class ValidationError(LedgerError):
    """Malformed request, rejected before any unit of work is opened"""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def details(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}


class AccountNotFound(LedgerError):
    """
    Referenced account does not exist.

    ``which`` names the side of the request that is missing: ``holder``,
    ``receiver`` or ``account`` for plain lookups.
    """

    code = "account_not_found"

    def __init__(self, account_id: str, which: str = "account"):
        super().__init__(f"{which} account not found: {account_id}")
        self.account_id = account_id
        self.which = which

    def details(self) -> Dict[str, Any]:
        return {"which": self.which, "account_id": self.account_id}


class InsufficientBalance(LedgerError):
    """Debit would take the account below zero"""

    code = "insufficient_balance"

    def __init__(self, account_id: str, balance: int, amount: int):
        super().__init__(
            f"insufficient balance in account {account_id}: "
            f"balance {balance}, requested {amount}"
        )
        self.account_id = account_id
        self.balance = balance
        self.amount = amount

    def details(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "balance": self.balance,
            "amount": self.amount,
        }


class TransientStoreFailure(LedgerError):
    """The unit of work could not begin, commit or roll back"""

    code = "transient_store_failure"

    def __init__(self, stage: str, message: Optional[str] = None):
        super().__init__(message or f"storage failure during {stage}")
        self.stage = stage

    def details(self) -> Dict[str, Any]:
        return {"stage": self.stage}


class DuplicateAccount(LedgerError):
    """An account is already registered for this email"""

    code = "duplicate_account"

    def __init__(self, email: str):
        super().__init__(f"account already exists for email: {email}")
        self.email = email

    def details(self) -> Dict[str, Any]:
        return {"email": self.email}


class DuplicateTransaction(LedgerError):
    """Audit entry with this transaction id was already written"""

    code = "duplicate_transaction"

    def __init__(self, transaction_id: str):
        super().__init__(f"transaction already recorded: {transaction_id}")
        self.transaction_id = transaction_id

    def details(self) -> Dict[str, Any]:
        return {"transaction_id": self.transaction_id}
