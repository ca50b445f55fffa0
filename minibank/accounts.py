"""
Account Management Module

Holds account records keyed by a globally unique account id. Besides plain
record management the store exposes the balance primitives the ledger
engine builds on: a locking balance read and signed balance-delta
application, both meant to run inside the caller's unit of work.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Any
import uuid

from .errors import AccountNotFound, DuplicateAccount, InsufficientBalance, ValidationError
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


def new_account_id() -> str:
    """Opaque, collision-free account identifier"""
    return uuid.uuid4().hex


@dataclass
class Account(StorageRecord):
    """
    Ledger account

    Name and email never change after creation. Balance is an integer in the
    smallest currency unit and is only ever changed through ``apply_delta``.
    """
    first_name: str
    last_name: str
    email: str
    balance: int = 0

    def __post_init__(self):
        if isinstance(self.balance, bool) or not isinstance(self.balance, int):
            raise ValueError("Account balance must be an integer")
        if self.balance < 0:
            raise ValueError("Account balance cannot be negative")

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for API responses"""
        return {
            "account_id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "balance": self.balance,
            "created_at": self.created_at.isoformat(),
        }


class AccountStore(ABC):
    """Capabilities the ledger engine needs from an account store"""

    @abstractmethod
    def lookup(self, account_id: str) -> Account:
        """Return the account or raise AccountNotFound"""

    @abstractmethod
    def exists(self, account_id: str) -> bool:
        """Check whether an account id is known"""

    @abstractmethod
    def balance_for_update(self, account_id: str) -> int:
        """Read the current balance with a lock held until the unit of work ends"""

    @abstractmethod
    def apply_delta(self, account_id: str, signed_amount: int) -> Account:
        """Adjust the balance by a signed amount inside the caller's unit of work"""

    @abstractmethod
    def exists_by_email(self, email: str) -> bool:
        """Check whether an account is already registered for an email"""


class StorageAccountStore(AccountStore):
    """Account store backed by a StorageInterface table"""

    def __init__(self, storage: StorageInterface, table_name: str = "accounts",
                 email_table: str = "account_emails"):
        self.storage = storage
        self.table_name = table_name
        self.email_table = email_table
        self.logger = get_logger("minibank.accounts")

    def create_account(self, first_name: str, last_name: str, email: str) -> Account:
        """
        Create and persist a new account with a zero balance

        Raises:
            ValidationError: If a name or the email is empty
            DuplicateAccount: If an account already exists for the email
        """
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        email = (email or "").strip().lower()

        if not first_name:
            raise ValidationError("first_name is required", field="first_name")
        if not last_name:
            raise ValidationError("last_name is required", field="last_name")
        if not email or "@" not in email:
            raise ValidationError("a valid email is required", field="email")

        now = datetime.now(timezone.utc)
        account = Account(
            id=new_account_id(),
            created_at=now,
            updated_at=now,
            first_name=first_name,
            last_name=last_name,
            email=email,
            balance=0
        )

        # The email row is keyed by the address, so two units registering the
        # same email contend on one primary key and the second one loses
        with self.storage.atomic():
            claimed = self.storage.insert_if_absent(
                self.email_table, email, {'account_id': account.id}
            )
            if not claimed or self.exists_by_email(email):
                raise DuplicateAccount(email)
            self.add(account)

        log_action(
            self.logger, "info", "Account created",
            account_id=account.id, action="create_account",
            resource=f"account:{account.id}"
        )
        return account

    def add(self, account: Account) -> None:
        """Persist a new account record"""
        self.storage.save(self.table_name, account.id, account.to_dict())

    def lookup(self, account_id: str) -> Account:
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise AccountNotFound(account_id)
        return Account.from_dict(data)

    def exists(self, account_id: str) -> bool:
        return self.storage.exists(self.table_name, account_id)

    def exists_by_email(self, email: str) -> bool:
        email = (email or "").strip().lower()
        return len(self.storage.find(self.table_name, {"email": email})) > 0

    def list_all(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def delete(self, account_id: str) -> bool:
        """Remove an account and release its email; returns False if it did not exist"""
        with self.storage.atomic():
            data = self.storage.load_for_update(self.table_name, account_id)
            if data is None:
                return False
            self.storage.delete(self.email_table, data['email'])
            deleted = self.storage.delete(self.table_name, account_id)
        if deleted:
            log_action(
                self.logger, "info", "Account deleted",
                account_id=account_id, action="delete_account",
                resource=f"account:{account_id}"
            )
        return deleted

    def _load_locked(self, account_id: str) -> Account:
        data = self.storage.load_for_update(self.table_name, account_id)
        if not data:
            raise AccountNotFound(account_id)
        return Account.from_dict(data)

    def balance_for_update(self, account_id: str) -> int:
        return self._load_locked(account_id).balance

    def apply_delta(self, account_id: str, signed_amount: int) -> Account:
        """
        Adjust an account balance by a signed amount

        Must run inside the caller's unit of work so the change rolls back
        with it.

        Raises:
            AccountNotFound: If the account no longer exists
            InsufficientBalance: If the resulting balance would be negative
        """
        if not self.storage.in_transaction:
            raise RuntimeError("apply_delta() must run inside a unit of work")

        account = self._load_locked(account_id)
        new_balance = account.balance + signed_amount
        if new_balance < 0:
            raise InsufficientBalance(account_id, account.balance, -signed_amount)

        account.balance = new_balance
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, account.id, account.to_dict())

        self.logger.debug(f"Applied delta {signed_amount} to account {account_id}")
        return account
