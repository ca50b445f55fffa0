"""
Ledger Transaction Engine

Posts transactions against the account store and the audit log. A request
is validated, its accounts are checked for existence, and then every
balance change together with the audit entry happens in one unit of work:
either all of it commits or none of it is visible.

The engine keeps no state and takes no locks of its own between requests.
Serialization of conflicting transfers comes from the storage backend's
unit of work and the locking balance reads of the account store.
"""

from datetime import datetime
from typing import Callable, Optional

from .accounts import AccountStore
from .audit import AuditLog
from .errors import (
    AccountNotFound, DuplicateTransaction, InsufficientBalance, LedgerError, TransientStoreFailure
)
from .storage import StorageInterface
from .transactions import Transaction, TransactionKind, TransactionRequest
from .logging_config import get_logger, log_action


class LedgerEngine:
    """
    Sole writer of balances and audit entries

    States of a request: Received -> Validated -> Committed, or
    Received -> Rejected. Nothing in between is ever persisted.
    """

    def __init__(self, storage: StorageInterface, accounts: AccountStore, audit_log: AuditLog):
        self.storage = storage
        self.accounts = accounts
        self.audit_log = audit_log
        self.logger = get_logger("minibank.ledger")

    def post(self, request: TransactionRequest) -> Transaction:
        """
        Post a transaction request

        Returns:
            The committed Transaction, as written to the audit log

        Raises:
            ValidationError: Malformed request; no unit of work was opened
            AccountNotFound: Holder or receiver does not exist (see ``which``)
            InsufficientBalance: Transfer holder cannot cover the amount
            TransientStoreFailure: The unit of work failed in the backend
        """
        try:
            kind = request.validate()
            self._require_accounts(request, kind)

            if kind == TransactionKind.SELF_DEPOSIT:
                transaction = self._in_unit_of_work(request, lambda: self._post_self_deposit(request, kind))
            else:
                transaction = self._in_unit_of_work(request, lambda: self._post_transfer(request, kind))
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Transaction rejected: {e.message}",
                account_id=request.holder_account_id, action="post_transaction",
                extra={"error": e.code, **e.details()}
            )
            raise

        log_action(
            self.logger, "info", f"Transaction committed: {transaction.kind.value}",
            account_id=transaction.holder_account_id, action="post_transaction",
            resource=f"transaction:{transaction.id}", transaction_id=transaction.id,
            extra={
                "kind": transaction.kind.value,
                "receiver_account_id": transaction.receiver_account_id,
                "amount": transaction.amount,
                "sequence": transaction.sequence
            }
        )
        return transaction

    def self_deposit(self, account_id: str, amount: int,
                     transaction_date: Optional[datetime] = None) -> Transaction:
        """Convenience method for self-deposits"""
        return self.post(TransactionRequest(
            kind=TransactionKind.SELF_DEPOSIT,
            holder_account_id=account_id,
            amount=amount,
            transaction_date=transaction_date
        ))

    def transfer(self, holder_account_id: str, receiver_account_id: str, amount: int,
                 transaction_date: Optional[datetime] = None) -> Transaction:
        """Convenience method for holder-to-receiver transfers"""
        return self.post(TransactionRequest(
            kind=TransactionKind.TRANSFER,
            holder_account_id=holder_account_id,
            receiver_account_id=receiver_account_id,
            amount=amount,
            transaction_date=transaction_date
        ))

    def _require_accounts(self, request: TransactionRequest, kind: TransactionKind) -> None:
        if not self.accounts.exists(request.holder_account_id):
            raise AccountNotFound(request.holder_account_id, which="holder")
        if kind == TransactionKind.TRANSFER and not self.accounts.exists(request.receiver_account_id):
            raise AccountNotFound(request.receiver_account_id, which="receiver")

    def _in_unit_of_work(self, request: TransactionRequest,
                         work: Callable[[], Transaction]) -> Transaction:
        """Run work atomically, translating backend errors into ledger errors"""
        try:
            with self.storage.atomic():
                return work()
        except AccountNotFound as e:
            # Account vanished between the existence check and the unit of work
            which = "receiver" if e.account_id == request.receiver_account_id else "holder"
            raise AccountNotFound(e.account_id, which=which) from e
        except DuplicateTransaction as e:
            # Transaction ids are generated here, a collision is a store fault
            raise TransientStoreFailure("unit_of_work", f"audit append failed: {e.message}") from e
        except LedgerError:
            raise
        except Exception as e:
            raise TransientStoreFailure("unit_of_work", f"storage failure while posting: {e}") from e

    def _post_self_deposit(self, request: TransactionRequest, kind: TransactionKind) -> Transaction:
        self.accounts.apply_delta(request.holder_account_id, request.amount)
        return self.audit_log.append(Transaction.from_request(request, kind))

    def _post_transfer(self, request: TransactionRequest, kind: TransactionKind) -> Transaction:
        holder = request.holder_account_id
        receiver = request.receiver_account_id

        # Lock both rows in a fixed order so opposite transfers cannot deadlock
        balances = {}
        for account_id in sorted((holder, receiver)):
            balances[account_id] = self.accounts.balance_for_update(account_id)

        if balances[holder] < request.amount:
            raise InsufficientBalance(holder, balances[holder], request.amount)

        self.accounts.apply_delta(holder, -request.amount)
        self.accounts.apply_delta(receiver, request.amount)
        return self.audit_log.append(Transaction.from_request(request, kind))
