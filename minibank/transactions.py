"""
Transaction Types Module

Kinds, statuses, the incoming transaction request and the committed
transaction record written to the audit log.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional, Any
from enum import Enum
import uuid

from .errors import ValidationError
from .storage import StorageRecord


# Receiver field of a self-deposit
NO_RECEIVER = "-"


class TransactionKind(Enum):
    """Kinds of ledger transactions"""
    SELF_DEPOSIT = "self-deposit"  # Credit the holder, no counterparty
    TRANSFER = "transfer"          # Debit the holder, credit the receiver

    @classmethod
    def _missing_(cls, value):
        # Legacy clients send "self" for deposits
        if value == "self":
            return cls.SELF_DEPOSIT
        return None


class TransactionStatus(Enum):
    """Outcome recorded on a transaction"""
    SUCCESSFUL = "successful"
    FAILED = "failed"


def new_transaction_id() -> str:
    """Opaque, collision-free transaction identifier"""
    return uuid.uuid4().hex


@dataclass
class TransactionRequest:
    """
    A request to post a transaction

    ``kind`` may be given as a TransactionKind or its wire value. The
    transaction date is the caller's logical date and defaults to the time
    the transaction is created.
    """
    kind: Any
    holder_account_id: str
    amount: Any
    receiver_account_id: Optional[str] = None
    transaction_date: Optional[datetime] = None

    def validate(self) -> TransactionKind:
        """
        Check the request shape and return its normalized kind

        Raises:
            ValidationError: On an unknown kind, a missing account id, a
                non-integer or non-positive amount, or a transfer to the
                holder's own account
        """
        try:
            kind = TransactionKind(self.kind)
        except ValueError:
            raise ValidationError(f"unknown transaction kind: {self.kind!r}", field="kind")

        if not self.holder_account_id:
            raise ValidationError("holder account id is required", field="holder_account_id")

        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValidationError("amount must be an integer", field="amount")
        if self.amount <= 0:
            raise ValidationError("amount must be positive", field="amount")

        if kind == TransactionKind.TRANSFER:
            if not self.receiver_account_id or self.receiver_account_id == NO_RECEIVER:
                raise ValidationError("receiver account id is required for transfers",
                                      field="receiver_account_id")
            if self.receiver_account_id == self.holder_account_id:
                raise ValidationError("holder and receiver must be different accounts",
                                      field="receiver_account_id")

        return kind


@dataclass
class Transaction(StorageRecord):
    """
    Committed ledger transaction, as written to the audit log

    ``sequence``, ``previous_hash`` and ``current_hash`` are assigned by the
    audit log on append and place the entry in its hash chain.
    """
    kind: TransactionKind
    holder_account_id: str
    receiver_account_id: str
    amount: int
    status: TransactionStatus
    transaction_date: datetime
    sequence: int = 0
    previous_hash: str = ""
    current_hash: str = ""

    @classmethod
    def from_request(cls, request: TransactionRequest, kind: TransactionKind,
                     status: TransactionStatus = TransactionStatus.SUCCESSFUL) -> 'Transaction':
        """Build a new transaction for an already validated request"""
        now = datetime.now(timezone.utc)
        receiver = request.receiver_account_id
        if kind == TransactionKind.SELF_DEPOSIT:
            receiver = NO_RECEIVER

        return cls(
            id=new_transaction_id(),
            created_at=now,
            updated_at=now,
            kind=kind,
            holder_account_id=request.holder_account_id,
            receiver_account_id=receiver,
            amount=request.amount,
            status=status,
            transaction_date=request.transaction_date or now
        )

    @property
    def has_receiver(self) -> bool:
        return self.receiver_account_id != NO_RECEIVER

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['kind'] = self.kind.value
        result['status'] = self.status.value
        result['transaction_date'] = self.transaction_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Create Transaction from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data.get('kind'), str):
            data['kind'] = TransactionKind(data['kind'])
        if isinstance(data.get('status'), str):
            data['status'] = TransactionStatus(data['status'])
        if isinstance(data.get('transaction_date'), str):
            data['transaction_date'] = datetime.fromisoformat(data['transaction_date'])
        return super().from_dict(data)

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for API responses"""
        return {
            "transaction_id": self.id,
            "transaction_type": self.kind.value,
            "holder_account_id": self.holder_account_id,
            "receiver_account_id": self.receiver_account_id,
            "amount": self.amount,
            "status": self.status.value,
            "transaction_date": self.transaction_date.isoformat(),
            "created_at": self.created_at.isoformat(),
            "sequence": self.sequence,
        }
