"""
Pydantic schemas for API requests
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from ..transactions import TransactionRequest


class CreateAccountRequest(BaseModel):
    first_name: str
    last_name: str
    email: str


class CreateTransactionRequest(BaseModel):
    transaction_type: str = Field(..., description="Transaction kind (self-deposit, transfer)")
    holder_account_id: str
    receiver_account_id: Optional[str] = None
    amount: int = Field(..., description="Amount in the smallest currency unit")
    transaction_date: Optional[datetime] = None

    def to_request(self) -> TransactionRequest:
        return TransactionRequest(
            kind=self.transaction_type,
            holder_account_id=self.holder_account_id,
            receiver_account_id=self.receiver_account_id,
            amount=self.amount,
            transaction_date=self.transaction_date
        )
