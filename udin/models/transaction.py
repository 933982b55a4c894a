import secrets
import time
from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

TransactionStatus = Literal["initiated", "pending", "paid", "failed", "cancelled", "uploaded", "completed"]
TransactionType = Literal["payment", "refund", "upload"]

TERMINAL_STATUSES = ("completed", "failed", "cancelled")
FAILURE_STATUSES = ("failed", "cancelled")

# Forward order of the happy path; failure states sit outside it.
STATUS_RANK = {
    "initiated": 0,
    "pending": 1,
    "paid": 2,
    "uploaded": 3,
    "completed": 4,
}


class RazorpayData(BaseModel):
    order_id: str | None = None
    payment_id: str | None = None
    signature: str | None = None
    method: str | None = None
    refund_id: str | None = None


class Transaction(Document):
    """Accounting record of one payment attempt (or refund / upload bookkeeping)."""

    transaction_id: Indexed(str, unique=True)
    user_id: Indexed(PydanticObjectId)
    type: TransactionType = "payment"
    provider: str = "razorpay"
    status: TransactionStatus = "initiated"
    amount: float = 0.0  # major units (INR)
    amount_paise: int = 0
    currency: str = "INR"
    description: str | None = None
    items: list[dict[str, Any]] = Field(default_factory=list)
    amounts: dict[str, Any] = Field(default_factory=dict)
    razorpay_data: RazorpayData = Field(default_factory=RazorpayData)
    payment_ref: PydanticObjectId | None = None
    failure_reason: str | None = None
    paid_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    reconciliation_status: Literal["pending", "matched", "unmatched"] = "pending"
    notes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("razorpay_data.order_id", 1)],
            [("type", 1), ("status", 1)],
        ]

    @staticmethod
    def generate_transaction_id() -> str:
        return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
