import secrets
import time
from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

PaymentStatus = Literal["created", "pending", "paid", "failed", "refunded"]


class Payment(Document):
    """Gateway order -> user, the captured charge and any refund of it."""

    user_id: Indexed(PydanticObjectId)
    document_id: PydanticObjectId | None = None  # None in cart mode
    gateway_order_id: Indexed(str, unique=True)
    gateway_payment_id: str | None = None
    signature: str | None = None
    amount: float  # major units
    amount_paise: int
    currency: str = "INR"
    status: PaymentStatus = "created"
    payment_method: str | None = None
    description: str | None = None
    receipt: str | None = None
    notes: dict[str, str] = Field(default_factory=dict)
    transaction_id: str | None = None
    failure_reason: str | None = None
    fees: int | None = None  # paise, as reported by the gateway
    net_amount: float | None = None
    refund_id: str | None = None
    refund_amount: float | None = None
    refund_reason: str | None = None
    payment_date: datetime | None = None
    refund_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "payments"
        indexes = [
            [("gateway_payment_id", 1)],
            [("status", 1)],
            [("payment_date", -1)],
        ]

    @staticmethod
    def generate_receipt() -> str:
        return f"UDIN_{int(time.time() * 1000)}_{secrets.randbelow(1000):03d}"
