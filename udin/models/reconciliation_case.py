from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

CaseKind = Literal["payment_captured_without_deliverable"]


class ReconciliationCase(Document):
    """Money moved but nothing was delivered; an operator has to close it."""

    user_id: PydanticObjectId
    kind: CaseKind = "payment_captured_without_deliverable"
    transaction_id: str | None = None
    payment_id: PydanticObjectId | None = None
    gateway_payment_id: str | None = None
    upload_id: str | None = None
    amount: float | None = None
    reason: str = ""
    status: Literal["open", "refunded", "resolved"] = "open"
    resolution_note: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: datetime | None = None

    class Settings:
        name = "reconciliation_cases"
        indexes = [[("status", 1), ("created_at", -1)]]
