"""Outbox of best-effort secondary updates that still need to land."""

from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field

CompensationKind = Literal["advance_transaction", "link_payment"]


class CompensationTask(Document):
    kind: CompensationKind
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "done", "dead"] = "pending"
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "compensation_tasks"
        indexes = [[("status", 1), ("next_attempt_at", 1)], [("user_id", 1)]]
