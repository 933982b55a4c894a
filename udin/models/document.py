from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

DocumentStatus = Literal["uploaded", "processing", "verified", "rejected"]


def active_dedup_key(user_id: PydanticObjectId | str, content_hash: str) -> str:
    return f"{user_id}:{content_hash}"


class DocumentRecord(Document):
    """An accepted upload, addressed by its UDIN."""

    user_id: Indexed(PydanticObjectId)
    udin: Indexed(str, unique=True)
    file_name: str
    original_name: str
    file_type: str
    file_size: int
    storage_path: str
    content_hash: Indexed(str)
    # "<user>:<hash>" while active, tombstoned on soft delete; unique so that
    # two concurrent identical uploads cannot both commit.
    dedup_key: Indexed(str, unique=True)
    status: DocumentStatus = "uploaded"
    document_type_id: str | None = None
    tier: str | None = None
    upload_id: str | None = None
    payment_id: PydanticObjectId | None = None
    verification_date: datetime | None = None
    rejection_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    upload_date: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "documents"
        indexes = [
            [("user_id", 1), ("upload_date", -1)],
            [("status", 1)],
        ]
