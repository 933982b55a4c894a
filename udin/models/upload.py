from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

UploadStatus = Literal["processing", "completed", "completed_with_errors", "failed"]


class UploadBatch(Document):
    """Outcome of one multi-file ingestion."""

    upload_id: Indexed(str, unique=True)
    user_id: Indexed(PydanticObjectId)
    status: UploadStatus = "processing"
    file_count: int
    processed_files: int = 0
    errors: list[str] = Field(default_factory=list)
    customer_info: dict[str, Any] = Field(default_factory=dict)
    pricing_snapshot: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "uploads"
        indexes = [[("user_id", 1), ("created_at", -1)], [("status", 1)]]
