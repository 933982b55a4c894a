"""Document lookup, soft delete and back-office status changes."""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId

from udin.core.audit import log_event
from udin.core.exceptions import BadRequestError, NotFoundError
from udin.core.logging import get_logger
from udin.models.document import DocumentRecord, DocumentStatus

log = get_logger(__name__)

_ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "uploaded": ("processing", "rejected"),
    "processing": ("verified", "rejected"),
    "verified": (),
    "rejected": (),
}


def serialize_document(doc: DocumentRecord) -> dict[str, Any]:
    return {
        "id": str(doc.id),
        "udin": doc.udin,
        "fileName": doc.file_name,
        "originalName": doc.original_name,
        "fileType": doc.file_type,
        "fileSize": doc.file_size,
        "status": doc.status,
        "documentTypeId": doc.document_type_id,
        "tier": doc.tier,
        "uploadId": doc.upload_id,
        "paymentId": str(doc.payment_id) if doc.payment_id else None,
        "uploadDate": doc.upload_date.isoformat(),
        "verificationDate": doc.verification_date.isoformat() if doc.verification_date else None,
        "rejectionReason": doc.rejection_reason,
    }


async def find_active(user_id: PydanticObjectId, udin: str) -> DocumentRecord:
    doc = await DocumentRecord.find_one(
        DocumentRecord.udin == udin,
        DocumentRecord.user_id == user_id,
        DocumentRecord.is_active == True,  # noqa: E712
    )
    if not doc:
        raise NotFoundError("Document not found")
    return doc


async def get_document(user_id: PydanticObjectId, udin: str) -> dict[str, Any]:
    return serialize_document(await find_active(user_id, udin))


async def soft_delete(user_id: PydanticObjectId, udin: str) -> None:
    """Deactivate and release the content hash so the same file can be uploaded again."""
    doc = await find_active(user_id, udin)
    doc.is_active = False
    doc.dedup_key = f"{doc.dedup_key}:deleted:{doc.id}"
    doc.updated_at = datetime.utcnow()
    await doc.save()
    log.info("document_soft_deleted", udin=udin)
    await log_event(str(user_id), "document_deleted", "document", str(doc.id), {"udin": udin})


async def update_status(
    document_id: str,
    status: DocumentStatus,
    rejection_reason: str | None = None,
    actor_id: str | None = None,
) -> dict[str, Any]:
    """uploaded -> processing -> verified | rejected (uploaded may be rejected directly)."""
    doc = await DocumentRecord.get(PydanticObjectId(document_id)) if PydanticObjectId.is_valid(document_id) else None
    if not doc or not doc.is_active:
        raise NotFoundError("Document not found")
    if status not in _ALLOWED_TRANSITIONS[doc.status]:
        raise BadRequestError(f"Cannot move document from {doc.status} to {status}")
    if status == "rejected" and not rejection_reason:
        raise BadRequestError("Rejection reason is required")
    doc.status = status
    if status == "verified":
        doc.verification_date = datetime.utcnow()
    if status == "rejected":
        doc.rejection_reason = rejection_reason
    doc.updated_at = datetime.utcnow()
    await doc.save()
    log.info("document_status_updated", udin=doc.udin, status=status)
    await log_event(actor_id, "document_status_updated", "document", str(doc.id), {"status": status})
    return serialize_document(doc)
