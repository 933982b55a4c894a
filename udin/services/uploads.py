"""Upload finalizer: bulk ingestion with per-user content dedup.

Per-file problems (bad extension or size, duplicate content) are collected and
reported; the batch carries on. Storage or database unavailability, or any
other unexpected error, aborts the batch: what was written is compensated, the
batch is marked ``failed`` and the error propagates. Advancing the referenced
ledger entry afterwards is best-effort and never fails the ingestion.
"""

import hashlib
import secrets
import time
from datetime import datetime
from pathlib import PurePath
from typing import Any

from beanie import PydanticObjectId
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError, PyMongoError

from udin.core.audit import log_event
from udin.core.config import ALLOWED_FILE_EXTENSIONS, get_settings
from udin.core.exceptions import (
    AppError,
    DuplicateContentError,
    NotFoundError,
    StatusRegressionError,
    StorageError,
    ValidationError,
)
from udin.core.logging import get_logger
from udin.core.pagination import page, paginate
from udin.core.schemas import CamelModel
from udin.models.counter import next_sequence
from udin.models.document import DocumentRecord, active_dedup_key
from udin.models.transaction import FAILURE_STATUSES, STATUS_RANK, Transaction
from udin.models.upload import UploadBatch
from udin.services import compensations, ledger, reconciliation
from udin.storage.base import StorageBackend, document_key, get_storage

log = get_logger(__name__)


class IncomingFile(BaseModel):
    filename: str
    content: bytes
    content_type: str | None = None

    @property
    def extension(self) -> str:
        return PurePath(self.filename).suffix.lstrip(".").lower()


class ProcessedFile(CamelModel):
    udin: str
    original_name: str
    file_size: int
    status: str
    document_type_id: str | None = None
    tier: str | None = None


class UploadBatchResult(CamelModel):
    upload_id: str
    status: str
    processed_files: int
    total_files: int
    errors: list[str] = Field(default_factory=list)
    files: list[ProcessedFile] = Field(default_factory=list)


async def generate_udin() -> str:
    """``UDIN`` + last 6 digits of the epoch-ms clock + 4-digit sequence."""
    seq = await next_sequence("udin")
    return f"UDIN{str(int(time.time() * 1000))[-6:]}{seq % 10000:04d}"


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def check_file(f: IncomingFile) -> None:
    settings = get_settings()
    if f.extension not in ALLOWED_FILE_EXTENSIONS:
        raise ValidationError(f"File {f.filename} has an unsupported type")
    size = len(f.content)
    if size < settings.min_file_size:
        raise ValidationError(f"File {f.filename} is smaller than {settings.min_file_size // 1024}KB")
    if size > settings.max_file_size:
        raise ValidationError(f"File {f.filename} exceeds {settings.max_file_size // (1024 * 1024)}MB")


async def _find_duplicate(user_id: PydanticObjectId, digest: str) -> DocumentRecord | None:
    return await DocumentRecord.find_one(DocumentRecord.dedup_key == active_dedup_key(user_id, digest))


async def _store_one(
    user_id: PydanticObjectId,
    f: IncomingFile,
    meta: dict[str, Any],
    batch: UploadBatch,
    storage: StorageBackend,
    written: list[str],
    extra: dict[str, Any],
) -> DocumentRecord:
    digest = content_hash(f.content)
    existing = await _find_duplicate(user_id, digest)
    if existing:
        raise DuplicateContentError(f.filename, existing.udin)

    udin = await generate_udin()
    file_name = f"{udin}_{int(time.time() * 1000)}.{f.extension}"
    key = document_key(str(user_id), file_name)
    await storage.put(key, f.content, f.content_type)
    written.append(key)

    doc = DocumentRecord(
        user_id=user_id,
        udin=udin,
        file_name=file_name,
        original_name=f.filename,
        file_type=f.extension,
        file_size=len(f.content),
        storage_path=key,
        content_hash=digest,
        dedup_key=active_dedup_key(user_id, digest),
        document_type_id=meta.get("documentTypeId"),
        tier=meta.get("tier"),
        upload_id=batch.upload_id,
        metadata={"originalId": meta.get("originalId"), **extra},
    )
    try:
        await doc.insert()
    except DuplicateKeyError as e:
        # lost a race against a concurrent identical upload
        written.remove(key)
        await _discard_payload(storage, key)
        winner = await _find_duplicate(user_id, digest)
        raise DuplicateContentError(f.filename, winner.udin if winner else None) from e
    return doc


async def _discard_payload(storage: StorageBackend | None, key: str) -> None:
    if storage is None:
        return
    try:
        await storage.delete(key)
    except Exception as e:
        # best-effort: an orphaned payload must not block the abort bookkeeping
        log.warning("upload_payload_cleanup_failed", key=key, error=str(e))


async def ingest(
    user_id: PydanticObjectId,
    files: list[IncomingFile],
    metadata_per_file: dict[int, dict[str, Any]] | None = None,
    customer_info: dict[str, Any] | None = None,
    pricing_snapshot: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> UploadBatchResult:
    settings = get_settings()
    if not files:
        raise ValidationError("No files uploaded")
    if len(files) > settings.max_files_per_upload:
        raise ValidationError(f"At most {settings.max_files_per_upload} files per upload")
    metadata_per_file = metadata_per_file or {}
    pricing_snapshot = pricing_snapshot or {}
    metadata = metadata or {}
    transaction_ref = pricing_snapshot.get("transactionId")

    batch = UploadBatch(
        upload_id=f"upload_{int(time.time() * 1000)}_{secrets.token_hex(5)}",
        user_id=user_id,
        file_count=len(files),
        customer_info=customer_info or {},
        pricing_snapshot=pricing_snapshot,
        metadata=metadata,
    )
    try:
        await batch.insert()
    except PyMongoError as e:
        log.error("upload_batch_create_failed", error=str(e))
        raise StorageError("Upload could not be started") from e
    log.info("upload_batch_started", upload_id=batch.upload_id, file_count=len(files))

    storage: StorageBackend | None = None
    created: list[DocumentRecord] = []
    written: list[str] = []
    errors: list[str] = []
    doc_extra = {k: metadata[k] for k in ("ipAddress", "userAgent") if k in metadata}
    try:
        storage = get_storage()
        for i, f in enumerate(files):
            try:
                check_file(f)
                doc = await _store_one(user_id, f, metadata_per_file.get(i, {}), batch, storage, written, doc_extra)
            except (ValidationError, DuplicateContentError) as e:
                errors.append(e.message if isinstance(e, AppError) else str(e))
                continue
            created.append(doc)

        batch.status = "completed_with_errors" if errors else "completed"
        batch.processed_files = len(created)
        batch.errors = errors
        batch.updated_at = datetime.utcnow()
        await batch.save()
    except Exception as e:
        # any failure past this point must leave the batch failed, never processing
        if isinstance(e, StorageError):
            reason = e.message
        elif isinstance(e, PyMongoError):
            reason = f"Database unavailable: {e}"
        else:
            reason = f"Ingestion failed: {type(e).__name__}: {e}"
        await _abort(batch, created, written, storage, reason, transaction_ref)
        if isinstance(e, PyMongoError):
            raise StorageError(reason) from e
        raise

    result = UploadBatchResult(
        upload_id=batch.upload_id,
        status=batch.status,
        processed_files=len(created),
        total_files=len(files),
        errors=errors,
        files=[
            ProcessedFile(
                udin=d.udin,
                original_name=d.original_name,
                file_size=d.file_size,
                status=d.status,
                document_type_id=d.document_type_id,
                tier=d.tier,
            )
            for d in created
        ],
    )
    log.info(
        "upload_batch_finished",
        upload_id=batch.upload_id,
        status=batch.status,
        processed=len(created),
        errors=len(errors),
    )
    await _record_upload(user_id, result, pricing_snapshot, customer_info or {})
    await advance_transaction(user_id, transaction_ref, result)
    return result


async def _record_upload(
    user_id: PydanticObjectId,
    result: UploadBatchResult,
    pricing_snapshot: dict[str, Any],
    customer_info: dict[str, Any],
) -> None:
    """Bookkeeping only: an ``upload`` ledger line plus an audit entry."""
    if result.processed_files == 0:
        return
    try:
        await Transaction(
            transaction_id=Transaction.generate_transaction_id(),
            user_id=user_id,
            type="upload",
            status="completed",
            description=f"File upload completed - {result.processed_files} documents processed",
            metadata={
                "uploadId": result.upload_id,
                "fileCount": result.processed_files,
                "totalFiles": result.total_files,
                "errors": len(result.errors),
                "pricingSnapshot": pricing_snapshot,
                "customerInfo": customer_info,
            },
        ).insert()
        await log_event(
            str(user_id), "upload_batch_completed", "upload", result.upload_id,
            {"processedFiles": result.processed_files, "errors": len(result.errors)},
        )
    except PyMongoError as e:
        log.warning("upload_record_failed", upload_id=result.upload_id, error=str(e))


async def _abort(
    batch: UploadBatch,
    created: list[DocumentRecord],
    written: list[str],
    storage: StorageBackend | None,
    reason: str,
    transaction_ref: str | None,
) -> None:
    """Undo a half-written batch and leave an explanatory trail. Every step is best-effort."""
    log.error("upload_batch_failed", upload_id=batch.upload_id, reason=reason, written=len(created))
    for doc in created:
        try:
            doc.is_active = False
            doc.dedup_key = f"{doc.dedup_key}:deleted:{doc.id}"
            doc.updated_at = datetime.utcnow()
            await doc.save()
        except PyMongoError as e:
            log.warning("upload_document_rollback_failed", udin=doc.udin, error=str(e))
    for key in written:
        await _discard_payload(storage, key)

    batch.status = "failed"
    batch.processed_files = 0
    batch.errors = [reason]
    batch.updated_at = datetime.utcnow()
    try:
        await batch.save()
        await Transaction(
            transaction_id=Transaction.generate_transaction_id(),
            user_id=batch.user_id,
            type="upload",
            status="failed",
            description=f"File upload failed - {reason}",
            metadata={"uploadId": batch.upload_id, "error": reason, "transactionRef": transaction_ref},
        ).insert()
    except PyMongoError as e:
        log.error("upload_failure_record_failed", upload_id=batch.upload_id, error=str(e))
    await flag_undelivered(batch.user_id, transaction_ref, batch.upload_id, reason)


async def flag_undelivered(
    user_id: PydanticObjectId,
    transaction_ref: str | None,
    upload_id: str,
    reason: str,
) -> None:
    """Open a reconciliation case if the referenced attempt was actually charged."""
    if not transaction_ref:
        return
    try:
        trx = await ledger.find_owned(user_id, transaction_ref)
        charged = trx.paid_at is not None or (
            trx.status not in FAILURE_STATUSES and STATUS_RANK[trx.status] >= STATUS_RANK["paid"]
        )
        if charged:
            await reconciliation.open_case(trx, reason, upload_id=upload_id)
    except (AppError, PyMongoError) as e:
        log.warning("reconciliation_case_not_opened", transaction_id=transaction_ref, error=str(e))


async def advance_transaction(
    user_id: PydanticObjectId,
    transaction_ref: str | None,
    result: UploadBatchResult,
) -> None:
    """completed batch -> ``completed``; partial batch -> ``uploaded``. Failures are queued."""
    if not transaction_ref:
        return
    if result.processed_files == 0:
        await flag_undelivered(user_id, transaction_ref, result.upload_id, "; ".join(result.errors) or "No files processed")
        return
    target = "completed" if result.status == "completed" else "uploaded"
    meta = {
        "uploadId": result.upload_id,
        "processedFiles": result.processed_files,
        "totalFiles": result.total_files,
        "uploadTimestamp": datetime.utcnow().isoformat(),
    }
    try:
        await ledger.update_status(user_id, transaction_ref, ledger.TransactionPatch(status=target, meta=meta))
    except StatusRegressionError as e:
        log.warning("transaction_advance_skipped", transaction_id=transaction_ref, reason=e.message)
    except NotFoundError:
        log.warning("transaction_advance_not_found", transaction_id=transaction_ref)
    except (AppError, PyMongoError) as e:
        log.warning("transaction_advance_failed", transaction_id=transaction_ref, error=str(e))
        await compensations.enqueue(
            "advance_transaction",
            user_id,
            {"transaction_id": transaction_ref, "status": target, "meta": meta},
            error=str(e),
        )


def serialize_batch(batch: UploadBatch) -> dict[str, Any]:
    return {
        "uploadId": batch.upload_id,
        "status": batch.status,
        "fileCount": batch.file_count,
        "processedFiles": batch.processed_files,
        "errors": batch.errors,
        "createdAt": batch.created_at.isoformat(),
        "updatedAt": batch.updated_at.isoformat(),
    }


async def get_upload_status(user_id: PydanticObjectId, upload_id: str) -> dict[str, Any]:
    batch = await UploadBatch.find_one(UploadBatch.upload_id == upload_id, UploadBatch.user_id == user_id)
    if not batch:
        raise NotFoundError("Upload not found")
    return serialize_batch(batch)


async def list_uploads(
    user_id: PydanticObjectId,
    limit: int = 10,
    offset: int = 0,
    status: str | None = None,
) -> dict[str, Any]:
    limit, offset = paginate(limit, offset)
    filters = [UploadBatch.user_id == user_id]
    if status and status != "all":
        filters.append(UploadBatch.status == status)
    total = await UploadBatch.find(*filters).count()
    items = await UploadBatch.find(*filters).sort(-UploadBatch.created_at).skip(offset).limit(limit).to_list()
    return page([serialize_batch(b) for b in items], limit, offset, total)
