import json
import re
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from starlette.datastructures import UploadFile

from udin.core.config import get_settings
from udin.core.exceptions import BadRequestError
from udin.core.logging import get_logger
from udin.deps import get_current_user
from udin.models.user import User
from udin.services import uploads as uploads_service

router = APIRouter()
log = get_logger(__name__)

_FILE_META_KEY = re.compile(r"^fileMetadata\[(\d+)\]\[(.+)\]$")


def _json_field(raw: Any, name: str) -> dict[str, Any]:
    if not raw or not isinstance(raw, str):
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        log.warning("upload_form_field_unparseable", field=name)
        return {}
    return value if isinstance(value, dict) else {}


def parse_file_metadata(form_items: list[tuple[str, Any]]) -> dict[int, dict[str, Any]]:
    """``fileMetadata[i][field]`` form keys -> {i: {field: value}}."""
    out: dict[int, dict[str, Any]] = {}
    for key, value in form_items:
        m = _FILE_META_KEY.match(key)
        if m:
            out.setdefault(int(m.group(1)), {})[m.group(2)] = value
    return out


@router.post("/files")
async def upload_files(request: Request, user: User = Depends(get_current_user)):
    """Multipart ingestion: ``files`` plus indexed file metadata and JSON-encoded context fields."""
    form = await request.form()
    parts = [f for f in form.getlist("files") + form.getlist("files[]") if isinstance(f, UploadFile)]
    if not parts:
        raise BadRequestError("No files uploaded")
    max_files = get_settings().max_files_per_upload
    if len(parts) > max_files:
        raise BadRequestError(f"At most {max_files} files per upload")
    files = [
        uploads_service.IncomingFile(
            filename=p.filename or "unnamed",
            content=await p.read(),
            content_type=p.content_type,
        )
        for p in parts
    ]
    metadata = {
        **_json_field(form.get("metadata"), "metadata"),
        "uploadTimestamp": form.get("uploadTimestamp") or datetime.utcnow().isoformat(),
        "userAgent": request.headers.get("User-Agent"),
        "ipAddress": request.client.host if request.client else None,
    }
    result = await uploads_service.ingest(
        user.id,
        files,
        metadata_per_file=parse_file_metadata(list(form.multi_items())),
        customer_info=_json_field(form.get("customerInfo"), "customerInfo"),
        pricing_snapshot=_json_field(form.get("pricingSnapshot"), "pricingSnapshot"),
        metadata={k: v for k, v in metadata.items() if v is not None},
    )
    return result.dump()


@router.get("/status/{upload_id}")
async def upload_status(upload_id: str, user: User = Depends(get_current_user)):
    return await uploads_service.get_upload_status(user.id, upload_id)


@router.get("")
async def list_uploads(
    user: User = Depends(get_current_user),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: str | None = None,
):
    """Own upload batches, newest first."""
    return await uploads_service.list_uploads(user.id, limit, offset, status)
