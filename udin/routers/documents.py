from fastapi import APIRouter, Depends
from pydantic import BaseModel

from udin.deps import get_current_user, require_admin
from udin.models.document import DocumentStatus
from udin.models.user import User
from udin.services import documents as documents_service

router = APIRouter()


class StatusUpdateRequest(BaseModel):
    status: DocumentStatus
    rejection_reason: str | None = None


@router.get("/{udin}")
async def get_document(udin: str, user: User = Depends(get_current_user)):
    return await documents_service.get_document(user.id, udin)


@router.delete("/{udin}")
async def delete_document(udin: str, user: User = Depends(get_current_user)):
    """Soft delete; the same content may be uploaded again afterwards."""
    await documents_service.soft_delete(user.id, udin)
    return {"status": "deleted", "udin": udin}


@router.patch("/{document_id}/status")
async def update_document_status(
    document_id: str,
    body: StatusUpdateRequest,
    user: User = Depends(require_admin),
):
    """Back office: uploaded -> processing -> verified | rejected."""
    return await documents_service.update_status(document_id, body.status, body.rejection_reason, str(user.id))
