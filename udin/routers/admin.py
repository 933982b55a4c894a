from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from udin.deps import require_admin
from udin.models.user import User
from udin.services import compensations as compensations_service
from udin.services import reconciliation as reconciliation_service

router = APIRouter()


class CaseNoteRequest(BaseModel):
    note: str | None = None


class ResolveRequest(BaseModel):
    note: str = Field(min_length=1)


@router.get("/reconciliation")
async def admin_reconciliation_cases(
    user: User = Depends(require_admin),
    status: str | None = "open",
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Admin: payments captured without a deliverable."""
    return await reconciliation_service.list_cases(status, limit, offset)


@router.post("/reconciliation/{case_id}/refund")
async def admin_reconciliation_refund(
    case_id: str,
    body: CaseNoteRequest,
    user: User = Depends(require_admin),
):
    """Admin: refund the captured payment and close the case."""
    return await reconciliation_service.refund_case(case_id, body.note, actor_id=str(user.id))


@router.post("/reconciliation/{case_id}/resolve")
async def admin_reconciliation_resolve(
    case_id: str,
    body: ResolveRequest,
    user: User = Depends(require_admin),
):
    """Admin: close the case without a refund (e.g. documents re-uploaded manually)."""
    return await reconciliation_service.resolve_case(case_id, body.note, actor_id=str(user.id))


@router.post("/compensations/sweep")
async def admin_compensations_sweep(
    user: User = Depends(require_admin),
    limit: int = Query(50, ge=1, le=500),
):
    """Admin: replay due compensation tasks now instead of waiting for the cron."""
    return await compensations_service.sweep(limit)
