from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status

from udin.deps import get_current_user
from udin.models.user import User
from udin.services import ledger as ledger_service

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    payload: dict[str, Any] = Body(...),
    user: User = Depends(get_current_user),
):
    """Record a payment attempt before checkout opens. Unknown body shapes are rejected."""
    body = ledger_service.parse_transaction_create(payload)
    return await ledger_service.create_transaction(user.id, body)


@router.patch("/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    body: ledger_service.TransactionPatch,
    user: User = Depends(get_current_user),
):
    """Status change plus shallow metadata merge; regressions are 409."""
    return await ledger_service.update_status(user.id, transaction_id, body)


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str, user: User = Depends(get_current_user)):
    return await ledger_service.get_transaction(user.id, transaction_id)


@router.get("")
async def list_transactions(
    user: User = Depends(get_current_user),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: str | None = None,
):
    """Own transactions, newest first."""
    return await ledger_service.list_transactions(user.id, limit, offset, status)
