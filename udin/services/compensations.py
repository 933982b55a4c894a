"""At-least-once replay of best-effort secondary updates.

When a bookkeeping write fails after the primary action already succeeded
(ledger advance after an upload, ledger link after a verified payment) the
write is parked here and replayed by the worker sweep until it lands.
"""

from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId
from pymongo.errors import PyMongoError

from udin.core.config import get_settings
from udin.core.exceptions import AppError, NotFoundError, StatusRegressionError
from udin.core.logging import get_logger
from udin.models.compensation_task import CompensationKind, CompensationTask
from udin.models.payment import Payment
from udin.services import ledger

log = get_logger(__name__)


async def enqueue(
    kind: CompensationKind,
    user_id: PydanticObjectId | str,
    payload: dict[str, Any],
    error: str | None = None,
) -> CompensationTask | None:
    """Park a failed secondary update. Returns None if even the outbox write fails."""
    task = CompensationTask(kind=kind, user_id=str(user_id), payload=payload, last_error=error)
    try:
        await task.insert()
    except PyMongoError as e:
        log.error("compensation_enqueue_failed", kind=kind, payload=payload, error=str(e))
        return None
    log.warning("compensation_enqueued", kind=kind, task_id=str(task.id), error=error)
    return task


async def _apply(task: CompensationTask) -> None:
    user_id = PydanticObjectId(task.user_id)
    if task.kind == "advance_transaction":
        await ledger.update_status(
            user_id,
            task.payload["transaction_id"],
            ledger.TransactionPatch(status=task.payload.get("status"), meta=task.payload.get("meta")),
        )
    elif task.kind == "link_payment":
        payment = await Payment.get(PydanticObjectId(task.payload["payment_id"]))
        if payment is None:
            raise NotFoundError("Payment not found")
        await ledger.record_payment(user_id, task.payload["transaction_id"], payment)
    else:
        raise ValueError(f"Unknown compensation kind: {task.kind}")


def _backoff(attempts: int) -> timedelta:
    return timedelta(minutes=min(2 ** attempts, 60))


async def run_task(task: CompensationTask) -> str:
    """Replay one task; returns its new status."""
    max_attempts = get_settings().compensation_max_attempts
    task.attempts += 1
    task.updated_at = datetime.utcnow()
    try:
        await _apply(task)
        task.status = "done"
        task.last_error = None
    except StatusRegressionError as e:
        # a later update already landed; replaying would only move it backwards
        task.status = "done"
        task.last_error = e.message
    except NotFoundError as e:
        task.status = "dead"
        task.last_error = e.message
    except (AppError, PyMongoError) as e:
        task.last_error = str(e)[:500]
        if task.attempts >= max_attempts:
            task.status = "dead"
        else:
            task.next_attempt_at = datetime.utcnow() + _backoff(task.attempts)
    await task.save()
    if task.status == "dead":
        log.error("compensation_dead", task_id=str(task.id), kind=task.kind, error=task.last_error)
    else:
        log.info("compensation_replayed", task_id=str(task.id), kind=task.kind, status=task.status)
    return task.status


async def sweep(limit: int = 50, user_id: str | None = None) -> dict[str, int]:
    """Replay due tasks (optionally for one user). Returns counts by resulting status."""
    filters = [
        CompensationTask.status == "pending",
        CompensationTask.next_attempt_at <= datetime.utcnow(),
    ]
    if user_id:
        filters.append(CompensationTask.user_id == user_id)
    due = await CompensationTask.find(*filters).sort(+CompensationTask.created_at).limit(limit).to_list()
    counts = {"done": 0, "pending": 0, "dead": 0}
    for task in due:
        counts[await run_task(task)] += 1
    if due:
        log.info("compensation_sweep", **counts)
    return counts
