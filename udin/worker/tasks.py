"""ARQ job definitions."""

import uuid
from typing import Any

import redis.asyncio as aioredis
from arq.connections import RedisSettings

from udin.core.config import get_settings
from udin.core.logging import get_logger
from udin.services import compensations

log = get_logger(__name__)

SWEEP_LOCK_KEY = "udin:compensations:sweep"


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> None:
    """Run coroutine; on exception leave an audit record then re-raise."""
    try:
        await coro
    except Exception as e:
        from udin.core.audit import log_event
        fid = job_id or str(uuid.uuid4())
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        await log_event(None, "job_failed", "job", fid, {"job": job_name, "args": args, "kwargs": kwargs, "reason": str(e)[:2000]})
        raise


async def run_compensation_sweep(limit: int = 100) -> dict[str, int] | None:
    """One sweep at a time across workers; a held lock means another worker is on it."""
    redis = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    try:
        lock = redis.lock(SWEEP_LOCK_KEY, timeout=300, blocking=False)
        if not await lock.acquire():
            log.info("compensation_sweep_skipped", reason="locked")
            return None
        try:
            return await compensations.sweep(limit)
        finally:
            await lock.release()
    finally:
        await redis.aclose()


async def sweep_compensations(ctx: dict[str, Any]) -> None:
    """Cron job: replay best-effort updates that failed (ledger advance, payment link)."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    await _run_with_dlq("sweep_compensations", job_id, [], {}, run_compensation_sweep())


async def startup(ctx: dict) -> None:
    from udin.db.init import init_db
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path and u.path != "/" else 0,
    )
