"""Append-only trail for money movements, ingestion outcomes and operator actions.

Entries carry the request id bound by the HTTP middleware (if any) so an audit
row can be matched to the structured request log.
"""

from typing import Any

import structlog

from udin.models.audit_log import AuditLog


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=str(user_id) if user_id is not None else None,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        request_id=structlog.contextvars.get_contextvars().get("request_id"),
        metadata=metadata or {},
    )
    await entry.insert()
    return entry
