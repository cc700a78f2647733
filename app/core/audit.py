"""Repository activity trail: imports, attribution, merges and removals."""

from typing import Any

from app.core.logging import get_logger
from app.core.pagination import Page, fetch_page
from app.models.audit_log import AuditLog

log = get_logger(__name__)

REPOSITORY = "email_repository"


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    event = AuditLog(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    )
    await event.insert()
    log.debug("audit_event", event_type=event_type, entity_id=entity_id)
    return event


async def repository_activity(repository_id: str, limit: int = 50, offset: int = 0) -> Page:
    """Newest first."""
    query = AuditLog.find(AuditLog.entity_type == REPOSITORY, AuditLog.entity_id == repository_id)
    return await fetch_page(query, limit, offset, -AuditLog.created_at, "-_id")
