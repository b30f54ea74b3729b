from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.core.config import get_settings
from caseguard.domain.models import AuditEvent
from caseguard.persistence.db import SessionLocal
from caseguard.services.resilience import TransientException


logger = logging.getLogger(__name__)

AUDIT_ACTION_EXECUTED = "workflow.action.executed"
AUDIT_WORKFLOW_CONFIG_INVALID = "workflow.config.invalid"
AUDIT_CASE_SLA_BREACHED = "case.sla.breached"

# Free text and names about children never belong in the audit trail, nor do credentials.
_SENSITIVE_KEY_FRAGMENTS = (
    "token",
    "secret",
    "password",
    "authorization",
    "text",
    "content",
    "note",
    "body",
    "studentname",
    "subjectname",
)
_REDACTED_VALUE = "[REDACTED]"
# Long strings are cut so a misnamed free-text field cannot leak a whole disclosure.
_MAX_STRING_LENGTH = 256
# Database errors plus the connection-level failures asyncpg raises directly.
_WRITE_ERRORS = (SQLAlchemyError, *TransientException)


def _is_sensitive_key(key: str) -> bool:
    lowered = key.replace("_", "").lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Return a JSON-ready copy of ``value`` with sensitive keys redacted.

    Accepts the read-only containers used by events and intents
    (``MappingProxyType``, tuples) as well as plain dicts and lists.
    """
    if isinstance(value, Mapping):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and len(value) > _MAX_STRING_LENGTH:
        return value[:_MAX_STRING_LENGTH] + "..."
    return value


def build_audit_row(
    *,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    occurred_at: datetime | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    error_code: str | None = None,
) -> AuditEvent:
    return AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    best_effort: bool = True,
    **fields: Any,
) -> None:
    """Add an audit row.

    With ``session`` the row joins the caller's transaction and commits with
    it. Otherwise it is written in its own session; failures are logged and
    swallowed unless ``best_effort`` is False.
    """
    row = build_audit_row(**fields)
    if session is not None:
        session.add(row)
        return

    async with (session_factory or SessionLocal)() as audit_session:
        try:
            audit_session.add(row)
            await audit_session.commit()
        except _WRITE_ERRORS as exc:
            try:
                await audit_session.rollback()
            except _WRITE_ERRORS:
                logger.debug("audit_event_rollback_failed event_type=%s", row.event_type)
            if not best_effort:
                logger.error("audit_event_write_failed event_type=%s tenant_id=%s", row.event_type, row.tenant_id)
                raise
            logger.warning(
                "audit_event_write_failed event_type=%s tenant_id=%s",
                row.event_type,
                row.tenant_id,
                exc_info=exc,
            )


async def prune_audit_events(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    retention_days: int | None = None,
) -> int:
    # Remove audit events beyond the retention window; the caller owns the commit.
    days = retention_days if retention_days is not None else get_settings().audit_retention_days
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max(1, int(days)))
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff))
    return result.rowcount or 0
