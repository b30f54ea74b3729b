"""Escalation of cases left open past their SLA.

Cases opened by workflow actions carry ``sla_due_at``. The sweep raises
overdue open cases to critical, tags them ``overdue`` and tells the
safeguarding lead, once per case.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.config import get_settings
from caseguard.domain.models import Case, CaseTimelineEvent, Notification
from caseguard.services.audit import AUDIT_CASE_SLA_BREACHED, record_event
from caseguard.services.telemetry import increment_counter
from caseguard.services.workflows.actions import OPEN_CASE_STATUSES


logger = logging.getLogger(__name__)

SLA_SYSTEM_ACTOR = "system_sla_escalator"
OVERDUE_TAG = "overdue"
SLA_BREACH_NOTIFICATION = "sla_breach"


async def escalate_overdue_cases(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[str]:
    """Escalate open cases past ``sla_due_at`` and return their ids.

    Rows are added to ``session``; the caller commits or rolls back.
    """
    now = now or datetime.now(timezone.utc)
    batch = max(1, int(limit if limit is not None else get_settings().case_sla_sweep_batch_size))
    result = await session.execute(
        select(Case)
        .where(
            Case.status.in_(OPEN_CASE_STATUSES),
            Case.sla_due_at.is_not(None),
            Case.sla_due_at < now,
            Case.sla_breached_at.is_(None),
        )
        .order_by(Case.sla_due_at, Case.id)
        .limit(batch)
    )
    cases = list(result.scalars().all())

    for case in cases:
        case.priority = "critical"
        tags = list(case.tags_json or [])
        if OVERDUE_TAG not in tags:
            tags.append(OVERDUE_TAG)
        case.tags_json = tags
        case.sla_breached_at = now
        case.updated_at = now
        session.add(
            CaseTimelineEvent(
                case_id=case.id,
                tenant_id=case.tenant_id,
                event_type="status_change",
                content="SLA breached. Priority escalated to Critical.",
                actor_id=SLA_SYSTEM_ACTOR,
                metadata_json={"reason": "sla_overdue"},
                created_at=now,
            )
        )
        session.add(
            Notification(
                id=uuid4().hex,
                tenant_id=case.tenant_id,
                type=SLA_BREACH_NOTIFICATION,
                recipient_role="dsl",
                title=f"Case {case.title} is overdue",
                subject_id=case.subject_id,
                payload_json={"case_id": case.id},
                read=False,
                created_at=now,
            )
        )
        await record_event(
            session=session,
            tenant_id=case.tenant_id,
            actor_type="system",
            actor_id=SLA_SYSTEM_ACTOR,
            event_type=AUDIT_CASE_SLA_BREACHED,
            outcome="success",
            resource_type="case",
            resource_id=case.id,
            occurred_at=now,
            metadata={"sla_due_at": case.sla_due_at.isoformat() if case.sla_due_at else None},
        )

    if cases:
        increment_counter("case_sla_breaches_total", len(cases))
        logger.info("case_sla_escalated count=%s", len(cases))
    return [case.id for case in cases]
