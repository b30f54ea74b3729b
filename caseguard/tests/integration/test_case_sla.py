from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from caseguard.domain.models import AuditEvent, Case, CaseTimelineEvent, Notification
from caseguard.persistence.db import SessionLocal
from caseguard.services.workflows.sla import escalate_overdue_cases
from caseguard.tests.utils.fakes import FIXED_NOW
from caseguard.workers.scheduler_worker import sweep_overdue_cases_once


def _case(case_id: str, *, status: str = "triage", due_in_hours: float | None = -1, tenant_id: str = "t1") -> Case:
    return Case(
        id=case_id,
        tenant_id=tenant_id,
        subject_type="student",
        subject_id="student-1",
        title=f"Attendance {case_id}",
        priority="high",
        status=status,
        tags_json=["attendance"],
        created_by="system_workflow_engine",
        sla_due_at=None if due_in_hours is None else FIXED_NOW + timedelta(hours=due_in_hours),
    )


async def _sweep(**kwargs) -> list[str]:
    async with SessionLocal() as session:
        escalated = await escalate_overdue_cases(session, now=FIXED_NOW, **kwargs)
        await session.commit()
    return escalated


@pytest.mark.asyncio
async def test_overdue_open_case_is_escalated_once(db_schema) -> None:
    async with SessionLocal() as session:
        session.add_all(
            [
                _case("overdue"),
                _case("other-tenant", tenant_id="t2", due_in_hours=-5),
                _case("not-due", due_in_hours=2),
                _case("closed", status="closed", due_in_hours=-3),
                _case("no-sla", due_in_hours=None),
            ]
        )
        await session.commit()

    first = await _sweep()
    second = await _sweep()

    assert first == ["other-tenant", "overdue"]
    assert second == []
    async with SessionLocal() as session:
        overdue = await session.get(Case, "overdue")
        untouched = [await session.get(Case, case_id) for case_id in ("not-due", "closed", "no-sla")]
        timeline = (await session.execute(select(CaseTimelineEvent).order_by(CaseTimelineEvent.id))).scalars().all()
        notifications = (await session.execute(select(Notification))).scalars().all()
        audit = (await session.execute(select(AuditEvent))).scalars().all()

    assert overdue.priority == "critical"
    assert overdue.tags_json == ["attendance", "overdue"]
    assert overdue.sla_breached_at is not None
    for case in untouched:
        assert case.priority == "high"
        assert case.tags_json == ["attendance"]
        assert case.sla_breached_at is None
    assert sorted((entry.case_id, entry.event_type) for entry in timeline) == [
        ("other-tenant", "status_change"),
        ("overdue", "status_change"),
    ]
    assert all(entry.metadata_json == {"reason": "sla_overdue"} for entry in timeline)
    assert sorted((row.tenant_id, row.type, row.payload_json["case_id"]) for row in notifications) == [
        ("t1", "sla_breach", "overdue"),
        ("t2", "sla_breach", "other-tenant"),
    ]
    assert sorted(row.resource_id for row in audit) == ["other-tenant", "overdue"]
    assert {row.event_type for row in audit} == {"case.sla.breached"}


@pytest.mark.asyncio
async def test_sweep_is_bounded_by_limit_and_rollback_leaves_cases_pending(db_schema) -> None:
    async with SessionLocal() as session:
        session.add_all([_case("oldest", due_in_hours=-10), _case("newer", due_in_hours=-1)])
        await session.commit()

    async with SessionLocal() as session:
        dry_run = await escalate_overdue_cases(session, now=FIXED_NOW)
        await session.rollback()
    limited = await _sweep(limit=1)
    rest = await _sweep()

    assert dry_run == ["oldest", "newer"]
    assert limited == ["oldest"]
    assert rest == ["newer"]


@pytest.mark.asyncio
async def test_worker_sweep_commits_escalations(db_schema) -> None:
    async with SessionLocal() as session:
        session.add(_case("stale", due_in_hours=-48))
        await session.commit()

    escalated = await sweep_overdue_cases_once()

    assert escalated == ["stale"]
    async with SessionLocal() as session:
        case = await session.get(Case, "stale")
    assert case.priority == "critical"
