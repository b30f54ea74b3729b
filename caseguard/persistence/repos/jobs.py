from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.domain.models import ScheduledJob
from caseguard.persistence.db import SessionLocal


JOB_STATUS_PENDING = "pending"
JOB_STATUS_FIRED = "fired"
JOB_STATUS_CANCELLED = "cancelled"


def _claimable(now: datetime):
    # A pending job is claimable once due and when no unexpired lease is held.
    return (
        ScheduledJob.status == JOB_STATUS_PENDING,
        ScheduledJob.execute_at <= now,
        or_(ScheduledJob.claimed_until.is_(None), ScheduledJob.claimed_until <= now),
    )


class SqlJobRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def create_job(
        self,
        *,
        tenant_id: str,
        workflow_id: str,
        subject_type: str,
        subject_id: str,
        event_snapshot: dict[str, Any],
        execute_at: datetime,
    ) -> ScheduledJob:
        async with self._session_factory() as session:
            row = ScheduledJob(
                id=uuid4().hex,
                tenant_id=tenant_id,
                workflow_id=workflow_id,
                subject_type=subject_type,
                subject_id=subject_id,
                event_snapshot_json=event_snapshot,
                execute_at=execute_at,
                status=JOB_STATUS_PENDING,
                attempts=0,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row

    async def claim_job(self, *, job_id: str, now: datetime, lease_until: datetime) -> ScheduledJob | None:
        # Conditional update acts as the lock: only one worker observes rowcount == 1.
        async with self._session_factory() as session:
            result = await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id, *_claimable(now))
                .values(claimed_until=lease_until, attempts=ScheduledJob.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            return await session.get(ScheduledJob, job_id)

    async def list_due_job_ids(self, *, now: datetime, limit: int) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ScheduledJob.id)
                .where(*_claimable(now))
                .order_by(ScheduledJob.execute_at.asc(), ScheduledJob.id.asc())
                .limit(limit)
            )
            return [str(job_id) for job_id in result.scalars().all()]

    async def mark_fired(
        self,
        *,
        job_id: str,
        outcome: str,
        fired_at: datetime,
        action_result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id, ScheduledJob.status == JOB_STATUS_PENDING)
                .values(
                    status=JOB_STATUS_FIRED,
                    outcome=outcome,
                    fired_at=fired_at,
                    action_result_json=action_result,
                    last_error=error,
                    claimed_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def release_job(self, *, job_id: str, retry_at: datetime, error: str) -> None:
        # Keep the job pending; the lease doubles as the retry-not-before marker.
        async with self._session_factory() as session:
            await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id, ScheduledJob.status == JOB_STATUS_PENDING)
                .values(claimed_until=retry_at, last_error=error)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def cancel_jobs(
        self,
        *,
        tenant_id: str,
        cancelled_at: datetime,
        job_id: str | None = None,
        subject_id: str | None = None,
        workflow_id: str | None = None,
    ) -> int:
        stmt = update(ScheduledJob).where(
            ScheduledJob.tenant_id == tenant_id,
            ScheduledJob.status == JOB_STATUS_PENDING,
        )
        if job_id:
            stmt = stmt.where(ScheduledJob.id == job_id)
        if subject_id:
            stmt = stmt.where(ScheduledJob.subject_id == subject_id)
        if workflow_id:
            stmt = stmt.where(ScheduledJob.workflow_id == workflow_id)
        async with self._session_factory() as session:
            result = await session.execute(
                stmt.values(status=JOB_STATUS_CANCELLED, cancelled_at=cancelled_at, claimed_until=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def list_jobs(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        subject_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ScheduledJob]:
        async with self._session_factory() as session:
            return await list_jobs(
                session, tenant_id=tenant_id, status=status, subject_id=subject_id, offset=offset, limit=limit
            )


async def list_jobs(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    subject_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ScheduledJob]:
    stmt = select(ScheduledJob).where(ScheduledJob.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(ScheduledJob.status == status)
    if subject_id:
        stmt = stmt.where(ScheduledJob.subject_id == subject_id)
    stmt = stmt.order_by(ScheduledJob.execute_at.desc(), ScheduledJob.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_job(session: AsyncSession, *, tenant_id: str, job_id: str) -> ScheduledJob | None:
    result = await session.execute(
        select(ScheduledJob).where(ScheduledJob.id == job_id, ScheduledJob.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()
