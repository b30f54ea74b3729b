from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.domain.events import Finding
from caseguard.domain.models import GuardianFinding
from caseguard.persistence.db import SessionLocal


class SqlFindingRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def insert_finding(self, finding: Finding) -> None:
        # Insert only; the core never updates an existing finding.
        async with self._session_factory() as session:
            session.add(
                GuardianFinding(
                    id=finding.id,
                    tenant_id=finding.tenant_id,
                    rule_id=finding.rule_id,
                    event_type=finding.event_type,
                    subject_type=finding.subject_type,
                    subject_id=finding.subject_id,
                    actor_id=finding.actor_id,
                    severity=finding.severity,
                    message=finding.message,
                    remediation=finding.remediation,
                    status=finding.status,
                    blocking=finding.blocking,
                    simulated=finding.simulated,
                    created_at=finding.created_at,
                )
            )
            await session.commit()


async def list_findings(
    session: AsyncSession,
    *,
    tenant_id: str,
    subject_id: str | None = None,
    rule_id: str | None = None,
    status: str | None = None,
    blocking: bool | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[GuardianFinding]:
    # Scope all finding queries to a tenant to prevent cross-tenant leakage.
    stmt = select(GuardianFinding).where(GuardianFinding.tenant_id == tenant_id)
    if subject_id:
        stmt = stmt.where(GuardianFinding.subject_id == subject_id)
    if rule_id:
        stmt = stmt.where(GuardianFinding.rule_id == rule_id)
    if status:
        stmt = stmt.where(GuardianFinding.status == status)
    if blocking is not None:
        stmt = stmt.where(GuardianFinding.blocking.is_(blocking))
    stmt = stmt.order_by(GuardianFinding.created_at.desc(), GuardianFinding.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
