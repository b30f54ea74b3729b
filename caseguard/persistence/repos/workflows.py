from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.domain.models import ComplianceWorkflow
from caseguard.persistence.db import SessionLocal


class SqlWorkflowRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def list_workflows(self, *, tenant_id: str, event_type: str) -> list[ComplianceWorkflow]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ComplianceWorkflow)
                .where(
                    ComplianceWorkflow.tenant_id == tenant_id,
                    ComplianceWorkflow.trigger_event == event_type,
                    ComplianceWorkflow.enabled.is_(True),
                )
                .order_by(ComplianceWorkflow.id.asc())
            )
            return list(result.scalars().all())

    async def get_workflow(self, *, tenant_id: str, workflow_id: str) -> ComplianceWorkflow | None:
        # Disabled workflows resolve to None so pending jobs for them fire without action.
        async with self._session_factory() as session:
            result = await session.execute(
                select(ComplianceWorkflow).where(
                    ComplianceWorkflow.tenant_id == tenant_id,
                    ComplianceWorkflow.id == workflow_id,
                    ComplianceWorkflow.enabled.is_(True),
                )
            )
            return result.scalar_one_or_none()
