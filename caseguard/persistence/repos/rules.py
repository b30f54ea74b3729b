from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.domain.models import PolicyRule
from caseguard.persistence.db import SessionLocal


RULE_STATUS_ACTIVE = "active"


class SqlRuleRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        # One session per lookup so concurrent evaluations never share a connection.
        self._session_factory = session_factory or SessionLocal

    async def list_active_rules(self, *, tenant_id: str, event_type: str) -> list[PolicyRule]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PolicyRule).where(
                    PolicyRule.tenant_id == tenant_id,
                    PolicyRule.trigger_event == event_type,
                    PolicyRule.enabled.is_(True),
                    PolicyRule.status == RULE_STATUS_ACTIVE,
                )
            )
            return list(result.scalars().all())


async def list_tenant_active_rules(session: AsyncSession, *, tenant_id: str) -> list[PolicyRule]:
    # Hygiene checks compare a tenant's live rules across every trigger.
    result = await session.execute(
        select(PolicyRule)
        .where(
            PolicyRule.tenant_id == tenant_id,
            PolicyRule.enabled.is_(True),
            PolicyRule.status == RULE_STATUS_ACTIVE,
        )
        .order_by(PolicyRule.id.asc())
    )
    return list(result.scalars().all())
