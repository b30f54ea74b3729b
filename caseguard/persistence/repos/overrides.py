from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.domain.models import GuardianOverrideRequest
from caseguard.persistence.db import SessionLocal


OVERRIDE_STATUS_APPROVED = "approved"


class SqlOverrideRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def list_approved_overrides(
        self, *, tenant_id: str, subject_id: str
    ) -> list[GuardianOverrideRequest]:
        # rule_ids live in a JSON array; membership is checked by the resolver to stay dialect-neutral.
        async with self._session_factory() as session:
            result = await session.execute(
                select(GuardianOverrideRequest).where(
                    GuardianOverrideRequest.tenant_id == tenant_id,
                    GuardianOverrideRequest.subject_id == subject_id,
                    GuardianOverrideRequest.status == OVERRIDE_STATUS_APPROVED,
                )
            )
            return list(result.scalars().all())
