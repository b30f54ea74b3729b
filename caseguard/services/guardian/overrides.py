from __future__ import annotations

from caseguard.persistence.repos.base import OverrideRepository
from caseguard.persistence.repos.overrides import OVERRIDE_STATUS_APPROVED, SqlOverrideRepository
from caseguard.services.resilience import bounded_lookup


class OverrideResolver:
    """Answers whether an approved exception covers a subject+rule pair.

    Consulted only while a finding is being built; approvals granted later
    never touch findings that already exist.
    """

    def __init__(self, repository: OverrideRepository | None = None) -> None:
        self._repository = repository or SqlOverrideRepository()

    async def is_overridden(self, *, tenant_id: str, subject_id: str, rule_id: str) -> bool:
        # Lookup failures propagate so the engine can fail closed.
        rows = await bounded_lookup(
            lambda: self._repository.list_approved_overrides(tenant_id=tenant_id, subject_id=subject_id)
        )
        for row in rows:
            if row.status != OVERRIDE_STATUS_APPROVED or row.subject_id != subject_id:
                continue
            if rule_id in {str(item) for item in (row.rule_ids_json or [])}:
                return True
        return False
