from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from caseguard.domain.events import Finding
from caseguard.domain.models import (
    ComplianceWorkflow,
    GuardianOverrideRequest,
    PolicyRule,
    ScheduledJob,
)


class RuleRepository(Protocol):
    async def list_active_rules(self, *, tenant_id: str, event_type: str) -> Sequence[PolicyRule]:
        ...


class OverrideRepository(Protocol):
    async def list_approved_overrides(
        self, *, tenant_id: str, subject_id: str
    ) -> Sequence[GuardianOverrideRequest]:
        ...


class FindingWriter(Protocol):
    async def insert_finding(self, finding: Finding) -> None:
        ...


class WorkflowRepository(Protocol):
    async def list_workflows(self, *, tenant_id: str, event_type: str) -> Sequence[ComplianceWorkflow]:
        ...

    async def get_workflow(self, *, tenant_id: str, workflow_id: str) -> ComplianceWorkflow | None:
        ...


class JobRepository(Protocol):
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
        ...

    async def claim_job(self, *, job_id: str, now: datetime, lease_until: datetime) -> ScheduledJob | None:
        ...

    async def list_due_job_ids(self, *, now: datetime, limit: int) -> list[str]:
        ...

    async def mark_fired(
        self,
        *,
        job_id: str,
        outcome: str,
        fired_at: datetime,
        action_result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        ...

    async def release_job(self, *, job_id: str, retry_at: datetime, error: str) -> None:
        ...

    async def cancel_jobs(
        self,
        *,
        tenant_id: str,
        cancelled_at: datetime,
        job_id: str | None = None,
        subject_id: str | None = None,
        workflow_id: str | None = None,
    ) -> int:
        ...

    async def list_jobs(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        subject_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Sequence[ScheduledJob]:
        ...
