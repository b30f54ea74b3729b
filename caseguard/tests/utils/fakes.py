from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from caseguard.domain.events import ActionIntent, ActionResult, Finding, GuardianEvent
from caseguard.domain.models import ComplianceWorkflow, GuardianOverrideRequest, PolicyRule, ScheduledJob
from caseguard.services.resilience import RetryPolicy
from caseguard.services.workflows.actions import ActionRegistry


FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
FAST_RETRY = RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1)


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def make_rule(**overrides: Any) -> PolicyRule:
    values: dict[str, Any] = {
        "id": f"rule-{uuid4().hex[:8]}",
        "tenant_id": "t1",
        "name": "Public PII",
        "description": None,
        "trigger_event": "message_send",
        "trigger_condition": "pii_leak",
        "severity": "critical",
        "mode": "enforce",
        "rollout_mode": "live",
        "block_actions": True,
        "status": "active",
        "enabled": True,
        "remediation": "Remove PII or restrict visibility.",
    }
    values.update(overrides)
    return PolicyRule(**values)


def make_override(**overrides: Any) -> GuardianOverrideRequest:
    values: dict[str, Any] = {
        "id": f"ovr-{uuid4().hex[:8]}",
        "tenant_id": "t1",
        "subject_id": "student-1",
        "rule_ids_json": [],
        "status": "approved",
        "reason": "Approved by DSL",
    }
    values.update(overrides)
    return GuardianOverrideRequest(**values)


def make_workflow(**overrides: Any) -> ComplianceWorkflow:
    values: dict[str, Any] = {
        "id": f"wf-{uuid4().hex[:8]}",
        "tenant_id": "t1",
        "name": "Unexplained Absence",
        "trigger_event": "attendance_marked",
        "condition_json": {"field": "status", "operator": "eq", "value": "unexplained"},
        "action": "create_case",
        "action_params_json": None,
        "sla_hours": None,
        "enabled": True,
    }
    values.update(overrides)
    return ComplianceWorkflow(**values)


def make_event(**overrides: Any) -> GuardianEvent:
    values: dict[str, Any] = {
        "tenant_id": "t1",
        "event_type": "message_send",
        "subject_type": "student",
        "subject_id": "student-1",
        "actor_id": "staff-1",
        "timestamp": FIXED_NOW,
        "context": {},
    }
    values.update(overrides)
    return GuardianEvent(**values)


class FakeRuleRepository:
    def __init__(self, rules: list[PolicyRule] | None = None, *, error: Exception | None = None,
                 delay_s: float = 0.0) -> None:
        self.rules = list(rules or [])
        self.error = error
        self.delay_s = delay_s
        self.calls = 0

    async def list_active_rules(self, *, tenant_id: str, event_type: str) -> list[PolicyRule]:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return [rule for rule in self.rules if rule.tenant_id == tenant_id and rule.trigger_event == event_type]


class FakeOverrideRepository:
    def __init__(self, overrides: list[GuardianOverrideRequest] | None = None, *,
                 error: Exception | None = None) -> None:
        self.overrides = list(overrides or [])
        self.error = error

    async def list_approved_overrides(self, *, tenant_id: str, subject_id: str) -> list[GuardianOverrideRequest]:
        if self.error is not None:
            raise self.error
        return [
            row
            for row in self.overrides
            if row.tenant_id == tenant_id and row.subject_id == subject_id and row.status == "approved"
        ]


class RecordingFindingWriter:
    def __init__(self, *, fail_times: int = 0, error: Exception | None = None) -> None:
        self.inserted: list[Finding] = []
        self.fail_times = fail_times
        self.error = error or OSError("database unreachable")
        self.attempts = 0

    async def insert_finding(self, finding: Finding) -> None:
        self.attempts += 1
        if self.fail_times:
            self.fail_times -= 1
            raise self.error
        self.inserted.append(finding)


class FakeWorkflowRepository:
    def __init__(self, workflows: list[ComplianceWorkflow] | None = None, *,
                 error: Exception | None = None) -> None:
        self.workflows = list(workflows or [])
        self.error = error

    async def list_workflows(self, *, tenant_id: str, event_type: str) -> list[ComplianceWorkflow]:
        if self.error is not None:
            raise self.error
        return [
            wf
            for wf in self.workflows
            if wf.tenant_id == tenant_id and wf.trigger_event == event_type and wf.enabled
        ]

    async def get_workflow(self, *, tenant_id: str, workflow_id: str) -> ComplianceWorkflow | None:
        if self.error is not None:
            raise self.error
        for wf in self.workflows:
            if wf.id == workflow_id and wf.tenant_id == tenant_id and wf.enabled:
                return wf
        return None


class FakeJobRepository:
    """In-memory job store with the same claim/lease semantics as the SQL one."""

    def __init__(self) -> None:
        self.jobs: dict[str, ScheduledJob] = {}

    async def create_job(self, *, tenant_id: str, workflow_id: str, subject_type: str, subject_id: str,
                         event_snapshot: dict[str, Any], execute_at: datetime) -> ScheduledJob:
        job = ScheduledJob(
            id=uuid4().hex,
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            subject_type=subject_type,
            subject_id=subject_id,
            event_snapshot_json=event_snapshot,
            execute_at=execute_at,
            status="pending",
            outcome=None,
            attempts=0,
            claimed_until=None,
            last_error=None,
            action_result_json=None,
            fired_at=None,
            cancelled_at=None,
        )
        self.jobs[job.id] = job
        return job

    def _claimable(self, job: ScheduledJob, now: datetime) -> bool:
        return (
            job.status == "pending"
            and job.execute_at <= now
            and (job.claimed_until is None or job.claimed_until <= now)
        )

    async def claim_job(self, *, job_id: str, now: datetime, lease_until: datetime) -> ScheduledJob | None:
        job = self.jobs.get(job_id)
        if job is None or not self._claimable(job, now):
            return None
        job.claimed_until = lease_until
        job.attempts += 1
        return job

    async def list_due_job_ids(self, *, now: datetime, limit: int) -> list[str]:
        due = sorted(
            (job for job in self.jobs.values() if self._claimable(job, now)),
            key=lambda job: (job.execute_at, job.id),
        )
        return [job.id for job in due[:limit]]

    async def mark_fired(self, *, job_id: str, outcome: str, fired_at: datetime,
                         action_result: dict[str, Any] | None = None, error: str | None = None) -> None:
        job = self.jobs[job_id]
        if job.status != "pending":
            return
        job.status = "fired"
        job.outcome = outcome
        job.fired_at = fired_at
        job.action_result_json = action_result
        job.last_error = error
        job.claimed_until = None

    async def release_job(self, *, job_id: str, retry_at: datetime, error: str) -> None:
        job = self.jobs[job_id]
        if job.status == "pending":
            job.claimed_until = retry_at
            job.last_error = error

    async def cancel_jobs(self, *, tenant_id: str, cancelled_at: datetime, job_id: str | None = None,
                          subject_id: str | None = None, workflow_id: str | None = None) -> int:
        count = 0
        for job in self.jobs.values():
            if job.tenant_id != tenant_id or job.status != "pending":
                continue
            if job_id and job.id != job_id:
                continue
            if subject_id and job.subject_id != subject_id:
                continue
            if workflow_id and job.workflow_id != workflow_id:
                continue
            job.status = "cancelled"
            job.cancelled_at = cancelled_at
            job.claimed_until = None
            count += 1
        return count

    async def list_jobs(self, *, tenant_id: str, status: str | None = None, subject_id: str | None = None,
                        offset: int = 0, limit: int = 50) -> list[ScheduledJob]:
        rows = [
            job
            for job in self.jobs.values()
            if job.tenant_id == tenant_id
            and (status is None or job.status == status)
            and (subject_id is None or job.subject_id == subject_id)
        ]
        rows.sort(key=lambda job: (job.execute_at, job.id), reverse=True)
        return rows[offset : offset + limit]


class FakeStateProvider:
    def __init__(self, states: dict[str, dict[str, Any]] | None = None, *,
                 error: Exception | None = None, failing_subjects: set[str] | None = None) -> None:
        self.states = states or {}
        self.error = error
        self.failing_subjects = failing_subjects or set()
        self.calls: list[str] = []

    async def fetch_current_state(self, *, tenant_id: str, subject_type: str, subject_id: str) -> dict[str, Any]:
        self.calls.append(subject_id)
        if self.error is not None and (not self.failing_subjects or subject_id in self.failing_subjects):
            raise self.error
        return dict(self.states.get(subject_id, {}))


class RecordingExecutor:
    """Builds intents with the real handlers but records executions instead of writing."""

    def __init__(self, *, registry: ActionRegistry | None = None, error: Exception | None = None) -> None:
        self.registry = registry or ActionRegistry()
        self.error = error
        self.executed: list[tuple[str, ActionIntent]] = []

    def build_intent(self, event: GuardianEvent, workflow: ComplianceWorkflow) -> ActionIntent:
        handler = self.registry.resolve(workflow.action, tenant_id=event.tenant_id)
        return ActionIntent(type=workflow.action, payload=handler.build(event, workflow), workflow_id=workflow.id)

    async def execute(self, intent: ActionIntent, *, tenant_id: str) -> ActionResult:
        if self.error is not None:
            raise self.error
        self.executed.append((tenant_id, intent))
        return ActionResult(action_type=intent.type, status="executed", reference_id=f"ref-{len(self.executed)}")


class RecordingEnqueue:
    def __init__(self, *, result: bool = True) -> None:
        self.calls: list[tuple[str, datetime]] = []
        self.attempts: list[int] = []
        self.result = result

    async def __call__(self, job_id: str, *, execute_at: datetime, attempt: int = 0) -> bool:
        self.calls.append((job_id, execute_at))
        self.attempts.append(attempt)
        return self.result
