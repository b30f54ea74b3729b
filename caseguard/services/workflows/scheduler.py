from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Mapping

from caseguard.core.config import get_settings
from caseguard.core.errors import ConditionError, PersistenceError, StateUnavailableError, UnknownActionError
from caseguard.domain.events import INTENT_SCHEDULE_JOB, ActionIntent, GuardianEvent, thaw
from caseguard.domain.models import ScheduledJob
from caseguard.persistence.repos.base import JobRepository, WorkflowRepository
from caseguard.persistence.repos.jobs import SqlJobRepository
from caseguard.persistence.repos.workflows import SqlWorkflowRepository
from caseguard.services.resilience import bounded_lookup, retry_async
from caseguard.services.telemetry import increment_counter
from caseguard.services.workflows.actions import ActionExecutor
from caseguard.services.workflows.conditions import evaluate_condition, parse_condition
from caseguard.services.workflows.queue import enqueue_fire_job
from caseguard.services.workflows.state import HttpStateProvider, StateProvider


logger = logging.getLogger(__name__)

JOB_OUTCOME_EXECUTED = "executed"
JOB_OUTCOME_CONDITION_CLEARED = "condition_cleared"
JOB_OUTCOME_WORKFLOW_MISSING = "workflow_missing"
JOB_OUTCOME_FAILED = "failed"

# Fire-call results that leave the row untouched or pending.
FIRE_SKIPPED = "skipped"
FIRE_RETRY = "retry"
FIRE_FIRED = "fired"

EnqueueFn = Callable[..., Awaitable[bool]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_execute_at(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError("schedule_job payload requires execute_at")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    status: str
    outcome: str | None = None
    action_result: Mapping[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "outcome": self.outcome,
            "action_result": dict(self.action_result) if self.action_result is not None else None,
            "error": self.error,
        }


class _FireFailure(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class Scheduler:
    """Durable delayed execution of workflow actions.

    A job row is written before anything is queued; arq delivery is only a
    wake-up call. Firing re-reads the workflow and the subject's live state so
    a condition resolved during the SLA window cancels the action.
    """

    def __init__(
        self,
        *,
        jobs: JobRepository | None = None,
        workflows: WorkflowRepository | None = None,
        state_provider: StateProvider | None = None,
        executor: ActionExecutor | None = None,
        enqueue: EnqueueFn | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._jobs = jobs or SqlJobRepository()
        self._workflows = workflows or SqlWorkflowRepository()
        self._state_provider = state_provider or HttpStateProvider()
        self._executor = executor or ActionExecutor()
        self._enqueue = enqueue or enqueue_fire_job
        self._clock = clock or _utc_now

    async def schedule(self, intent: ActionIntent) -> ScheduledJob:
        if intent.type != INTENT_SCHEDULE_JOB:
            raise UnknownActionError(f"scheduler only accepts {INTENT_SCHEDULE_JOB} intents, got {intent.type!r}")
        payload = intent.payload
        snapshot = thaw(payload.get("event") or {})
        workflow_id = str(payload.get("workflow_id") or intent.workflow_id or "")
        if not workflow_id or not snapshot.get("tenant_id"):
            raise ValueError("schedule_job payload requires workflow_id and an event snapshot")
        execute_at = _parse_execute_at(payload.get("execute_at"))

        try:
            job = await retry_async(
                lambda: self._jobs.create_job(
                    tenant_id=str(snapshot["tenant_id"]),
                    workflow_id=workflow_id,
                    subject_type=str(snapshot.get("subject_type") or ""),
                    subject_id=str(snapshot.get("subject_id") or ""),
                    event_snapshot=snapshot,
                    execute_at=execute_at,
                ),
                counter="workflow_job_write_retries_total",
            )
        except Exception as exc:  # noqa: BLE001 - surfaced as a typed persistence failure
            increment_counter("workflow_job_write_failures_total")
            logger.error(
                "workflow_job_persist_failed data_loss_risk=true tenant_id=%s workflow_id=%s",
                snapshot.get("tenant_id"),
                workflow_id,
                exc_info=exc,
            )
            raise PersistenceError(f"scheduled job could not be stored for workflow {workflow_id}") from exc

        await self._enqueue(job.id, execute_at=execute_at)
        increment_counter("workflow_jobs_scheduled_total")
        logger.info(
            "workflow_job_scheduled job_id=%s tenant_id=%s workflow_id=%s execute_at=%s",
            job.id,
            job.tenant_id,
            workflow_id,
            execute_at.isoformat(),
        )
        return job

    async def fire(self, job_id: str) -> JobOutcome:
        settings = get_settings()
        now = self._clock()
        job = await self._jobs.claim_job(
            job_id=job_id,
            now=now,
            lease_until=now + timedelta(seconds=settings.scheduler_claim_lease_s),
        )
        if job is None:
            # Already fired, cancelled, not yet due or leased by another worker.
            return JobOutcome(job_id=job_id, status=FIRE_SKIPPED)

        try:
            return await self._fire_claimed(job)
        except _FireFailure as failure:
            return await self._retry_or_fail(job, failure)

    async def _fire_claimed(self, job: ScheduledJob) -> JobOutcome:
        try:
            workflow = await bounded_lookup(
                lambda: self._workflows.get_workflow(tenant_id=job.tenant_id, workflow_id=job.workflow_id)
            )
        except Exception as exc:  # noqa: BLE001 - retried via the job lease
            logger.error(
                "workflow_config_unavailable job_id=%s tenant_id=%s workflow_id=%s",
                job.id,
                job.tenant_id,
                job.workflow_id,
                exc_info=exc,
            )
            raise _FireFailure("workflow lookup failed") from exc
        if workflow is None:
            return await self._mark(job, JOB_OUTCOME_WORKFLOW_MISSING)

        try:
            predicate = parse_condition(workflow.condition_json)
        except ConditionError as exc:
            logger.warning(
                "workflow_condition_invalid job_id=%s workflow_id=%s error=%s", job.id, workflow.id, exc
            )
            return await self._mark(job, JOB_OUTCOME_CONDITION_CLEARED, error=str(exc))

        try:
            state = await bounded_lookup(
                lambda: self._state_provider.fetch_current_state(
                    tenant_id=job.tenant_id,
                    subject_type=job.subject_type,
                    subject_id=job.subject_id,
                )
            )
        except (StateUnavailableError, TimeoutError, OSError) as exc:
            raise _FireFailure(f"live state unavailable: {exc}") from exc

        try:
            still_matches = evaluate_condition(predicate, state)
        except ConditionError as exc:
            logger.warning(
                "workflow_condition_uncomparable job_id=%s workflow_id=%s error=%s", job.id, workflow.id, exc
            )
            still_matches = False
        if not still_matches:
            return await self._mark(job, JOB_OUTCOME_CONDITION_CLEARED)

        event = GuardianEvent.from_snapshot(job.event_snapshot_json or {})
        try:
            intent = self._executor.build_intent(event, workflow)
            result = await self._executor.execute(intent, tenant_id=job.tenant_id)
        except UnknownActionError as exc:
            # Config drift: the workflow's action left the whitelist after scheduling.
            return await self._mark(job, JOB_OUTCOME_FAILED, error=str(exc))
        except Exception as exc:  # noqa: BLE001 - retried via the job lease
            logger.warning("workflow_action_failed job_id=%s error=%s", job.id, type(exc).__name__, exc_info=exc)
            raise _FireFailure(f"action failed: {type(exc).__name__}") from exc
        return await self._mark(job, JOB_OUTCOME_EXECUTED, action_result=result.to_dict())

    async def _mark(
        self,
        job: ScheduledJob,
        outcome: str,
        *,
        action_result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> JobOutcome:
        await retry_async(
            lambda: self._jobs.mark_fired(
                job_id=job.id,
                outcome=outcome,
                fired_at=self._clock(),
                action_result=action_result,
                error=error,
            ),
            counter="workflow_job_write_retries_total",
        )
        increment_counter(f"workflow_jobs_{outcome}_total")
        logger.info(
            "workflow_job_fired job_id=%s tenant_id=%s workflow_id=%s outcome=%s",
            job.id,
            job.tenant_id,
            job.workflow_id,
            outcome,
        )
        return JobOutcome(
            job_id=job.id,
            status=FIRE_FIRED,
            outcome=outcome,
            action_result=action_result,
            error=error,
        )

    async def _retry_or_fail(self, job: ScheduledJob, failure: _FireFailure) -> JobOutcome:
        settings = get_settings()
        attempts = int(job.attempts or 0)
        if attempts >= settings.scheduler_max_attempts:
            logger.error(
                "workflow_job_failed job_id=%s tenant_id=%s attempts=%s reason=%s",
                job.id,
                job.tenant_id,
                attempts,
                failure.reason,
            )
            return await self._mark(job, JOB_OUTCOME_FAILED, error=failure.reason)

        retry_at = self._clock() + timedelta(seconds=settings.scheduler_retry_backoff_s * max(attempts, 1))
        await self._jobs.release_job(job_id=job.id, retry_at=retry_at, error=failure.reason)
        # A fresh arq id per attempt; arq drops a re-used id while the earlier result is kept.
        await self._enqueue(job.id, execute_at=retry_at, attempt=attempts)
        increment_counter("workflow_job_retries_total")
        logger.warning(
            "workflow_job_retry_scheduled job_id=%s attempts=%s retry_at=%s reason=%s",
            job.id,
            attempts,
            retry_at.isoformat(),
            failure.reason,
        )
        return JobOutcome(job_id=job.id, status=FIRE_RETRY, error=failure.reason)

    async def run_due_jobs(self, limit: int | None = None) -> list[JobOutcome]:
        batch = limit if limit is not None else get_settings().scheduler_batch_size
        job_ids = await self._jobs.list_due_job_ids(now=self._clock(), limit=batch)
        if not job_ids:
            return []
        results = await asyncio.gather(*(self.fire(job_id) for job_id in job_ids), return_exceptions=True)
        outcomes: list[JobOutcome] = []
        for job_id, result in zip(job_ids, results):
            if isinstance(result, BaseException):
                # One job's failure never blocks the rest; its lease expires and it is retried.
                logger.error("workflow_job_fire_crashed job_id=%s", job_id, exc_info=result)
                outcomes.append(JobOutcome(job_id=job_id, status=FIRE_RETRY, error=type(result).__name__))
                continue
            outcomes.append(result)
        return outcomes

    async def cancel(self, *, tenant_id: str, job_id: str) -> bool:
        count = await self._jobs.cancel_jobs(tenant_id=tenant_id, job_id=job_id, cancelled_at=self._clock())
        if count:
            increment_counter("workflow_jobs_cancelled_total", count)
            logger.info("workflow_job_cancelled job_id=%s tenant_id=%s", job_id, tenant_id)
        return count > 0

    async def cancel_for_subject(
        self,
        *,
        tenant_id: str,
        subject_id: str,
        workflow_id: str | None = None,
    ) -> int:
        count = await self._jobs.cancel_jobs(
            tenant_id=tenant_id,
            subject_id=subject_id,
            workflow_id=workflow_id,
            cancelled_at=self._clock(),
        )
        if count:
            increment_counter("workflow_jobs_cancelled_total", count)
            logger.info(
                "workflow_jobs_cancelled_for_subject tenant_id=%s subject_id=%s count=%s",
                tenant_id,
                subject_id,
                count,
            )
        return count

    async def list_jobs(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        subject_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ScheduledJob]:
        return list(
            await self._jobs.list_jobs(
                tenant_id=tenant_id, status=status, subject_id=subject_id, offset=offset, limit=limit
            )
        )
