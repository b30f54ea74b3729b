from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Any, Awaitable, Callable, Iterable, Sequence

from caseguard.core.config import get_settings
from caseguard.core.errors import ConditionError, ConfigurationError, UnknownActionError
from caseguard.domain.events import INTENT_SCHEDULE_JOB, ActionIntent, GuardianEvent
from caseguard.domain.models import ComplianceWorkflow
from caseguard.persistence.repos.base import WorkflowRepository
from caseguard.persistence.repos.workflows import SqlWorkflowRepository
from caseguard.services.audit import AUDIT_WORKFLOW_CONFIG_INVALID, record_event
from caseguard.services.resilience import bounded_lookup
from caseguard.services.telemetry import increment_counter
from caseguard.services.workflows.actions import ActionExecutor
from caseguard.services.workflows.conditions import Predicate, evaluate_condition, parse_condition
from caseguard.services.workflows.scheduler import Scheduler


logger = logging.getLogger(__name__)

DISPATCH_EXECUTED = "executed"
DISPATCH_SCHEDULED = "scheduled"
DISPATCH_FAILED = "failed"

# Ten years; anything longer is a configuration mistake and would overflow timedelta.
MAX_SLA_HOURS = 24 * 366 * 10


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CompiledWorkflow:
    workflow: ComplianceWorkflow
    predicate: Predicate


@dataclass(frozen=True)
class ConfigWarning:
    tenant_id: str
    workflow_id: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"tenant_id": self.tenant_id, "workflow_id": self.workflow_id, "reason": self.reason}


@dataclass(frozen=True)
class DispatchOutcome:
    intent: ActionIntent
    status: str
    reference_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.to_dict(),
            "status": self.status,
            "reference_id": self.reference_id,
            "error": self.error,
        }


ConfigWarningHandler = Callable[[ConfigWarning], Awaitable[None]]


async def audit_config_warning(warning: ConfigWarning) -> None:
    # Surfaced to tenant admins through the audit trail.
    await record_event(
        tenant_id=warning.tenant_id,
        actor_type="system",
        actor_id="system_workflow_engine",
        event_type=AUDIT_WORKFLOW_CONFIG_INVALID,
        outcome="failure",
        resource_type="compliance_workflow",
        resource_id=warning.workflow_id,
        metadata={"reason": warning.reason},
        error_code="WORKFLOW_CONFIG_INVALID",
    )


class WorkflowEngine:
    """Turns a guarded event into action intents.

    ``evaluate_trigger`` is side-effect free apart from configuration
    warnings; ``dispatch`` hands intents to the Scheduler or the
    ActionExecutor.
    """

    def __init__(
        self,
        *,
        repository: WorkflowRepository | None = None,
        executor: ActionExecutor | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] | None = None,
        on_config_warning: ConfigWarningHandler | None = None,
    ) -> None:
        self._repository = repository or SqlWorkflowRepository()
        self._executor = executor or ActionExecutor()
        self._scheduler = scheduler
        self._clock = clock or _utc_now
        self._on_config_warning = on_config_warning or audit_config_warning

    def compile_workflow(self, workflow: ComplianceWorkflow) -> CompiledWorkflow:
        """Raise ``ConditionError`` or ``UnknownActionError`` for unusable config."""
        if not self._executor.registry.is_supported(workflow.action):
            raise UnknownActionError(f"unknown action type: {workflow.action!r}")
        if workflow.sla_hours is not None:
            sla_hours = float(workflow.sla_hours)
            if not math.isfinite(sla_hours) or sla_hours < 0:
                raise ConditionError(f"sla_hours must be a finite, non-negative number: {workflow.sla_hours!r}")
            if sla_hours > MAX_SLA_HOURS:
                raise ConditionError(f"sla_hours exceeds {MAX_SLA_HOURS}: {workflow.sla_hours!r}")
        return CompiledWorkflow(workflow=workflow, predicate=parse_condition(workflow.condition_json))

    def validate_workflows(self, workflows: Iterable[ComplianceWorkflow]) -> list[ConfigWarning]:
        warnings: list[ConfigWarning] = []
        for workflow in workflows:
            try:
                self.compile_workflow(workflow)
            except (ConditionError, UnknownActionError) as exc:
                warnings.append(ConfigWarning(tenant_id=workflow.tenant_id, workflow_id=workflow.id, reason=str(exc)))
        return warnings

    async def load_workflows(self, *, tenant_id: str, event_type: str) -> list[CompiledWorkflow]:
        try:
            workflows = await bounded_lookup(
                lambda: self._repository.list_workflows(tenant_id=tenant_id, event_type=event_type)
            )
        except Exception as exc:  # noqa: BLE001 - reported as a typed configuration failure
            increment_counter("workflow_config_unavailable_total")
            logger.error(
                "workflow_config_unavailable tenant_id=%s event_type=%s",
                tenant_id,
                event_type,
                exc_info=exc,
            )
            raise ConfigurationError(f"workflows unavailable for {tenant_id}/{event_type}") from exc

        compiled: list[CompiledWorkflow] = []
        for workflow in workflows:
            if not workflow.enabled:
                continue
            try:
                compiled.append(self.compile_workflow(workflow))
            except (ConditionError, UnknownActionError) as exc:
                await self._warn(ConfigWarning(tenant_id=tenant_id, workflow_id=workflow.id, reason=str(exc)))
        return compiled

    async def evaluate_trigger(self, event: GuardianEvent) -> list[ActionIntent]:
        if not get_settings().workflows_enabled:
            return []
        compiled = await self.load_workflows(tenant_id=event.tenant_id, event_type=event.event_type)
        now = self._clock()
        intents: list[ActionIntent] = []
        for item in compiled:
            workflow = item.workflow
            try:
                matched = evaluate_condition(item.predicate, event.context)
            except ConditionError as exc:
                await self._warn(ConfigWarning(tenant_id=event.tenant_id, workflow_id=workflow.id, reason=str(exc)))
                continue
            if not matched:
                continue
            sla_hours = float(workflow.sla_hours or 0)
            if sla_hours > 0:
                intents.append(
                    ActionIntent(
                        type=INTENT_SCHEDULE_JOB,
                        payload={
                            "workflow_id": workflow.id,
                            "execute_at": now + timedelta(hours=sla_hours),
                            "event": event.to_snapshot(),
                        },
                        workflow_id=workflow.id,
                    )
                )
            else:
                intents.append(self._executor.build_intent(event, workflow))
        if intents:
            increment_counter("workflow_intents_total", len(intents))
        return intents

    async def dispatch(self, intents: Sequence[ActionIntent], *, tenant_id: str) -> list[DispatchOutcome]:
        outcomes: list[DispatchOutcome] = []
        for intent in intents:
            try:
                if intent.type == INTENT_SCHEDULE_JOB:
                    job = await self._get_scheduler().schedule(intent)
                    outcomes.append(DispatchOutcome(intent=intent, status=DISPATCH_SCHEDULED, reference_id=job.id))
                else:
                    result = await self._executor.execute(intent, tenant_id=tenant_id)
                    outcomes.append(
                        DispatchOutcome(intent=intent, status=DISPATCH_EXECUTED, reference_id=result.reference_id)
                    )
            except Exception as exc:  # noqa: BLE001 - one failed intent must not drop the others
                increment_counter("workflow_dispatch_failures_total")
                logger.error(
                    "workflow_dispatch_failed tenant_id=%s intent=%s workflow_id=%s",
                    tenant_id,
                    intent.type,
                    intent.workflow_id,
                    exc_info=exc,
                )
                outcomes.append(DispatchOutcome(intent=intent, status=DISPATCH_FAILED, error=type(exc).__name__))
        return outcomes

    async def handle_event(self, event: GuardianEvent) -> list[DispatchOutcome]:
        intents = await self.evaluate_trigger(event)
        return await self.dispatch(intents, tenant_id=event.tenant_id)

    def _get_scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = Scheduler(executor=self._executor, workflows=self._repository, clock=self._clock)
        return self._scheduler

    async def _warn(self, warning: ConfigWarning) -> None:
        increment_counter("workflow_config_warnings_total")
        logger.warning(
            "workflow_config_invalid tenant_id=%s workflow_id=%s reason=%s",
            warning.tenant_id,
            warning.workflow_id,
            warning.reason,
        )
        await self._on_config_warning(warning)
