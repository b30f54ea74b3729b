from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable
from uuid import uuid4

from caseguard.core.config import get_settings
from caseguard.core.errors import ConfigurationError, EvaluatorError, GuardianBlockedError
from caseguard.domain.events import (
    FINDING_STATUS_OPEN,
    FINDING_STATUS_OVERRIDDEN,
    EvaluationResult,
    Finding,
    GuardianEvent,
)
from caseguard.domain.models import PolicyRule
from caseguard.persistence.repos.base import RuleRepository
from caseguard.persistence.repos.rules import RULE_STATUS_ACTIVE, SqlRuleRepository
from caseguard.services.guardian.findings import FindingStore
from caseguard.services.guardian.overrides import OverrideResolver
from caseguard.services.guardian.triggers import TriggerRegistry, default_registry
from caseguard.services.resilience import bounded_lookup
from caseguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SEVERITY_CRITICAL = "critical"
MODE_ENFORCE = "enforce"
ROLLOUT_SIMULATE = "simulate"

# Synthetic rule id carried by the fail-closed finding.
SYSTEM_CONFIGURATION_RULE_ID = "system.configuration_unavailable"
_CONFIGURATION_MESSAGE = "Compliance policy could not be verified; the action is blocked."
_CONFIGURATION_REMEDIATION = "Retry shortly. If this persists, contact your compliance administrator."


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_blocking(*, simulated: bool, mode: str, severity: str, block_actions: bool, overridden: bool) -> bool:
    # The single blocking rule: live, enforced, critical, configured to block and not overridden.
    return (
        not simulated
        and mode == MODE_ENFORCE
        and severity == SEVERITY_CRITICAL
        and bool(block_actions)
        and not overridden
    )


@dataclass(frozen=True)
class _RuleOutcome:
    finding: Finding | None
    configuration_failed: bool = False


class EvaluationEngine:
    """Classifies a guarded event against the tenant's active policy rules."""

    def __init__(
        self,
        *,
        rules: RuleRepository | None = None,
        overrides: OverrideResolver | None = None,
        findings: FindingStore | None = None,
        triggers: TriggerRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rules = rules or SqlRuleRepository()
        self._overrides = overrides or OverrideResolver()
        self._findings = findings or FindingStore()
        self._triggers = triggers or default_registry
        self._clock = clock or _utc_now

    async def evaluate(self, event: GuardianEvent) -> EvaluationResult:
        if not get_settings().guardian_enabled:
            logger.warning("guardian_disabled event_type=%s tenant_id=%s", event.event_type, event.tenant_id)
            return EvaluationResult()

        findings: list[Finding] = []
        try:
            rules = await bounded_lookup(
                lambda: self._rules.list_active_rules(tenant_id=event.tenant_id, event_type=event.event_type)
            )
        except Exception as exc:  # noqa: BLE001 - any fetch failure must fail closed
            self._alert_configuration_failure(event, ConfigurationError(f"policy rules unavailable: {exc!r}"))
            findings.append(self._configuration_finding(event))
        else:
            # Re-apply the dormancy filter so no repository can leak draft/archived/disabled rules.
            active = [rule for rule in rules if rule.enabled and rule.status == RULE_STATUS_ACTIVE]
            outcomes = await asyncio.gather(*(self._evaluate_rule(event, rule) for rule in active))
            findings.extend(outcome.finding for outcome in outcomes if outcome.finding is not None)
            if any(outcome.configuration_failed for outcome in outcomes):
                findings.append(self._configuration_finding(event))

        # The decision is fixed here; persistence below can only log, never revoke it.
        result = EvaluationResult(findings=tuple(findings))
        await self._findings.append_all(result.findings)

        increment_counter("guardian_evaluations_total")
        if result.findings:
            increment_counter("guardian_findings_total", len(result.findings))
        if not result.can_proceed:
            increment_counter("guardian_blocked_total")
            logger.info(
                "guardian_action_blocked event_type=%s tenant_id=%s subject_id=%s blocking=%s",
                event.event_type,
                event.tenant_id,
                event.subject_id,
                len(result.blocking_findings),
            )
        return result

    async def guard(self, event: GuardianEvent) -> EvaluationResult:
        """Evaluate and raise ``GuardianBlockedError`` when the action must abort."""
        result = await self.evaluate(event)
        if not result.can_proceed:
            raise GuardianBlockedError(result)
        return result

    async def _evaluate_rule(self, event: GuardianEvent, rule: PolicyRule) -> _RuleOutcome:
        try:
            message = self._triggers.evaluate(rule.trigger_condition, event.context)
        except EvaluatorError as exc:
            # One broken evaluator must not take down the other checks.
            increment_counter("guardian_evaluator_errors_total")
            logger.warning(
                "guardian_evaluator_failed rule_id=%s condition=%s tenant_id=%s",
                rule.id,
                rule.trigger_condition,
                event.tenant_id,
                exc_info=exc,
            )
            return _RuleOutcome(finding=None)
        if not message:
            return _RuleOutcome(finding=None)

        configuration_failed = False
        try:
            overridden = await self._overrides.is_overridden(
                tenant_id=event.tenant_id,
                subject_id=event.subject_id,
                rule_id=rule.id,
            )
        except Exception as exc:  # noqa: BLE001 - override lookup failure fails closed
            self._alert_configuration_failure(event, ConfigurationError(f"overrides unavailable: {exc!r}"))
            overridden = False
            configuration_failed = True

        simulated = rule.rollout_mode == ROLLOUT_SIMULATE
        blocking = is_blocking(
            simulated=simulated,
            mode=rule.mode,
            severity=rule.severity,
            block_actions=rule.block_actions,
            overridden=overridden,
        )
        finding = Finding(
            id=uuid4().hex,
            tenant_id=event.tenant_id,
            rule_id=rule.id,
            event_type=event.event_type,
            subject_type=event.subject_type,
            subject_id=event.subject_id,
            actor_id=event.actor_id,
            severity=rule.severity,
            message=message,
            remediation=rule.remediation,
            status=FINDING_STATUS_OVERRIDDEN if overridden else FINDING_STATUS_OPEN,
            blocking=blocking,
            simulated=simulated,
            created_at=self._clock(),
        )
        return _RuleOutcome(finding=finding, configuration_failed=configuration_failed)

    def _configuration_finding(self, event: GuardianEvent) -> Finding:
        return Finding(
            id=uuid4().hex,
            tenant_id=event.tenant_id,
            rule_id=SYSTEM_CONFIGURATION_RULE_ID,
            event_type=event.event_type,
            subject_type=event.subject_type,
            subject_id=event.subject_id,
            actor_id=event.actor_id,
            severity=SEVERITY_CRITICAL,
            message=_CONFIGURATION_MESSAGE,
            remediation=_CONFIGURATION_REMEDIATION,
            status=FINDING_STATUS_OPEN,
            blocking=True,
            simulated=False,
            created_at=self._clock(),
        )

    def _alert_configuration_failure(self, event: GuardianEvent, exc: ConfigurationError) -> None:
        increment_counter("guardian_fail_closed_total")
        logger.error(
            "guardian_configuration_unavailable fail_closed=true tenant_id=%s event_type=%s subject_id=%s error=%s",
            event.tenant_id,
            event.event_type,
            event.subject_id,
            exc,
        )
