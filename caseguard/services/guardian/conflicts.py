from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from caseguard.domain.models import PolicyRule
from caseguard.persistence.repos.rules import RULE_STATUS_ACTIVE


CONFLICT_DUPLICATE_ACTIVE_RULES = "duplicate_active_rules"
CONFLICT_ENFORCEMENT_COLLISION = "enforcement_collision"


@dataclass(frozen=True)
class PolicyConflict:
    tenant_id: str
    conflict_type: str
    severity: str
    rule_ids: tuple[str, ...]
    description: str
    detected_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "conflict_type": self.conflict_type,
            "severity": self.severity,
            "rule_ids": list(self.rule_ids),
            "description": self.description,
            "detected_at": self.detected_at.isoformat(),
        }


def detect_conflicts(rules: Iterable[PolicyRule], *, now: datetime | None = None) -> list[PolicyConflict]:
    """Report configuration hygiene issues across a tenant's live rules.

    Only enabled, active rules are compared since dormant rules never run.
    """
    detected_at = now or datetime.now(timezone.utc)
    active = sorted(
        (rule for rule in rules if rule.enabled and rule.status == RULE_STATUS_ACTIVE),
        key=lambda rule: rule.id,
    )
    conflicts: list[PolicyConflict] = []

    by_name: dict[tuple[str, str, str, str], list[PolicyRule]] = defaultdict(list)
    for rule in active:
        name = (rule.name or "").strip().lower()
        if not name:
            continue
        by_name[(rule.tenant_id, name, rule.trigger_event, rule.trigger_condition)].append(rule)
    for (tenant_id, _name, trigger_event, _condition), group in by_name.items():
        if len(group) < 2:
            continue
        conflicts.append(
            PolicyConflict(
                tenant_id=tenant_id,
                conflict_type=CONFLICT_DUPLICATE_ACTIVE_RULES,
                severity="warning",
                rule_ids=tuple(rule.id for rule in group),
                description=(
                    f'Multiple active rules named "{group[0].name}" on "{trigger_event}". '
                    "This causes redundant evaluations and duplicate findings."
                ),
                detected_at=detected_at,
            )
        )

    by_trigger: dict[tuple[str, str, str], list[PolicyRule]] = defaultdict(list)
    for rule in active:
        by_trigger[(rule.tenant_id, rule.trigger_event, rule.trigger_condition)].append(rule)
    for (tenant_id, trigger_event, condition), group in by_trigger.items():
        modes = {rule.mode for rule in group}
        if "enforce" in modes and "advisory" in modes:
            conflicts.append(
                PolicyConflict(
                    tenant_id=tenant_id,
                    conflict_type=CONFLICT_ENFORCEMENT_COLLISION,
                    severity="critical",
                    rule_ids=tuple(rule.id for rule in group),
                    description=(
                        f'Mixed enforcement modes for trigger "{trigger_event}/{condition}". '
                        "The same violation is both advisory and enforced."
                    ),
                    detected_at=detected_at,
                )
            )
    return conflicts
