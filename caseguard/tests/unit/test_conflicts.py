from __future__ import annotations

from caseguard.services.guardian.conflicts import (
    CONFLICT_DUPLICATE_ACTIVE_RULES,
    CONFLICT_ENFORCEMENT_COLLISION,
    detect_conflicts,
)
from caseguard.tests.utils.fakes import FIXED_NOW, make_rule


def test_no_conflicts_for_distinct_rules() -> None:
    rules = [
        make_rule(id="r1", name="Public PII"),
        make_rule(id="r2", name="Consent", trigger_condition="missing_consent"),
    ]
    assert detect_conflicts(rules, now=FIXED_NOW) == []


def test_duplicate_active_rules_are_reported_case_insensitively() -> None:
    rules = [
        make_rule(id="r1", name="Public PII"),
        make_rule(id="r2", name="public pii "),
    ]

    conflicts = detect_conflicts(rules, now=FIXED_NOW)

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.conflict_type == CONFLICT_DUPLICATE_ACTIVE_RULES
    assert conflict.severity == "warning"
    assert conflict.rule_ids == ("r1", "r2")
    assert conflict.to_dict()["detected_at"] == FIXED_NOW.isoformat()


def test_mixed_modes_on_same_trigger_are_critical() -> None:
    rules = [
        make_rule(id="r1", name="PII enforce", mode="enforce"),
        make_rule(id="r2", name="PII advisory", mode="advisory"),
    ]

    conflicts = detect_conflicts(rules, now=FIXED_NOW)

    assert [conflict.conflict_type for conflict in conflicts] == [CONFLICT_ENFORCEMENT_COLLISION]
    assert conflicts[0].severity == "critical"
    assert set(conflicts[0].rule_ids) == {"r1", "r2"}


def test_dormant_rules_are_not_compared() -> None:
    rules = [
        make_rule(id="r1", name="PII", mode="enforce"),
        make_rule(id="r2", name="PII", mode="advisory", status="draft"),
        make_rule(id="r3", name="PII", mode="advisory", enabled=False),
    ]
    assert detect_conflicts(rules, now=FIXED_NOW) == []


def test_rules_in_other_tenants_do_not_collide() -> None:
    rules = [
        make_rule(id="r1", tenant_id="t1", mode="enforce"),
        make_rule(id="r2", tenant_id="t2", mode="advisory"),
    ]
    assert detect_conflicts(rules, now=FIXED_NOW) == []
