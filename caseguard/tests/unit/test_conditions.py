from __future__ import annotations

import pytest

from caseguard.core.errors import ConditionError
from caseguard.services.workflows.conditions import (
    AllOf,
    Always,
    AnyOf,
    Comparison,
    Not,
    evaluate_condition,
    parse_condition,
)
from caseguard.tests.utils.fakes import make_event


def _matches(raw, data) -> bool:
    return evaluate_condition(parse_condition(raw), data)


def test_empty_condition_matches_everything() -> None:
    assert parse_condition(None) == Always()
    assert parse_condition({}) == Always()
    assert _matches({}, {"anything": 1}) is True


def test_comparison_defaults_to_eq() -> None:
    predicate = parse_condition({"field": "status", "value": "unexplained"})
    assert predicate == Comparison(field="status", operator="eq", value="unexplained")


def test_list_values_are_frozen() -> None:
    predicate = parse_condition({"field": "status", "operator": "in", "value": ["a", "b"]})
    assert predicate.value == ("a", "b")


def test_combinators_parse_into_tree() -> None:
    predicate = parse_condition(
        {
            "all": [
                {"field": "status", "operator": "eq", "value": "unexplained"},
                {"not": {"field": "excused", "operator": "eq", "value": True}},
                {"any": [{"field": "grade", "operator": "lt", "value": 4}, {"field": "flag", "operator": "exists"}]},
            ]
        }
    )
    assert isinstance(predicate, AllOf)
    assert isinstance(predicate.items[1], Not)
    assert isinstance(predicate.items[2], AnyOf)


@pytest.mark.parametrize(
    "field,operator,value,data,expected",
    [
        ("status", "eq", "unexplained", {"status": "unexplained"}, True),
        ("status", "eq", "unexplained", {"status": "explained"}, False),
        ("status", "ne", "explained", {"status": "unexplained"}, True),
        ("count", "gt", 3, {"count": 4}, True),
        ("count", "gte", 4, {"count": 4}, True),
        ("count", "lt", 4, {"count": 4}, False),
        ("count", "lte", 4, {"count": 4}, True),
        ("count", "gt", 3, {}, False),
        ("status", "in", ["a", "b"], {"status": "a"}, True),
        ("status", "not_in", ["a", "b"], {"status": "c"}, True),
        ("text", "contains", "SUICIDE", {"text": "mentions suicide"}, True),
        ("tags", "contains", "flag", {"tags": ["flag", "other"]}, True),
        ("tags", "contains", "flag", {"tags": 7}, False),
    ],
)
def test_operators(field, operator, value, data, expected) -> None:
    assert _matches({"field": field, "operator": operator, "value": value}, data) is expected


def test_exists_and_missing() -> None:
    assert _matches({"field": "reason", "operator": "exists"}, {"reason": "late bus"}) is True
    assert _matches({"field": "reason", "operator": "exists"}, {"reason": None}) is False
    assert _matches({"field": "reason", "operator": "missing"}, {}) is True
    assert _matches({"field": "reason", "operator": "missing"}, {"reason": "x"}) is False


def test_dotted_paths_resolve_nested_values() -> None:
    data = {"attendance": {"record": {"status": "unexplained"}}}
    assert _matches({"field": "attendance.record.status", "value": "unexplained"}, data) is True
    assert _matches({"field": "attendance.missing.status", "operator": "missing"}, data) is True


def test_combinator_semantics() -> None:
    data = {"status": "unexplained", "count": 2}
    assert _matches({"all": [{"field": "status", "value": "unexplained"}, {"field": "count", "operator": "gt", "value": 1}]}, data)
    assert not _matches({"all": [{"field": "status", "value": "unexplained"}, {"field": "count", "operator": "gt", "value": 5}]}, data)
    assert _matches({"any": [{"field": "status", "value": "explained"}, {"field": "count", "value": 2}]}, data)
    assert _matches({"not": {"field": "status", "value": "explained"}}, data)


@pytest.mark.parametrize(
    "raw",
    [
        "status == 'unexplained'",
        ["status"],
        {"all": [], "any": []},
        {"all": []},
        {"all": [{}]},
        {"not": {}},
        {"all": [{"field": "a", "value": 1}], "field": "b"},
        {"field": "", "value": 1},
        {"operator": "eq", "value": 1},
        {"field": "a", "operator": "regex", "value": ".*"},
        {"field": "a", "operator": "in", "value": "abc"},
        {"field": "a", "operator": "gt"},
        {"field": "a", "value": 1, "script": "rm -rf"},
    ],
)
def test_invalid_conditions_are_rejected(raw) -> None:
    with pytest.raises(ConditionError):
        parse_condition(raw)


def test_incomparable_values_raise_condition_error() -> None:
    predicate = parse_condition({"field": "count", "operator": "gt", "value": 3})
    with pytest.raises(ConditionError):
        evaluate_condition(predicate, {"count": "many"})


@pytest.mark.parametrize(
    "raw",
    [
        {"field": "flags", "operator": "eq", "value": ["absent"]},
        {"field": "flags", "operator": "in", "value": [["absent"], ["late"]]},
        {"field": "flags", "operator": "ne", "value": ["late"]},
        {"field": "guardian", "operator": "eq", "value": {"consent": True}},
    ],
)
def test_frozen_event_context_and_plain_state_agree(raw) -> None:
    data = {"flags": ["absent"], "guardian": {"consent": True}}
    event = make_event(context=data)

    assert _matches(raw, event.context) is True
    assert _matches(raw, data) is True
