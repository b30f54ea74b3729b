"""Declarative workflow predicates.

A condition is JSON: either a comparison ``{"field", "operator", "value"}`` or
a combinator ``{"all": [...]}``, ``{"any": [...]}`` or ``{"not": {...}}``.
Fields are dotted paths into the event context (or live subject state).
Conditions are parsed once when a workflow is loaded and then evaluated by a
fixed interpreter; tenant configuration is never executed as code.
"""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from dataclasses import dataclass
from typing import Any, Mapping, Union

from caseguard.core.errors import ConditionError
from caseguard.domain.events import freeze


OPERATORS = frozenset(
    {"eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "contains", "exists", "missing"}
)
# Operators that take no value.
_UNARY_OPERATORS = frozenset({"exists", "missing"})
_LIST_OPERATORS = frozenset({"in", "not_in"})


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class AllOf:
    items: tuple[Predicate, ...]


@dataclass(frozen=True)
class AnyOf:
    items: tuple[Predicate, ...]


@dataclass(frozen=True)
class Not:
    item: Predicate


@dataclass(frozen=True)
class Always:
    pass


Predicate = Union[Comparison, AllOf, AnyOf, Not, Always]


def parse_condition(raw: Any) -> Predicate:
    """Compile stored JSON into a predicate tree or raise ``ConditionError``.

    A missing or empty condition matches every event.
    """
    if raw is None or (isinstance(raw, MappingABC) and not raw):
        return Always()
    if not isinstance(raw, MappingABC):
        raise ConditionError(f"condition must be an object, got {type(raw).__name__}")

    combinators = [key for key in ("all", "any", "not") if key in raw]
    if len(combinators) > 1:
        raise ConditionError(f"condition mixes combinators: {', '.join(combinators)}")
    if combinators:
        key = combinators[0]
        if len(raw) != 1:
            raise ConditionError(f"'{key}' condition must not carry other keys")
        if key == "not":
            return Not(parse_condition_strict(raw["not"]))
        items = raw[key]
        if not isinstance(items, list) or not items:
            raise ConditionError(f"'{key}' expects a non-empty list of conditions")
        parsed = tuple(parse_condition_strict(item) for item in items)
        return AllOf(parsed) if key == "all" else AnyOf(parsed)

    field = raw.get("field")
    if not isinstance(field, str) or not field.strip():
        raise ConditionError("comparison requires a non-empty 'field'")
    operator = raw.get("operator", "eq")
    if operator not in OPERATORS:
        raise ConditionError(f"unsupported operator: {operator!r}")
    unknown = set(raw) - {"field", "operator", "value"}
    if unknown:
        raise ConditionError(f"unknown condition keys: {', '.join(sorted(unknown))}")
    value = raw.get("value")
    if operator in _LIST_OPERATORS and not isinstance(value, list):
        raise ConditionError(f"operator '{operator}' expects a list value")
    # eq/ne without a value compare against null.
    if operator not in _UNARY_OPERATORS | {"eq", "ne"} and "value" not in raw:
        raise ConditionError(f"operator '{operator}' requires a value")
    return Comparison(field=field.strip(), operator=operator, value=freeze(value))


def parse_condition_strict(raw: Any) -> Predicate:
    # Nested conditions must be explicit; an empty child would silently match everything.
    if raw is None or (isinstance(raw, MappingABC) and not raw):
        raise ConditionError("nested condition must not be empty")
    return parse_condition(raw)


def _resolve_path(data: Any, path: str) -> tuple[bool, Any]:
    current = data
    for part in path.split("."):
        if not isinstance(current, MappingABC) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _apply_operator(found: bool, value: Any, operator: str, expected: Any) -> bool:
    if operator == "exists":
        return found and value is not None
    if operator == "missing":
        return not found or value is None
    if operator == "eq":
        return value == expected
    if operator == "ne":
        return value != expected
    if operator == "in":
        return value in expected
    if operator == "not_in":
        return value not in expected
    if operator == "contains":
        if isinstance(value, str):
            return isinstance(expected, str) and expected.lower() in value.lower()
        if isinstance(value, (list, tuple, set, frozenset)):
            return expected in value
        return False
    if value is None or expected is None:
        return False
    if operator == "gt":
        return value > expected
    if operator == "gte":
        return value >= expected
    if operator == "lt":
        return value < expected
    if operator == "lte":
        return value <= expected
    raise ConditionError(f"unsupported operator: {operator!r}")


def evaluate_condition(predicate: Predicate, data: Mapping[str, Any]) -> bool:
    """Evaluate a parsed predicate; incomparable values raise ``ConditionError``."""
    if isinstance(predicate, Always):
        return True
    if isinstance(predicate, AllOf):
        return all(evaluate_condition(item, data) for item in predicate.items)
    if isinstance(predicate, AnyOf):
        return any(evaluate_condition(item, data) for item in predicate.items)
    if isinstance(predicate, Not):
        return not evaluate_condition(predicate.item, data)
    found, value = _resolve_path(data, predicate.field)
    # Event context arrives frozen while live state is plain JSON; compare both in frozen form.
    value = freeze(value)
    try:
        return _apply_operator(found, value, predicate.operator, predicate.value)
    except TypeError as exc:
        raise ConditionError(
            f"cannot compare field '{predicate.field}' ({type(value).__name__}) "
            f"with {predicate.operator} {predicate.value!r}"
        ) from exc
