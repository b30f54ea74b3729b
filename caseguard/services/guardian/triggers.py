"""Trigger evaluators for policy rules.

Each evaluator is a pure function ``(context) -> message | None`` registered
under the condition key a PolicyRule names in ``trigger_condition``. A missing
or malformed context key means "no violation"; evaluators never raise for
well-formed input.
"""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
import logging
from typing import Any, Callable, Iterable, Mapping

from caseguard.core.errors import EvaluatorError


logger = logging.getLogger(__name__)

TriggerEvaluator = Callable[[Mapping[str, Any]], "str | None"]

CONDITION_MISSING_CONSENT = "missing_consent"
CONDITION_MISSING_METADATA = "missing_metadata"
CONDITION_PII_LEAK = "pii_leak"
CONDITION_SAFEGUARDING_RECOMMENDED = "safeguarding_recommended"

# Fixed risk lexicon; matched as case-insensitive substrings in lexicon order.
SAFEGUARDING_KEYWORDS: tuple[str, ...] = (
    "suicide",
    "self-harm",
    "kill myself",
    "abuse",
    "violence",
    "neglect",
    "trafficking",
    "weapon",
    "threat",
    "assault",
)


class TriggerRegistry:
    def __init__(self) -> None:
        self._evaluators: dict[str, TriggerEvaluator] = {}

    def register(self, condition_kind: str) -> Callable[[TriggerEvaluator], TriggerEvaluator]:
        def decorator(func: TriggerEvaluator) -> TriggerEvaluator:
            self._evaluators[condition_kind] = func
            return func

        return decorator

    def add(self, condition_kind: str, func: TriggerEvaluator) -> None:
        self._evaluators[condition_kind] = func

    def kinds(self) -> list[str]:
        return sorted(self._evaluators)

    def __contains__(self, condition_kind: object) -> bool:
        return condition_kind in self._evaluators

    def copy(self) -> TriggerRegistry:
        clone = TriggerRegistry()
        clone._evaluators = dict(self._evaluators)
        return clone

    def evaluate(self, condition_kind: str, context: Mapping[str, Any] | None) -> str | None:
        """Run one evaluator; unknown kinds are treated as non-violating.

        Raises ``EvaluatorError`` when the evaluator itself fails so the engine
        can skip that single rule.
        """
        func = self._evaluators.get(condition_kind)
        if func is None:
            logger.warning("guardian_unknown_trigger_condition condition=%s", condition_kind)
            return None
        if not isinstance(context, MappingABC):
            return None
        try:
            message = func(context)
        except Exception as exc:  # noqa: BLE001 - converted to a typed per-rule failure
            raise EvaluatorError(condition_kind, str(exc) or type(exc).__name__) from exc
        return str(message) if message else None


default_registry = TriggerRegistry()


@default_registry.register(CONDITION_MISSING_CONSENT)
def check_consent(context: Mapping[str, Any]) -> str | None:
    if not context.get("consentObtained"):
        return "Consent has not been obtained for this action."
    return None


@default_registry.register(CONDITION_MISSING_METADATA)
def check_metadata(context: Mapping[str, Any]) -> str | None:
    required = context.get("requiredMetadata")
    if isinstance(required, str) or not isinstance(required, Iterable):
        return None
    missing = [str(name) for name in required if context.get(str(name)) is None]
    if missing:
        return f"Missing required metadata: {', '.join(missing)}."
    return None


@default_registry.register(CONDITION_PII_LEAK)
def check_pii(context: Mapping[str, Any]) -> str | None:
    if context.get("containsPII") is True and context.get("visibility") == "public":
        return "Public document contains PII flags."
    return None


@default_registry.register(CONDITION_SAFEGUARDING_RECOMMENDED)
def check_safeguarding(context: Mapping[str, Any]) -> str | None:
    # Chat messages carry their body as "content"; other events use "text".
    text = context.get("text")
    if text is None:
        text = context.get("content")
    if not isinstance(text, str) or not text:
        return None
    lowered = text.lower()
    found = [keyword for keyword in SAFEGUARDING_KEYWORDS if keyword in lowered]
    if found:
        return f"Safeguarding keyword(s) detected: {', '.join(found)}. Immediate review required."
    return None
