from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from caseguard.domain.events import EvaluationResult


class CaseGuardError(Exception):
    """Base error for CaseGuard.

    ``status_code`` and ``code`` describe how the API surfaces the error.
    """

    status_code = 500
    code = "INTERNAL_ERROR"

    def details(self) -> dict[str, Any] | None:
        return None


class ConfigurationError(CaseGuardError):
    """Rule, override or workflow configuration could not be fetched."""

    status_code = 503
    code = "CONFIGURATION_UNAVAILABLE"


class EvaluatorError(CaseGuardError):
    """A trigger evaluator raised while inspecting event context."""

    def __init__(self, condition_kind: str, message: str) -> None:
        super().__init__(f"{condition_kind}: {message}")
        self.condition_kind = condition_kind


class PersistenceError(CaseGuardError):
    """A finding or scheduled job write did not succeed after retries."""

    status_code = 503
    code = "PERSISTENCE_UNAVAILABLE"


class ConditionError(CaseGuardError):
    """Workflow predicate uses an unsupported operator, field or value."""

    status_code = 422
    code = "WORKFLOW_CONDITION_INVALID"


class UnknownActionError(CaseGuardError):
    """Action type is outside the versioned action whitelist."""

    status_code = 422
    code = "WORKFLOW_ACTION_UNKNOWN"


class StateUnavailableError(CaseGuardError):
    """Live subject state could not be fetched for a scheduled re-check."""

    status_code = 503
    code = "STATE_UNAVAILABLE"


class GuardianBlockedError(CaseGuardError):
    """Guarded action must not proceed; carries the evaluation result."""

    status_code = 403
    code = "GUARDIAN_BLOCKED"

    def __init__(self, result: EvaluationResult) -> None:
        super().__init__(result.user_message or "Action blocked by compliance policy")
        self.result = result

    def details(self) -> dict[str, Any] | None:
        return {"result": self.result.to_dict()}
