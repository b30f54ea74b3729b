from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping


FINDING_STATUS_OPEN = "open"
FINDING_STATUS_RESOLVED = "resolved"
FINDING_STATUS_OVERRIDDEN = "overridden"

INTENT_SCHEDULE_JOB = "schedule_job"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def freeze(value: Any) -> Any:
    # Deep-copy into read-only containers so callers cannot mutate a submitted event.
    if isinstance(value, Mapping):
        return MappingProxyType({str(key): freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    # Convert frozen containers back to JSON-friendly dicts and lists.
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (tuple, list, frozenset, set)):
        return [thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class GuardianEvent:
    tenant_id: str
    event_type: str
    subject_type: str
    subject_id: str
    actor_id: str | None = None
    timestamp: datetime = field(default_factory=_utc_now)
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "context", freeze(self.context or {}))

    def to_snapshot(self) -> dict[str, Any]:
        # Full copy persisted with scheduled jobs, never a reference to live state.
        return {
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "context": thaw(self.context),
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> GuardianEvent:
        raw_ts = snapshot.get("timestamp")
        timestamp = datetime.fromisoformat(raw_ts) if isinstance(raw_ts, str) else _utc_now()
        return cls(
            tenant_id=str(snapshot["tenant_id"]),
            event_type=str(snapshot["event_type"]),
            subject_type=str(snapshot.get("subject_type") or ""),
            subject_id=str(snapshot.get("subject_id") or ""),
            actor_id=snapshot.get("actor_id"),
            timestamp=timestamp,
            context=snapshot.get("context") or {},
        )


@dataclass(frozen=True)
class Finding:
    id: str
    tenant_id: str
    rule_id: str
    event_type: str
    subject_type: str
    subject_id: str
    actor_id: str | None
    severity: str
    message: str
    remediation: str | None
    status: str
    blocking: bool
    simulated: bool
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "rule_id": self.rule_id,
            "event_type": self.event_type,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "severity": self.severity,
            "message": self.message,
            "remediation": self.remediation,
            "status": self.status,
            "blocking": self.blocking,
            "simulated": self.simulated,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class EvaluationResult:
    """Decision returned to the guarded caller.

    ``blocking_findings`` and ``can_proceed`` are derived from ``findings`` so
    ``can_proceed`` is true exactly when no finding blocks.
    """

    findings: tuple[Finding, ...] = ()

    @property
    def blocking_findings(self) -> tuple[Finding, ...]:
        return tuple(finding for finding in self.findings if finding.blocking)

    @property
    def can_proceed(self) -> bool:
        return len(self.blocking_findings) == 0

    @property
    def user_message(self) -> str | None:
        blocking = self.blocking_findings
        if not blocking:
            return None
        first = blocking[0]
        remediation = first.remediation or "Please revise."
        return f"{first.message} ({remediation})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": [finding.to_dict() for finding in self.findings],
            "can_proceed": self.can_proceed,
            "blocking_findings": [finding.to_dict() for finding in self.blocking_findings],
        }


@dataclass(frozen=True)
class ActionIntent:
    # Uniform hand-off between the workflow engine, scheduler and executor.
    type: str
    payload: Mapping[str, Any]
    workflow_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", freeze(self.payload or {}))

    def to_dict(self) -> dict[str, Any]:
        payload = thaw(self.payload)
        execute_at = payload.get("execute_at")
        if isinstance(execute_at, datetime):
            payload["execute_at"] = execute_at.isoformat()
        return {"type": self.type, "workflow_id": self.workflow_id, "payload": payload}


@dataclass(frozen=True)
class ActionResult:
    action_type: str
    status: str
    reference_id: str | None = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type,
            "status": self.status,
            "reference_id": self.reference_id,
            "detail": thaw(self.detail),
        }
