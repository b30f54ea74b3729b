from __future__ import annotations

from caseguard.services.workflows.actions import ACTION_SCHEMA_VERSION, ActionExecutor, ActionRegistry
from caseguard.services.workflows.engine import WorkflowEngine
from caseguard.services.workflows.scheduler import JobOutcome, Scheduler
from caseguard.services.workflows.state import HttpStateProvider, StateProvider


__all__ = [
    "ACTION_SCHEMA_VERSION",
    "ActionExecutor",
    "ActionRegistry",
    "HttpStateProvider",
    "JobOutcome",
    "Scheduler",
    "StateProvider",
    "WorkflowEngine",
]
