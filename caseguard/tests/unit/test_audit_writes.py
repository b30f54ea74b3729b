from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from caseguard.services import audit
from caseguard.services.audit import record_event
from caseguard.services.workflows.engine import WorkflowEngine
from caseguard.tests.utils.fakes import (
    FakeClock,
    FakeWorkflowRepository,
    RecordingExecutor,
    make_event,
    make_workflow,
)


class FailingSession:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.added: list = []
        self.rolled_back = False

    async def __aenter__(self) -> "FailingSession":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    def add(self, row) -> None:
        self.added.append(row)

    async def commit(self) -> None:
        raise self.error

    async def rollback(self) -> None:
        self.rolled_back = True


def _fields() -> dict:
    return {
        "tenant_id": "t1",
        "actor_type": "system",
        "actor_id": None,
        "event_type": "workflow.config.invalid",
        "outcome": "failure",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("connection reset by peer"),
        TimeoutError(),
        IntegrityError("INSERT", {}, Exception("duplicate")),
    ],
)
async def test_best_effort_write_swallows_database_and_connection_errors(error) -> None:
    session = FailingSession(error)

    await record_event(session_factory=lambda: session, **_fields())

    assert len(session.added) == 1
    assert session.rolled_back is True


@pytest.mark.asyncio
async def test_strict_write_propagates_connection_errors() -> None:
    session = FailingSession(ConnectionResetError("connection reset by peer"))

    with pytest.raises(ConnectionResetError):
        await record_event(session_factory=lambda: session, best_effort=False, **_fields())


@pytest.mark.asyncio
async def test_config_warning_survives_unreachable_audit_store(monkeypatch) -> None:
    monkeypatch.setattr(audit, "SessionLocal", lambda: FailingSession(OSError("network unreachable")))
    broken = make_workflow(id="broken", condition_json={"field": "x", "operator": "matches", "value": 1})
    healthy = make_workflow(id="healthy")
    executor = RecordingExecutor()
    engine = WorkflowEngine(
        repository=FakeWorkflowRepository([broken, healthy]),
        executor=executor,
        clock=FakeClock(),
    )

    intents = await engine.evaluate_trigger(
        make_event(event_type="attendance_marked", context={"status": "unexplained"})
    )

    assert [intent.workflow_id for intent in intents] == ["healthy"]
