from __future__ import annotations

from caseguard.services.audit import sanitize_metadata
from caseguard.tests.utils.fakes import make_event


def test_sensitive_keys_are_redacted_recursively() -> None:
    metadata = {
        "workflow_id": "wf-1",
        "Authorization": "Bearer abc",
        "detail": {"case_ids": ["c1"], "note": "child disclosed at lunch"},
        "items": [{"content": "free text"}, {"priority": "high"}],
    }

    sanitized = sanitize_metadata(metadata)

    assert sanitized == {
        "workflow_id": "wf-1",
        "Authorization": "[REDACTED]",
        "detail": {"case_ids": ["c1"], "note": "[REDACTED]"},
        "items": [{"content": "[REDACTED]"}, {"priority": "high"}],
    }


def test_event_context_text_never_reaches_audit_metadata() -> None:
    sanitized = sanitize_metadata({"text": "mentions self-harm", "reason": "condition invalid"})

    assert sanitized["text"] == "[REDACTED]"
    assert sanitized["reason"] == "condition invalid"


def test_scalars_pass_through() -> None:
    assert sanitize_metadata("plain") == "plain"
    assert sanitize_metadata(None) is None


def test_frozen_event_containers_are_sanitized() -> None:
    event = make_event(context={"studentName": "Sam", "tags": ["attendance"], "status": "unexplained"})

    sanitized = sanitize_metadata({"event": event.context})

    assert sanitized == {
        "event": {"studentName": "[REDACTED]", "tags": ["attendance"], "status": "unexplained"}
    }


def test_long_strings_are_truncated() -> None:
    sanitized = sanitize_metadata({"reason": "x" * 1000})

    assert len(sanitized["reason"]) < 300
    assert sanitized["reason"].endswith("...")
