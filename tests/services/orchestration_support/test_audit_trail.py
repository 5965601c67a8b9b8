from __future__ import annotations

import logging

import pytest

from bookkeeping_agent.audit import ACTION_APPROVED, SAGA_STARTED, AuditTrail


class RecordingSink:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def record(self, event_type, subject_ids, description, metadata) -> None:
        self.calls.append((event_type, dict(subject_ids), description, dict(metadata)))


class BrokenSink:
    def record(self, event_type, subject_ids, description, metadata) -> None:
        raise ConnectionError("audit store offline")


def test_emit_drops_empty_subjects_and_redacts_metadata() -> None:
    sink = RecordingSink()
    event = AuditTrail(sink).emit(
        SAGA_STARTED,
        {"saga_id": "saga-1", "email_id": None},
        "Saga started",
        {"total_steps": 2, "adapter": {"access_token": "secret-value"}},
    )

    assert event is not None
    assert sink.calls == [
        (
            SAGA_STARTED,
            {"saga_id": "saga-1"},
            "Saga started",
            {"total_steps": 2, "adapter": {"access_token": "[REDACTED]"}},
        )
    ]
    assert event.as_dict()["subject_ids"] == {"saga_id": "saga-1"}


def test_unknown_event_type_is_rejected() -> None:
    with pytest.raises(ValueError, match="unknown audit event type"):
        AuditTrail(RecordingSink()).emit("saga.exploded", {}, "nope")


def test_sink_failure_is_logged_and_does_not_raise(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="bookkeeping_agent.audit"):
        event = AuditTrail(BrokenSink()).emit(ACTION_APPROVED, {"action_id": "a-1"}, "approved")

    assert event is None
    assert "audit sink failed event=action.approved" in caplog.text


def test_default_sink_logs_events(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="bookkeeping_agent.audit.events"):
        AuditTrail().emit(ACTION_APPROVED, {"action_id": "a-1"}, "approved by owner")

    assert "audit event=action.approved" in caplog.text
