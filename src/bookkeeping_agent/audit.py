"""Audit event emission for orchestration transitions.

The orchestrator and the action service record what they did through an
``AuditSink``. Emission is fire-and-forget: a sink failure is logged and never
interrupts the transition that produced the event.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

from .observability import redact_sensitive_fields


logger = logging.getLogger("bookkeeping_agent.audit")

SAGA_STARTED = "saga.started"
SAGA_STEP_COMPLETED = "saga.step_completed"
SAGA_AWAITING_APPROVAL = "saga.awaiting_approval"
SAGA_STEP_FAILED = "saga.step_failed"
SAGA_FAILED = "saga.failed"
SAGA_COMPENSATING = "saga.compensating"
SAGA_STEP_COMPENSATED = "saga.step_compensated"
SAGA_COMPENSATION_SKIPPED = "saga.compensation_skipped"
SAGA_COMPENSATION_FAILED = "saga.compensation_failed"
SAGA_COMPENSATED = "saga.compensated"
SAGA_COMPLETED = "saga.completed"
SAGA_MANUAL_REVIEW_REQUIRED = "saga.manual_review_required"
ACTION_APPROVED = "action.approved"
ACTION_REJECTED = "action.rejected"
ACTION_EXECUTED = "action.executed"
ACTION_FAILED = "action.failed"
ACTION_COMPENSATED = "action.compensated"

AUDIT_EVENT_TYPES: frozenset[str] = frozenset(
    {
        SAGA_STARTED,
        SAGA_STEP_COMPLETED,
        SAGA_AWAITING_APPROVAL,
        SAGA_STEP_FAILED,
        SAGA_FAILED,
        SAGA_COMPENSATING,
        SAGA_STEP_COMPENSATED,
        SAGA_COMPENSATION_SKIPPED,
        SAGA_COMPENSATION_FAILED,
        SAGA_COMPENSATED,
        SAGA_COMPLETED,
        SAGA_MANUAL_REVIEW_REQUIRED,
        ACTION_APPROVED,
        ACTION_REJECTED,
        ACTION_EXECUTED,
        ACTION_FAILED,
        ACTION_COMPENSATED,
    }
)


class AuditSink(Protocol):
    def record(
        self,
        event_type: str,
        subject_ids: Mapping[str, str],
        description: str,
        metadata: Mapping[str, Any],
    ) -> None: ...


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    subject_ids: dict[str, str]
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "subject_ids": dict(self.subject_ids),
            "description": self.description,
            "metadata": dict(self.metadata),
        }


class LoggingAuditSink:
    def __init__(self, logger_name: str = "bookkeeping_agent.audit.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def record(
        self,
        event_type: str,
        subject_ids: Mapping[str, str],
        description: str,
        metadata: Mapping[str, Any],
    ) -> None:
        self._logger.info(
            "audit event=%s subjects=%s description=%s metadata=%s",
            event_type,
            dict(subject_ids),
            description,
            metadata,
        )


class AuditTrail:
    """Front door for audit emission; sink failures are logged, never raised."""

    def __init__(self, sink: AuditSink | None = None) -> None:
        self.sink: AuditSink = sink or LoggingAuditSink()

    def emit(
        self,
        event_type: str,
        subject_ids: Mapping[str, str | None],
        description: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEvent | None:
        if event_type not in AUDIT_EVENT_TYPES:
            raise ValueError(f"unknown audit event type: {event_type!r}")
        event = AuditEvent(
            event_type=event_type,
            subject_ids={key: str(value) for key, value in subject_ids.items() if value},
            description=description,
            metadata=redact_sensitive_fields(dict(metadata or {})),
        )
        try:
            self.sink.record(event.event_type, event.subject_ids, event.description, event.metadata)
        except Exception:
            logger.warning(
                "audit sink failed event=%s subjects=%s",
                event.event_type,
                event.subject_ids,
                exc_info=True,
            )
            return None
        return event
