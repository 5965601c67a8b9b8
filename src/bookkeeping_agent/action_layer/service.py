"""Single-action lifecycle: register, approve, reject, execute, compensate."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from bookkeeping_agent import audit as audit_events
from bookkeeping_agent.audit import AuditTrail

from .contracts import ActionDispatchError, ActionRecord, ActionResult, ProposedAction
from .dispatcher import ActionDispatcher
from .storage import ActionStore


logger = logging.getLogger("bookkeeping_agent.action_layer.service")

OUTCOME_EXECUTED = "executed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class ProcessOutcome:
    status: str
    action: ActionRecord
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "action_id": self.action.id,
            "action_status": self.action.status,
            "reason": self.reason,
        }


class ActionService:
    """Moves persisted action records through the dispatcher.

    Every state change is saved before the next step begins, so a crash leaves
    the record in ``executing`` rather than silently re-running it.
    """

    def __init__(
        self,
        store: ActionStore,
        dispatcher: ActionDispatcher,
        *,
        audit: AuditTrail | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.audit = audit or AuditTrail()

    def register(
        self,
        action: ProposedAction,
        *,
        email_id: str | None = None,
        client_id: str | None = None,
    ) -> ActionRecord:
        record = ActionRecord.from_proposed(action, email_id=email_id, client_id=client_id)
        record = self.dispatcher.resolve_risk(record)
        self.store.create(record)
        logger.info(
            "action registered action_id=%s type=%s target=%s risk=%s requires_approval=%s",
            record.id,
            record.action_type,
            record.target_system,
            record.risk_level,
            record.requires_approval,
        )
        return record

    def approve(self, action_id: str, *, by: str) -> ActionRecord:
        record = self.store.save(self.store.load(action_id).approve(by))
        self.audit.emit(
            audit_events.ACTION_APPROVED,
            {"action_id": record.id, "email_id": record.email_id},
            f"Action {record.action_type} approved by {by}",
            {"risk_level": record.risk_level},
        )
        return record

    def reject(self, action_id: str, *, by: str, reason: str = "") -> ActionRecord:
        record = self.store.save(self.store.load(action_id).reject(by, reason))
        self.audit.emit(
            audit_events.ACTION_REJECTED,
            {"action_id": record.id, "email_id": record.email_id},
            f"Action {record.action_type} rejected by {by}",
            {"reason": record.rejection_reason},
        )
        return record

    def process(self, action_id: str) -> ProcessOutcome:
        record = self.store.load(action_id)
        assessed = self.dispatcher.resolve_risk(record)
        if assessed != record:
            record = self.store.save(assessed)
        if not self.dispatcher.can_execute(record):
            reason = "awaiting approval" if record.requires_approval else f"status {record.status}"
            logger.info("action skipped action_id=%s reason=%s", record.id, reason)
            return ProcessOutcome(status=OUTCOME_SKIPPED, action=record, reason=reason)

        executing = self.store.save(record.mark_executing())
        try:
            result = self.dispatcher.execute(record)
        except ActionDispatchError as exc:
            failed = self.store.save(executing.mark_executed(ActionResult.failure(exc)))
            self.audit.emit(
                audit_events.ACTION_FAILED,
                {"action_id": failed.id, "email_id": failed.email_id},
                f"Action {failed.action_type} failed: {exc.message}",
                exc.as_dict(),
            )
            return ProcessOutcome(status=OUTCOME_FAILED, action=failed, reason=exc.kind)

        completed = self.store.save(executing.mark_executed(result))
        self.audit.emit(
            audit_events.ACTION_EXECUTED,
            {"action_id": completed.id, "email_id": completed.email_id},
            f"Action {completed.action_type} executed on {completed.target_system}",
            {"external_id": completed.external_id},
        )
        return ProcessOutcome(status=OUTCOME_EXECUTED, action=completed)

    def compensate(self, action_id: str) -> ActionRecord:
        """Undo a completed action. ``ActionDispatchError`` propagates to the caller."""
        record = self.store.load(action_id)
        result = self.dispatcher.compensate(record)
        compensated = self.store.save(record.mark_compensated(str(result.data["compensation_id"])))
        self.audit.emit(
            audit_events.ACTION_COMPENSATED,
            {"action_id": compensated.id, "email_id": compensated.email_id},
            f"Action {compensated.action_type} compensated",
            {"compensation_id": compensated.compensation_id, "external_id": compensated.external_id},
        )
        return compensated
