"""Saga orchestration: ordered step execution, approval pauses, compensation.

The orchestrator does not raise on step failure. A failed step moves the saga
to ``failed`` and a best-effort compensation pass always follows, ending in
``compensated``; the saga status is what callers read.
"""

from __future__ import annotations

from collections.abc import Callable
import logging

from bookkeeping_agent import audit as audit_events
from bookkeeping_agent.action_layer.contracts import ActionDispatchError, utc_now
from bookkeeping_agent.action_layer.dispatcher import ActionDispatcher
from bookkeeping_agent.audit import AuditTrail
from bookkeeping_agent.observability import OrchestrationMetrics

from .contracts import (
    SAGA_AWAITING_APPROVAL,
    SAGA_COMPENSATED,
    SAGA_COMPENSATING,
    SAGA_COMPLETED,
    SAGA_FAILED,
    SAGA_PENDING,
    SAGA_RUNNING,
    STEP_COMPLETED,
    STEP_EXECUTING,
    STEP_PENDING,
    CompensationReport,
    Saga,
    SagaStateError,
    StepCompensation,
)
from .storage import SagaRepository


logger = logging.getLogger("bookkeeping_agent.saga.orchestrator")

_EXECUTABLE_SAGA_STATES = {SAGA_PENDING, SAGA_RUNNING}


class SagaOrchestrator:
    def __init__(
        self,
        dispatcher: ActionDispatcher,
        store: SagaRepository,
        *,
        audit: AuditTrail | None = None,
        metrics: OrchestrationMetrics | None = None,
        dispatch_on_resume: bool = False,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.dispatcher = dispatcher
        self.store = store
        self.audit = audit or AuditTrail()
        self.metrics = metrics
        self.dispatch_on_resume = dispatch_on_resume
        self._clock = clock

    def execute(self, saga: Saga) -> Saga:
        if saga.status not in _EXECUTABLE_SAGA_STATES:
            raise SagaStateError(f"cannot execute saga {saga.id} in state: {saga.status}")
        if saga.status == SAGA_PENDING:
            saga = self._save(saga.with_status(SAGA_RUNNING, started_at=saga.started_at or self._clock()))
            self._emit(
                audit_events.SAGA_STARTED,
                saga,
                f"Saga started with {saga.total_steps} steps",
                {"total_steps": saga.total_steps},
            )
        return self._run(saga)

    def resume(self, saga: Saga, *, approved_by: str | None = None) -> Saga:
        """Continue a saga paused on an approval gate, at the same step index.

        By default approval stands in for execution: the paused step is marked
        completed without dispatch. With ``dispatch_on_resume`` the approved
        step is dispatched first.
        """
        if saga.status != SAGA_AWAITING_APPROVAL:
            raise SagaStateError(f"cannot resume saga {saga.id} in state: {saga.status}")
        index = saga.current_step
        step = saga.current
        if step is None:
            raise SagaStateError(f"saga {saga.id} has no step at index {index} to resume")
        logger.info(
            "saga resumed saga_id=%s step=%s approved_by=%s dispatch=%s",
            saga.id,
            index,
            approved_by,
            self.dispatch_on_resume,
        )
        saga = saga.with_status(SAGA_RUNNING)
        if self.dispatch_on_resume:
            return self._run(saga, approved_index=index)

        completed = step.mark_completed({"approved_by": approved_by, "dispatched": False}, at=self._clock())
        saga = self._save(saga.with_step(index, completed).advance())
        self._emit(
            audit_events.SAGA_STEP_COMPLETED,
            saga,
            f"Step {index} ({step.name}) completed by approval",
            {"step": index, "approved_by": approved_by, "dispatched": False},
        )
        return self._run(saga)

    def compensate(self, saga: Saga) -> CompensationReport:
        if saga.status == SAGA_COMPENSATED:
            raise SagaStateError(f"saga {saga.id} is already compensated")
        return self._compensate(saga)

    def _run(self, saga: Saga, *, approved_index: int | None = None) -> Saga:
        while saga.current_step < saga.total_steps:
            index = saga.current_step
            step = saga.steps[index]
            if step.status == STEP_COMPLETED:
                saga = self._save(saga.advance())
                continue
            if step.status == STEP_EXECUTING:
                # Previous run stopped mid-dispatch; the external outcome is unknown.
                return self._fail_step(
                    saga,
                    index,
                    {"kind": "INVALID_STATE", "message": "step was interrupted during execution"},
                )
            if step.status != STEP_PENDING:
                raise SagaStateError(f"saga {saga.id} step {index} cannot run in state: {step.status}")

            approved = approved_index == index
            record = self.dispatcher.resolve_risk(step.to_action(saga, index, approved=approved))
            step = step.with_risk(level=record.risk_level, requires_approval=record.requires_approval)
            saga = saga.with_step(index, step)
            if not self.dispatcher.can_execute(record):
                return self._pause(saga, index)

            saga = self._save(saga.with_step(index, step.mark_executing()))
            try:
                result = self.dispatcher.execute(record)
            except ActionDispatchError as exc:
                return self._fail_step(saga, index, exc.as_dict())

            done = saga.steps[index].mark_completed(result.data, external_id=result.external_id, at=self._clock())
            saga = self._save(saga.with_step(index, done).advance())
            logger.info(
                "saga step completed saga_id=%s step=%s name=%s external_id=%s",
                saga.id,
                index,
                done.name,
                done.external_id,
            )
            self._emit(
                audit_events.SAGA_STEP_COMPLETED,
                saga,
                f"Step {index} ({done.name}) completed",
                {"step": index, "external_id": done.external_id},
            )

        saga = self._save(saga.with_status(SAGA_COMPLETED, completed_at=self._clock()))
        logger.info("saga completed saga_id=%s steps=%s", saga.id, saga.total_steps)
        self._emit(audit_events.SAGA_COMPLETED, saga, "Saga completed", {"total_steps": saga.total_steps})
        if self.metrics is not None:
            self.metrics.record_saga_terminal(saga_id=saga.id, status=SAGA_COMPLETED)
        return saga

    def _pause(self, saga: Saga, index: int) -> Saga:
        step = saga.steps[index]
        saga = self._save(saga.with_status(SAGA_AWAITING_APPROVAL))
        logger.info(
            "saga awaiting approval saga_id=%s step=%s name=%s risk=%s",
            saga.id,
            index,
            step.name,
            step.risk_level,
        )
        self._emit(
            audit_events.SAGA_AWAITING_APPROVAL,
            saga,
            f"Step {index} ({step.name}) requires approval",
            {"step": index, "risk_level": step.risk_level},
        )
        if self.metrics is not None:
            self.metrics.record_saga_terminal(saga_id=saga.id, status=SAGA_AWAITING_APPROVAL)
        return saga

    def _fail_step(self, saga: Saga, index: int, error: dict) -> Saga:
        step = saga.steps[index]
        failed_step = step.mark_failed(error)
        saga = self._save(
            saga.with_step(index, failed_step).with_status(
                SAGA_FAILED,
                failed_at=self._clock(),
                error={"step": index, **error},
            )
        )
        logger.warning(
            "saga step failed saga_id=%s step=%s name=%s kind=%s",
            saga.id,
            index,
            step.name,
            error.get("kind"),
        )
        self._emit(
            audit_events.SAGA_STEP_FAILED,
            saga,
            f"Step {index} ({step.name}) failed: {error.get('message')}",
            {"step": index, **error},
        )
        self._emit(audit_events.SAGA_FAILED, saga, "Saga failed; compensating", {"failed_step": index})
        return self._compensate(saga).saga

    def _compensate(self, saga: Saga) -> CompensationReport:
        saga = self._save(saga.with_status(SAGA_COMPENSATING))
        self._emit(
            audit_events.SAGA_COMPENSATING,
            saga,
            f"Compensating from step {saga.current_step}",
            {"from_step": saga.current_step},
        )
        compensated: list[StepCompensation] = []
        skipped: list[StepCompensation] = []
        failed: list[StepCompensation] = []

        for index in reversed(range(min(saga.current_step + 1, saga.total_steps))):
            step = saga.steps[index]
            if step.status != STEP_COMPLETED:
                continue
            reason = step.skip_reason()
            if reason is not None:
                skipped.append(StepCompensation(index=index, step_name=step.name, detail=reason))
                logger.warning(
                    "saga step compensation skipped saga_id=%s step=%s name=%s reason=%s",
                    saga.id,
                    index,
                    step.name,
                    reason,
                )
                self._emit(
                    audit_events.SAGA_COMPENSATION_SKIPPED,
                    saga,
                    f"Step {index} ({step.name}) cannot be compensated: {reason}",
                    {"step": index, "reason": reason},
                )
                continue
            try:
                result = self.dispatcher.compensate(step.to_completed_action(saga, index))
            except ActionDispatchError as exc:
                failed.append(StepCompensation(index=index, step_name=step.name, detail=exc.message))
                logger.error(
                    "saga step compensation failed saga_id=%s step=%s name=%s message=%s",
                    saga.id,
                    index,
                    step.name,
                    exc.message,
                )
                self._emit(
                    audit_events.SAGA_COMPENSATION_FAILED,
                    saga,
                    f"Step {index} ({step.name}) compensation failed: {exc.message}",
                    {"step": index, **exc.as_dict()},
                )
                continue
            compensation_id = str(result.data["compensation_id"])
            saga = self._save(saga.with_step(index, step.mark_compensated(compensation_id, at=self._clock())))
            compensated.append(StepCompensation(index=index, step_name=step.name, detail=compensation_id))
            self._emit(
                audit_events.SAGA_STEP_COMPENSATED,
                saga,
                f"Step {index} ({step.name}) compensated",
                {"step": index, "compensation_id": compensation_id},
            )

        saga = self._save(saga.with_status(SAGA_COMPENSATED, compensated_at=self._clock()))
        report = CompensationReport(
            saga=saga,
            compensated=tuple(compensated),
            skipped=tuple(skipped),
            failed=tuple(failed),
        )
        logger.info(
            "saga compensated saga_id=%s compensated=%s skipped=%s failed=%s",
            saga.id,
            len(compensated),
            len(skipped),
            len(failed),
        )
        self._emit(
            audit_events.SAGA_COMPENSATED,
            saga,
            f"Saga compensated ({len(compensated)} steps undone)",
            {"compensated_steps": len(compensated), "skipped_steps": len(skipped), "failed_steps": len(failed)},
        )
        if report.requires_manual_review:
            self._emit(
                audit_events.SAGA_MANUAL_REVIEW_REQUIRED,
                saga,
                "Some completed steps could not be undone",
                report.as_dict(),
            )
        if self.metrics is not None:
            self.metrics.record_saga_terminal(
                saga_id=saga.id,
                status=SAGA_COMPENSATED,
                compensated_steps=len(compensated),
                skipped_steps=len(skipped),
                failed_compensations=len(failed),
            )
        return report

    def _save(self, saga: Saga) -> Saga:
        return self.store.save(saga)

    def _emit(self, event_type: str, saga: Saga, description: str, metadata: dict) -> None:
        self.audit.emit(event_type, {"saga_id": saga.id, "email_id": saga.email_id}, description, metadata)
