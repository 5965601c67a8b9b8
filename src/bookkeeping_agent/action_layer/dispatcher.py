"""Action dispatcher: precondition checks, routing, and error normalization."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
import logging
from typing import Any
import uuid

from bookkeeping_agent.integrations.contracts import AdapterError
from bookkeeping_agent.observability import OrchestrationMetrics, redact_sensitive_fields
from bookkeeping_agent.resilience.circuit_breaker import CallTimeoutError, CircuitOpenError
from bookkeeping_agent.resilience.layer import ResilienceLayer
from bookkeeping_agent.resilience.retry import RetryExhaustedError
from bookkeeping_agent.risk.engine import ClientRef, RiskAssessmentEngine

from .contracts import (
    ACTION_APPROVED,
    ACTION_COMPLETED,
    ERROR_ACTION_FAILED,
    ERROR_CIRCUIT_OPEN,
    ERROR_COMPENSATION_FAILED,
    ERROR_EXTERNAL_API,
    ERROR_INVALID_STATE,
    EXECUTABLE_STATUSES,
    ActionDispatchError,
    ActionRecord,
    ActionResult,
)
from .targets import Guard, TargetHandler


logger = logging.getLogger("bookkeeping_agent.action_layer.dispatcher")


@dataclass(frozen=True)
class DispatchOptions:
    dry_run: bool = False
    skip_approval_check: bool = False


class ActionDispatcher:
    """Executes or compensates one action record.

    Errors surface as ``ActionDispatchError``. The dispatcher neither retries
    (the resilience layer does) nor compensates on its own (the saga does).
    """

    def __init__(
        self,
        handlers: Iterable[TargetHandler],
        resilience: ResilienceLayer,
        *,
        risk_engine: RiskAssessmentEngine | None = None,
        options: DispatchOptions | None = None,
        metrics: OrchestrationMetrics | None = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._handlers: dict[str, TargetHandler] = {}
        for handler in handlers:
            self._handlers[handler.target_system] = handler
        self.resilience = resilience
        self.risk_engine = risk_engine
        self.options = options or DispatchOptions()
        self.metrics = metrics
        self._id_factory = id_factory

    def can_execute(self, action: ActionRecord) -> bool:
        if action.status not in EXECUTABLE_STATUSES:
            return False
        if action.requires_approval and action.status != ACTION_APPROVED:
            return self.options.skip_approval_check
        return True

    def resolve_risk(self, action: ActionRecord) -> ActionRecord:
        """Stamp an unassessed record with its risk; a no-op without an engine."""
        if self.risk_engine is None or action.risk_level is not None or action.status not in EXECUTABLE_STATUSES:
            return action
        client = ClientRef(id=action.client_id) if action.client_id else None
        assessment = self.risk_engine.assess_action(action, client)
        logger.info(
            "action risk assessed action_id=%s level=%s requires_approval=%s rules=%s",
            action.id,
            assessment.level,
            assessment.requires_approval,
            ",".join(assessment.applied_rules),
        )
        return action.with_risk(
            level=assessment.level,
            reasons=assessment.reasons,
            requires_approval=assessment.requires_approval,
        )

    def execute(self, action: ActionRecord) -> ActionResult:
        action = self.resolve_risk(action)
        if not self.can_execute(action):
            reason = "requires approval" if action.status in EXECUTABLE_STATUSES else f"state: {action.status}"
            raise self._failed(
                action,
                ActionDispatchError(
                    ERROR_INVALID_STATE,
                    f"Action cannot be executed ({reason})",
                    {"action_id": action.id, "status": action.status, "requires_approval": action.requires_approval},
                ),
            )

        if self.options.dry_run:
            logger.info("dry run; action not executed action_id=%s", action.id)
            self._record(action, "dry_run")
            return ActionResult(success=True, data={"dry_run": True})

        handler = self._handlers.get(action.target_system)
        if handler is None:
            raise self._failed(
                action,
                ActionDispatchError(ERROR_INVALID_STATE, f"Unknown target system: {action.target_system}"),
            )
        operation = handler.operation(action.action_type)
        if operation is None:
            raise self._failed(
                action,
                ActionDispatchError(
                    ERROR_ACTION_FAILED,
                    f"Unsupported {action.target_system} action: {action.action_type}",
                    {"supported": list(handler.supported_actions())},
                ),
            )

        logger.info(
            "executing action action_id=%s type=%s target=%s params=%s",
            action.id,
            action.action_type,
            action.target_system,
            redact_sensitive_fields(action.parameters),
        )
        try:
            result = operation(action.parameters, self._guard(handler))
        except ActionDispatchError as exc:
            raise self._failed(action, exc) from exc.__cause__
        except Exception as exc:
            raise self._failed(
                action,
                ActionDispatchError(
                    ERROR_EXTERNAL_API,
                    f"unexpected {action.target_system} failure: {exc!r}",
                    {"operation": action.action_type, "status_code": None, "fault": type(exc).__name__},
                ),
            ) from exc
        self._record(action, "executed")
        return result

    def compensate(self, action: ActionRecord, parameters: Mapping[str, Any] | None = None) -> ActionResult:
        """Undo a completed action through the fixed per-target compensation table."""
        if action.status != ACTION_COMPLETED:
            raise self._compensation_failed(action, f"Cannot compensate action in state: {action.status}")
        if not action.external_id:
            raise self._compensation_failed(action, "No external ID to compensate")
        handler = self._handlers.get(action.target_system)
        compensator = handler.compensation(action.action_type) if handler is not None else None
        if compensator is None or handler is None:
            raise self._compensation_failed(
                action,
                f"No compensation available for {action.target_system} action: {action.action_type}",
            )

        merged = dict(action.compensation.parameters) if action.compensation else {}
        merged.update(parameters or {})
        logger.info(
            "compensating action action_id=%s type=%s target=%s external_id=%s",
            action.id,
            action.action_type,
            action.target_system,
            action.external_id,
        )
        try:
            result = compensator(action, merged, self._guard(handler))
        except ActionDispatchError as exc:
            details = {"cause": exc.kind, **exc.details}
            raise self._compensation_failed(action, f"Compensation call failed: {exc.message}", details) from exc
        except Exception as exc:
            raise self._compensation_failed(action, f"unexpected {action.target_system} failure: {exc!r}") from exc

        compensation_id = self._id_factory()
        self._record(action, "compensated")
        return ActionResult(
            success=True,
            external_id=result.external_id,
            data={**result.data, "compensation_id": compensation_id},
        )

    def _guard(self, handler: TargetHandler) -> Guard:
        target = handler.target_system

        def _call(operation: str, fn: Callable[[], Any]) -> Any:
            if not handler.guarded:
                return fn()
            try:
                return self.resilience.call(target, fn, operation=operation)
            except CircuitOpenError as exc:
                raise ActionDispatchError(ERROR_CIRCUIT_OPEN, str(exc), {"circuit": exc.circuit_name}) from exc
            except (RetryExhaustedError, CallTimeoutError) as exc:
                raise ActionDispatchError(
                    ERROR_EXTERNAL_API,
                    str(exc),
                    _external_details(exc, operation),
                ) from exc

        return _call

    def _failed(self, action: ActionRecord, error: ActionDispatchError) -> ActionDispatchError:
        logger.warning(
            "action dispatch failed action_id=%s kind=%s message=%s",
            action.id,
            error.kind,
            error.message,
        )
        self._record(action, "failed", error.kind)
        return error

    def _compensation_failed(
        self,
        action: ActionRecord,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> ActionDispatchError:
        payload = {"action_id": action.id, **dict(details or {})}
        error = ActionDispatchError(ERROR_COMPENSATION_FAILED, message, payload)
        logger.error("action compensation failed action_id=%s message=%s", action.id, message)
        self._record(action, "compensation_failed", error.kind)
        return error

    def _record(self, action: ActionRecord, outcome: str, error_kind: str | None = None) -> None:
        if self.metrics is None:
            return
        self.metrics.record_dispatch(
            action_type=action.action_type,
            target_system=action.target_system,
            outcome=outcome,
            error_kind=error_kind,
        )


def _external_details(exc: Exception, operation: str) -> dict[str, Any]:
    cause: Exception = exc.last_error if isinstance(exc, RetryExhaustedError) else exc
    details: dict[str, Any] = {"operation": operation}
    if isinstance(exc, RetryExhaustedError):
        details["attempts"] = exc.attempts
    if isinstance(cause, AdapterError):
        details["status_code"] = cause.status_code
        details["fault"] = cause.fault
        details["adapter_code"] = cause.code
    elif isinstance(cause, CallTimeoutError):
        details["status_code"] = None
        details["fault"] = "timeout"
    else:
        details["status_code"] = getattr(cause, "status_code", None)
        details["fault"] = str(cause)[:256]
    return details
