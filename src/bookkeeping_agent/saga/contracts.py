"""Saga aggregate: an ordered, owned list of steps plus run status.

Every mutation returns a new ``Saga`` carrying a new step tuple; the store
persists status, cursor and the whole step list together.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from bookkeeping_agent.action_layer.contracts import (
    ACTION_APPROVED,
    ACTION_COMPLETED,
    ACTION_PENDING,
    REVERSIBILITY_COMPENSATE,
    REVERSIBILITY_HARD_IRREVERSIBLE,
    REVERSIBILITY_LEVELS,
    ActionRecord,
    Compensation,
    utc_now,
)


SAGA_PENDING = "pending"
SAGA_RUNNING = "running"
SAGA_AWAITING_APPROVAL = "awaiting_approval"
SAGA_COMPLETED = "completed"
SAGA_FAILED = "failed"
SAGA_COMPENSATING = "compensating"
SAGA_COMPENSATED = "compensated"
SAGA_STATUSES: set[str] = {
    SAGA_PENDING,
    SAGA_RUNNING,
    SAGA_AWAITING_APPROVAL,
    SAGA_COMPLETED,
    SAGA_FAILED,
    SAGA_COMPENSATING,
    SAGA_COMPENSATED,
}

STEP_PENDING = "pending"
STEP_EXECUTING = "executing"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"
STEP_COMPENSATED = "compensated"
STEP_STATUSES: set[str] = {
    STEP_PENDING,
    STEP_EXECUTING,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_COMPENSATED,
}

SKIP_NO_COMPENSATION = "no_compensation"
SKIP_HARD_IRREVERSIBLE = "hard_irreversible"


class SagaContractError(ValueError):
    """Raised when a saga payload violates the saga contract."""


class SagaStateError(ValueError):
    """Raised when a saga or step is moved through an illegal transition."""


@dataclass(frozen=True)
class SagaStep:
    id: str
    name: str
    action_type: str
    target_system: str
    parameters: dict[str, Any] = field(default_factory=dict)
    compensation: Compensation | None = None
    reversibility: str = REVERSIBILITY_COMPENSATE
    requires_approval: bool = False
    status: str = STEP_PENDING
    risk_level: str | None = None
    result: dict[str, Any] | None = None
    external_id: str | None = None
    error: dict[str, Any] | None = None
    executed_at: str | None = None
    compensation_id: str | None = None
    compensated_at: str | None = None

    def __post_init__(self) -> None:
        if self.status not in STEP_STATUSES:
            raise SagaContractError(f"step status must be one of {sorted(STEP_STATUSES)}")
        if self.reversibility not in REVERSIBILITY_LEVELS:
            raise SagaContractError(f"reversibility must be one of {sorted(REVERSIBILITY_LEVELS)}")

    def skip_reason(self) -> str | None:
        if self.reversibility == REVERSIBILITY_HARD_IRREVERSIBLE:
            return SKIP_HARD_IRREVERSIBLE
        if self.compensation is None:
            return SKIP_NO_COMPENSATION
        return None

    def with_risk(self, *, level: str | None, requires_approval: bool) -> "SagaStep":
        return replace(self, risk_level=level, requires_approval=self.requires_approval or requires_approval)

    def mark_executing(self) -> "SagaStep":
        self._require_status({STEP_PENDING}, "start")
        return replace(self, status=STEP_EXECUTING)

    def mark_completed(
        self,
        result: Mapping[str, Any],
        *,
        external_id: str | None = None,
        at: str | None = None,
    ) -> "SagaStep":
        self._require_status({STEP_PENDING, STEP_EXECUTING}, "complete")
        return replace(
            self,
            status=STEP_COMPLETED,
            result=dict(result),
            external_id=external_id,
            executed_at=at or utc_now(),
        )

    def mark_failed(self, error: Mapping[str, Any]) -> "SagaStep":
        self._require_status({STEP_PENDING, STEP_EXECUTING}, "fail")
        return replace(self, status=STEP_FAILED, error=dict(error))

    def mark_compensated(self, compensation_id: str, *, at: str | None = None) -> "SagaStep":
        self._require_status({STEP_COMPLETED}, "compensate")
        return replace(
            self,
            status=STEP_COMPENSATED,
            compensation_id=compensation_id,
            compensated_at=at or utc_now(),
        )

    def to_action(self, saga: "Saga", index: int, *, approved: bool = False) -> ActionRecord:
        """Project the step onto an action record the dispatcher can execute."""
        return ActionRecord(
            id=f"{saga.id}:{index}",
            action_type=self.action_type,
            target_system=self.target_system,
            parameters=dict(self.parameters),
            reversibility=self.reversibility,
            compensation=self.compensation,
            requires_approval=self.requires_approval,
            status=ACTION_APPROVED if approved else ACTION_PENDING,
            email_id=saga.email_id,
            client_id=saga.client_id,
            risk_level=self.risk_level,
        )

    def to_completed_action(self, saga: "Saga", index: int) -> ActionRecord:
        return ActionRecord(
            id=f"{saga.id}:{index}",
            action_type=self.action_type,
            target_system=self.target_system,
            parameters=dict(self.parameters),
            reversibility=self.reversibility,
            compensation=self.compensation,
            requires_approval=self.requires_approval,
            status=ACTION_COMPLETED,
            email_id=saga.email_id,
            client_id=saga.client_id,
            risk_level=self.risk_level,
            result=dict(self.result or {}),
            external_id=self.external_id,
            executed_at=self.executed_at,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, index: int = 0) -> "SagaStep":
        if not isinstance(payload, Mapping):
            raise SagaContractError(f"steps[{index}] must be a mapping")
        action_type = _text(payload.get("action_type") or payload.get("actionType"))
        target_system = _text(payload.get("target_system") or payload.get("targetSystem"))
        if not action_type or not target_system:
            raise SagaContractError(f"steps[{index}] requires action_type and target_system")
        parameters = payload.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            raise SagaContractError(f"steps[{index}].parameters must be a mapping")
        result = payload.get("result")
        error = payload.get("error")
        return cls(
            id=_text(payload.get("id")) or f"step-{index}",
            name=_text(payload.get("name")) or action_type,
            action_type=action_type,
            target_system=target_system,
            parameters=dict(parameters),
            compensation=Compensation.from_payload(payload.get("compensation")),
            reversibility=_text(payload.get("reversibility")) or REVERSIBILITY_COMPENSATE,
            requires_approval=bool(payload.get("requires_approval", payload.get("requiresApproval", False))),
            status=_text(payload.get("status")) or STEP_PENDING,
            risk_level=_text(payload.get("risk_level")) or None,
            result=dict(result) if isinstance(result, Mapping) else None,
            external_id=_text(payload.get("external_id")) or None,
            error=dict(error) if isinstance(error, Mapping) else None,
            executed_at=_text(payload.get("executed_at") or payload.get("executedAt")) or None,
            compensation_id=_text(payload.get("compensation_id")) or None,
            compensated_at=_text(payload.get("compensated_at") or payload.get("compensatedAt")) or None,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "action_type": self.action_type,
            "target_system": self.target_system,
            "parameters": dict(self.parameters),
            "compensation": self.compensation.as_dict() if self.compensation else None,
            "reversibility": self.reversibility,
            "requires_approval": self.requires_approval,
            "status": self.status,
            "risk_level": self.risk_level,
            "result": dict(self.result) if self.result is not None else None,
            "external_id": self.external_id,
            "error": dict(self.error) if self.error else None,
            "executed_at": self.executed_at,
            "compensation_id": self.compensation_id,
            "compensated_at": self.compensated_at,
        }

    def _require_status(self, allowed: set[str], verb: str) -> None:
        if self.status not in allowed:
            raise SagaStateError(f"cannot {verb} step {self.id} in state: {self.status}")


@dataclass(frozen=True)
class Saga:
    id: str
    email_id: str
    steps: tuple[SagaStep, ...]
    status: str = SAGA_PENDING
    current_step: int = 0
    client_id: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    compensated_at: str | None = None
    error: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not str(self.id or "").strip():
            raise SagaContractError("saga id is required")
        if self.status not in SAGA_STATUSES:
            raise SagaContractError(f"saga status must be one of {sorted(SAGA_STATUSES)}")
        if self.current_step < 0 or self.current_step > len(self.steps):
            raise SagaContractError(f"current_step out of range: {self.current_step}")

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def current(self) -> SagaStep | None:
        if self.current_step >= len(self.steps):
            return None
        return self.steps[self.current_step]

    def with_step(self, index: int, step: SagaStep) -> "Saga":
        steps = list(self.steps)
        steps[index] = step
        return replace(self, steps=tuple(steps))

    def with_status(self, status: str, **stamps: Any) -> "Saga":
        if status not in SAGA_STATUSES:
            raise SagaStateError(f"unknown saga status: {status!r}")
        return replace(self, status=status, **stamps)

    def advance(self) -> "Saga":
        return replace(self, current_step=min(self.current_step + 1, len(self.steps)))

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Saga":
        if not isinstance(payload, Mapping):
            raise SagaContractError("saga payload must be a mapping")
        raw_steps = payload.get("steps")
        if not isinstance(raw_steps, (list, tuple)):
            raise SagaContractError("saga steps must be a list")
        error = payload.get("error")
        return cls(
            id=_text(payload.get("id")),
            email_id=_text(payload.get("email_id") or payload.get("emailId")),
            client_id=_text(payload.get("client_id") or payload.get("clientId")) or None,
            steps=tuple(SagaStep.from_payload(item, index=index) for index, item in enumerate(raw_steps)),
            status=_text(payload.get("status")) or SAGA_PENDING,
            current_step=int(payload.get("current_step", payload.get("currentStep", 0)) or 0),
            started_at=_text(payload.get("started_at") or payload.get("startedAt")) or None,
            completed_at=_text(payload.get("completed_at") or payload.get("completedAt")) or None,
            failed_at=_text(payload.get("failed_at") or payload.get("failedAt")) or None,
            compensated_at=_text(payload.get("compensated_at") or payload.get("compensatedAt")) or None,
            error=dict(error) if isinstance(error, Mapping) else None,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email_id": self.email_id,
            "client_id": self.client_id,
            "status": self.status,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "steps": [step.as_dict() for step in self.steps],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "compensated_at": self.compensated_at,
            "error": dict(self.error) if self.error else None,
        }


@dataclass(frozen=True)
class StepCompensation:
    index: int
    step_name: str
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"index": self.index, "step_name": self.step_name, "detail": self.detail}


@dataclass(frozen=True)
class CompensationReport:
    """Outcome of one compensation pass; anything skipped or failed needs an operator."""

    saga: Saga
    compensated: tuple[StepCompensation, ...] = ()
    skipped: tuple[StepCompensation, ...] = ()
    failed: tuple[StepCompensation, ...] = ()

    @property
    def requires_manual_review(self) -> bool:
        return bool(self.skipped or self.failed)

    def as_dict(self) -> dict[str, Any]:
        return {
            "saga_id": self.saga.id,
            "status": self.saga.status,
            "compensated": [item.as_dict() for item in self.compensated],
            "skipped": [item.as_dict() for item in self.skipped],
            "failed": [item.as_dict() for item in self.failed],
            "requires_manual_review": self.requires_manual_review,
        }


def _text(value: Any) -> str:
    return str(value or "").strip()
