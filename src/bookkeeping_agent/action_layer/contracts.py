"""Action contracts: proposed actions, persisted records, results, and error kinds."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping


TARGET_QUICKBOOKS = "quickbooks"
TARGET_BILLCOM = "billcom"
TARGET_INTERNAL = "internal"

REVERSIBILITY_FULL = "full"
REVERSIBILITY_COMPENSATE = "compensate"
REVERSIBILITY_SOFT_IRREVERSIBLE = "soft_irreversible"
REVERSIBILITY_HARD_IRREVERSIBLE = "hard_irreversible"
REVERSIBILITY_LEVELS: set[str] = {
    REVERSIBILITY_FULL,
    REVERSIBILITY_COMPENSATE,
    REVERSIBILITY_SOFT_IRREVERSIBLE,
    REVERSIBILITY_HARD_IRREVERSIBLE,
}

ACTION_PENDING = "pending"
ACTION_APPROVED = "approved"
ACTION_REJECTED = "rejected"
ACTION_EXECUTING = "executing"
ACTION_COMPLETED = "completed"
ACTION_FAILED = "failed"
ACTION_COMPENSATED = "compensated"
ACTION_STATUSES: set[str] = {
    ACTION_PENDING,
    ACTION_APPROVED,
    ACTION_REJECTED,
    ACTION_EXECUTING,
    ACTION_COMPLETED,
    ACTION_FAILED,
    ACTION_COMPENSATED,
}
EXECUTABLE_STATUSES: set[str] = {ACTION_PENDING, ACTION_APPROVED}

ERROR_INVALID_STATE = "INVALID_STATE"
ERROR_ACTION_FAILED = "ACTION_FAILED"
ERROR_EXTERNAL_API = "EXTERNAL_API_ERROR"
ERROR_COMPENSATION_FAILED = "COMPENSATION_FAILED"
ERROR_POLICY = "POLICY_ERROR"
ERROR_CIRCUIT_OPEN = "circuit_open"
ERROR_KINDS: set[str] = {
    ERROR_INVALID_STATE,
    ERROR_ACTION_FAILED,
    ERROR_EXTERNAL_API,
    ERROR_COMPENSATION_FAILED,
    ERROR_POLICY,
    ERROR_CIRCUIT_OPEN,
}


class ActionContractError(ValueError):
    """Raised when an action payload violates the action contract."""


class ActionTransitionError(ValueError):
    """Raised when an action record is moved through an illegal transition."""


class ActionDispatchError(RuntimeError):
    """Raised by the dispatcher; ``kind`` is one of ``ERROR_KINDS``."""

    def __init__(self, kind: str, message: str, details: Mapping[str, Any] | None = None) -> None:
        if kind not in ERROR_KINDS:
            raise ActionContractError(f"unknown error kind: {kind!r}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


@dataclass(frozen=True)
class Compensation:
    action_type: str
    parameters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "Compensation | None":
        if payload is None:
            return None
        mapped = _as_mapping(payload, "compensation")
        return cls(
            action_type=_as_non_empty_string(mapped.get("action_type") or mapped.get("actionType"), "compensation.action_type"),
            parameters=dict(_as_mapping(mapped.get("parameters") or {}, "compensation.parameters")),
        )

    def as_dict(self) -> dict[str, Any]:
        return {"action_type": self.action_type, "parameters": dict(self.parameters)}


@dataclass(frozen=True)
class ProposedAction:
    id: str
    action_type: str
    target_system: str
    parameters: dict[str, Any]
    reversibility: str = REVERSIBILITY_COMPENSATE
    compensation: Compensation | None = None
    requires_approval: bool = False

    def __post_init__(self) -> None:
        _as_non_empty_string(self.id, "id")
        _as_non_empty_string(self.action_type, "action_type")
        _as_non_empty_string(self.target_system, "target_system")
        if self.reversibility not in REVERSIBILITY_LEVELS:
            raise ActionContractError(f"reversibility must be one of {sorted(REVERSIBILITY_LEVELS)}")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProposedAction":
        mapped = _as_mapping(payload, "ProposedAction")
        return cls(
            id=str(mapped.get("id") or ""),
            action_type=str(mapped.get("action_type") or mapped.get("actionType") or ""),
            target_system=str(mapped.get("target_system") or mapped.get("targetSystem") or ""),
            parameters=dict(_as_mapping(mapped.get("parameters") or {}, "parameters")),
            reversibility=str(mapped.get("reversibility") or REVERSIBILITY_COMPENSATE),
            compensation=Compensation.from_payload(mapped.get("compensation")),
            requires_approval=bool(mapped.get("requires_approval", mapped.get("requiresApproval", False))),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action_type": self.action_type,
            "target_system": self.target_system,
            "parameters": dict(self.parameters),
            "reversibility": self.reversibility,
            "compensation": self.compensation.as_dict() if self.compensation else None,
            "requires_approval": self.requires_approval,
        }


@dataclass(frozen=True)
class ActionResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    external_id: str | None = None
    error: dict[str, Any] | None = None

    @classmethod
    def failure(cls, error: ActionDispatchError) -> "ActionResult":
        return cls(success=False, data={}, external_id=None, error=error.as_dict())

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ActionResult":
        return cls(
            success=bool(payload.get("success")),
            data=dict(payload.get("data") or {}),
            external_id=_none_if_blank(payload.get("external_id")),
            error=dict(payload["error"]) if isinstance(payload.get("error"), Mapping) else None,
        )

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "data": dict(self.data)}
        if self.external_id:
            payload["external_id"] = self.external_id
        if self.error:
            payload["error"] = dict(self.error)
        return payload


@dataclass(frozen=True)
class ActionRecord:
    """Persisted lifecycle of one action.

    Every transition returns a new record; illegal transitions raise
    ``ActionTransitionError``.
    """

    id: str
    action_type: str
    target_system: str
    parameters: dict[str, Any]
    reversibility: str = REVERSIBILITY_COMPENSATE
    compensation: Compensation | None = None
    requires_approval: bool = False
    status: str = ACTION_PENDING
    email_id: str | None = None
    client_id: str | None = None
    risk_level: str | None = None
    risk_reasons: tuple[str, ...] = ()
    approved_by: str | None = None
    approved_at: str | None = None
    rejected_by: str | None = None
    rejected_at: str | None = None
    rejection_reason: str | None = None
    result: dict[str, Any] | None = None
    external_id: str | None = None
    error: dict[str, Any] | None = None
    executed_at: str | None = None
    is_compensated: bool = False
    compensation_id: str | None = None
    compensated_at: str | None = None
    created_at: str | None = None

    def __post_init__(self) -> None:
        if self.status not in ACTION_STATUSES:
            raise ActionContractError(f"status must be one of {sorted(ACTION_STATUSES)}")
        if self.reversibility not in REVERSIBILITY_LEVELS:
            raise ActionContractError(f"reversibility must be one of {sorted(REVERSIBILITY_LEVELS)}")
        if self.is_compensated and not self.compensation_id:
            raise ActionContractError("is_compensated requires compensation_id")

    @classmethod
    def from_proposed(
        cls,
        action: ProposedAction,
        *,
        email_id: str | None = None,
        client_id: str | None = None,
        created_at: str | None = None,
    ) -> "ActionRecord":
        return cls(
            id=action.id,
            action_type=action.action_type,
            target_system=action.target_system,
            parameters=dict(action.parameters),
            reversibility=action.reversibility,
            compensation=action.compensation,
            requires_approval=action.requires_approval,
            email_id=email_id,
            client_id=client_id,
            created_at=created_at or utc_now(),
        )

    def with_risk(self, *, level: str, reasons: tuple[str, ...], requires_approval: bool) -> "ActionRecord":
        self._require_status({ACTION_PENDING, ACTION_APPROVED}, "record risk")
        return replace(
            self,
            risk_level=level,
            risk_reasons=tuple(reasons),
            requires_approval=self.requires_approval or requires_approval,
        )

    def approve(self, by: str, *, at: str | None = None) -> "ActionRecord":
        self._require_status({ACTION_PENDING}, "approve")
        return replace(self, status=ACTION_APPROVED, approved_by=_as_non_empty_string(by, "approved_by"), approved_at=at or utc_now())

    def reject(self, by: str, reason: str, *, at: str | None = None) -> "ActionRecord":
        self._require_status({ACTION_PENDING, ACTION_APPROVED}, "reject")
        return replace(
            self,
            status=ACTION_REJECTED,
            rejected_by=_as_non_empty_string(by, "rejected_by"),
            rejection_reason=str(reason or "").strip() or None,
            rejected_at=at or utc_now(),
        )

    def mark_executing(self) -> "ActionRecord":
        self._require_status(EXECUTABLE_STATUSES, "start execution")
        return replace(self, status=ACTION_EXECUTING)

    def mark_executed(self, outcome: ActionResult, *, at: str | None = None) -> "ActionRecord":
        self._require_status({ACTION_EXECUTING}, "record execution")
        return replace(
            self,
            status=ACTION_COMPLETED if outcome.success else ACTION_FAILED,
            result=dict(outcome.data),
            external_id=outcome.external_id,
            error=dict(outcome.error) if outcome.error else None,
            executed_at=at or utc_now(),
        )

    def mark_compensated(self, compensation_id: str, *, at: str | None = None) -> "ActionRecord":
        self._require_status({ACTION_COMPLETED}, "compensate")
        return replace(
            self,
            status=ACTION_COMPENSATED,
            is_compensated=True,
            compensation_id=_as_non_empty_string(compensation_id, "compensation_id"),
            compensated_at=at or utc_now(),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action_type": self.action_type,
            "target_system": self.target_system,
            "parameters": dict(self.parameters),
            "reversibility": self.reversibility,
            "compensation": self.compensation.as_dict() if self.compensation else None,
            "requires_approval": self.requires_approval,
            "status": self.status,
            "email_id": self.email_id,
            "client_id": self.client_id,
            "risk_level": self.risk_level,
            "risk_reasons": list(self.risk_reasons),
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "rejected_by": self.rejected_by,
            "rejected_at": self.rejected_at,
            "rejection_reason": self.rejection_reason,
            "result": dict(self.result) if self.result is not None else None,
            "external_id": self.external_id,
            "error": dict(self.error) if self.error else None,
            "executed_at": self.executed_at,
            "is_compensated": self.is_compensated,
            "compensation_id": self.compensation_id,
            "compensated_at": self.compensated_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ActionRecord":
        mapped = _as_mapping(payload, "ActionRecord")
        result = mapped.get("result")
        error = mapped.get("error")
        return cls(
            id=_as_non_empty_string(mapped.get("id"), "id"),
            action_type=_as_non_empty_string(mapped.get("action_type"), "action_type"),
            target_system=_as_non_empty_string(mapped.get("target_system"), "target_system"),
            parameters=dict(mapped.get("parameters") or {}),
            reversibility=str(mapped.get("reversibility") or REVERSIBILITY_COMPENSATE),
            compensation=Compensation.from_payload(mapped.get("compensation")),
            requires_approval=bool(mapped.get("requires_approval")),
            status=str(mapped.get("status") or ACTION_PENDING),
            email_id=_none_if_blank(mapped.get("email_id")),
            client_id=_none_if_blank(mapped.get("client_id")),
            risk_level=_none_if_blank(mapped.get("risk_level")),
            risk_reasons=tuple(str(item) for item in mapped.get("risk_reasons") or ()),
            approved_by=_none_if_blank(mapped.get("approved_by")),
            approved_at=_none_if_blank(mapped.get("approved_at")),
            rejected_by=_none_if_blank(mapped.get("rejected_by")),
            rejected_at=_none_if_blank(mapped.get("rejected_at")),
            rejection_reason=_none_if_blank(mapped.get("rejection_reason")),
            result=dict(result) if isinstance(result, Mapping) else None,
            external_id=_none_if_blank(mapped.get("external_id")),
            error=dict(error) if isinstance(error, Mapping) else None,
            executed_at=_none_if_blank(mapped.get("executed_at")),
            is_compensated=bool(mapped.get("is_compensated")),
            compensation_id=_none_if_blank(mapped.get("compensation_id")),
            compensated_at=_none_if_blank(mapped.get("compensated_at")),
            created_at=_none_if_blank(mapped.get("created_at")),
        )

    def _require_status(self, allowed: set[str], verb: str) -> None:
        if self.status not in allowed:
            raise ActionTransitionError(f"cannot {verb} action {self.id} in state: {self.status}")


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _as_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ActionContractError(f"{field_name} must be a mapping")
    return value


def _as_non_empty_string(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ActionContractError(f"{field_name} must be a non-empty string")
    return value.strip()


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
