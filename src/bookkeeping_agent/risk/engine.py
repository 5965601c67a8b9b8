"""Risk assessment of proposed actions and plan-level validation."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
import logging
import re
from typing import Any, Protocol

from .policy import (
    RISK_CRITICAL,
    NUMERIC_OPERATORS,
    PolicyError,
    RiskPolicy,
    RiskPolicyLoader,
    RiskRule,
    max_risk_level,
)


logger = logging.getLogger("bookkeeping_agent.risk.engine")

NEW_VENDOR_POLICY = "new_vendor_policy"
NEW_CLIENT_POLICY = "new_client_policy"
CLIENT_RISK_OVERRIDE = "client_risk_override"
STRICT_MODE_RULE = "strict_mode"

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

_AMOUNT_NOISE = re.compile(r"[\s$€£¥,]")

VendorHistory = Callable[[str | None, Mapping[str, Any]], int]


class PlannedAction(Protocol):
    action_type: str
    parameters: Mapping[str, Any]


@dataclass(frozen=True)
class ClientRef:
    id: str
    name: str | None = None


@dataclass(frozen=True)
class RiskContext:
    client_id: str | None = None
    vendor_id: str | None = None
    vendor_transaction_count: int = 0
    extraction_confidence: float | None = None


@dataclass(frozen=True)
class RiskAssessment:
    level: str
    reasons: tuple[str, ...]
    requires_approval: bool
    applied_rules: tuple[str, ...]
    override_allowed: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "reasons": list(self.reasons),
            "requires_approval": self.requires_approval,
            "applied_rules": list(self.applied_rules),
            "override_allowed": self.override_allowed,
        }


@dataclass(frozen=True)
class RuleViolation:
    rule: str
    message: str
    severity: str

    def as_dict(self) -> dict[str, str]:
        return {"rule": self.rule, "message": self.message, "severity": self.severity}


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    risk_level: str
    requires_approval: bool
    violations: tuple[RuleViolation, ...]
    warnings: tuple[str, ...]
    applied_rules: tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "risk_level": self.risk_level,
            "requires_approval": self.requires_approval,
            "violations": [item.as_dict() for item in self.violations],
            "warnings": list(self.warnings),
            "applied_rules": list(self.applied_rules),
        }


class RiskAssessmentEngine:
    """Evaluates actions against one immutable policy.

    The engine never mutates its policy. Reloading produces a new engine from
    the loader it was built with.
    """

    def __init__(
        self,
        policy: RiskPolicy,
        *,
        skip_rules: Iterable[str] = (),
        strict_mode: bool = False,
        vendor_history: VendorHistory | None = None,
        loader: RiskPolicyLoader | None = None,
    ) -> None:
        self.policy = policy
        self.skip_rules = frozenset(skip_rules)
        self.strict_mode = strict_mode
        self.vendor_history = vendor_history
        self._loader = loader

    @classmethod
    def from_loader(cls, loader: RiskPolicyLoader, **options: Any) -> "RiskAssessmentEngine":
        return cls(loader.load(), loader=loader, **options)

    def reloaded(self) -> "RiskAssessmentEngine":
        if self._loader is None:
            raise PolicyError("engine was not built from a policy loader; nothing to reload")
        self._loader.invalidate()
        engine = RiskAssessmentEngine(
            self._loader.load(),
            skip_rules=self.skip_rules,
            strict_mode=self.strict_mode,
            vendor_history=self.vendor_history,
            loader=self._loader,
        )
        logger.info("risk policy reloaded version=%s", engine.policy.version)
        return engine

    def assess(self, action_type: str, parameters: Mapping[str, Any], context: RiskContext) -> RiskAssessment:
        reasons: list[str] = []
        applied_rules: list[str] = []
        level = self.policy.settings.default_risk_level
        requires_approval = False

        for rule in self.policy.rules:
            if rule.name in self.skip_rules:
                continue
            if not _condition_holds(rule, action_type, parameters, context):
                continue
            applied_rules.append(rule.name)
            level = max_risk_level(level, rule.risk_level)
            if rule.requires_approval:
                requires_approval = True
            reasons.append(f"{rule.name}: {rule.description}")

        settings = self.policy.settings
        if settings.require_approval_for_new_vendors and context.vendor_transaction_count == 0:
            requires_approval = True
            reasons.append("First transaction with this vendor")
            applied_rules.append(NEW_VENDOR_POLICY)
        if settings.require_approval_for_new_clients and not context.client_id:
            requires_approval = True
            reasons.append("No client matched for this email")
            applied_rules.append(NEW_CLIENT_POLICY)

        behavior = self.policy.behavior_for(level)
        if behavior is not None and behavior.requires_approval:
            requires_approval = True

        return RiskAssessment(
            level=level,
            reasons=tuple(reasons),
            requires_approval=requires_approval,
            applied_rules=tuple(applied_rules),
            override_allowed=level != RISK_CRITICAL,
        )

    def build_context(self, action: PlannedAction, client: ClientRef | None) -> RiskContext:
        params = action.parameters
        vendor_id = _optional_text(params.get("vendorId") or params.get("vendor_id"))
        if self.vendor_history is not None:
            vendor_count = int(self.vendor_history(vendor_id, params))
        else:
            vendor_count = _to_int(params.get("vendorTransactionCount", params.get("vendor_transaction_count")), 0)
        return RiskContext(
            client_id=client.id if client else None,
            vendor_id=vendor_id,
            vendor_transaction_count=vendor_count,
            extraction_confidence=_to_float(params.get("confidence")),
        )

    def assess_action(self, action: PlannedAction, client: ClientRef | None) -> RiskAssessment:
        return self.assess(action.action_type, action.parameters, self.build_context(action, client))

    def validate_plan(self, actions: Sequence[PlannedAction], client: ClientRef | None) -> ValidationResult:
        warnings: list[str] = []
        applied_rules: list[str] = []
        violations: list[RuleViolation] = []
        overall = self.policy.settings.default_risk_level
        requires_approval = False

        for action in actions:
            assessment = self.assess_action(action, client)
            applied_rules.extend(assessment.applied_rules)
            overall = max_risk_level(overall, assessment.level)
            requires_approval = requires_approval or assessment.requires_approval
            warnings.extend(f"{action.action_type}: {reason}" for reason in assessment.reasons)

        override = self.policy.override_for(client.id if client else None)
        if override is not None and override.risk_level_override:
            overall = override.risk_level_override
            applied_rules.append(CLIENT_RISK_OVERRIDE)

        behavior = self.policy.behavior_for(overall)
        if behavior is not None and behavior.requires_approval:
            requires_approval = True

        if self.strict_mode:
            violations.extend(
                RuleViolation(rule=STRICT_MODE_RULE, message=warning, severity=SEVERITY_ERROR) for warning in warnings
            )

        result = ValidationResult(
            valid=not any(item.severity == SEVERITY_ERROR for item in violations),
            risk_level=overall,
            requires_approval=requires_approval,
            violations=tuple(violations),
            warnings=tuple(warnings),
            applied_rules=tuple(dict.fromkeys(applied_rules)),
        )
        logger.info(
            "plan validated actions=%s valid=%s risk_level=%s requires_approval=%s rules=%s",
            len(actions),
            result.valid,
            result.risk_level,
            result.requires_approval,
            len(result.applied_rules),
        )
        return result


def parse_amount(value: Any) -> float:
    """Parse an amount tolerant of currency symbols and thousands separators; junk parses as 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(_AMOUNT_NOISE.sub("", value))
        except ValueError:
            return 0.0
    return 0.0


def _resolve_field(field: str, action_type: str, parameters: Mapping[str, Any], context: RiskContext) -> Any:
    if field == "amount":
        return parse_amount(parameters.get("amount"))
    if field == "action_type":
        return action_type
    if field == "vendor_transaction_count":
        return context.vendor_transaction_count
    if field == "extraction_confidence":
        return 1.0 if context.extraction_confidence is None else context.extraction_confidence
    if field == "client_id":
        return context.client_id
    return parameters.get(field)


def _condition_holds(rule: RiskRule, action_type: str, parameters: Mapping[str, Any], context: RiskContext) -> bool:
    condition = rule.condition
    actual = _resolve_field(condition.field, action_type, parameters, context)
    expected = condition.value
    operator = condition.operator
    if operator in NUMERIC_OPERATORS:
        left = _to_float(actual)
        right = _to_float(expected)
        if left is None or right is None:
            return False
        if operator == ">":
            return left > right
        if operator == "<":
            return left < right
        if operator == ">=":
            return left >= right
        return left <= right
    if operator == "==":
        return actual == expected
    if operator == "!=":
        return actual != expected
    if operator == "in":
        return isinstance(expected, list) and actual in expected
    if operator == "not_in":
        return isinstance(expected, list) and actual not in expected
    raise PolicyError(f"unsupported operator in rule {rule.name!r}: {operator!r}")


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any, default: int) -> int:
    number = _to_float(value)
    return default if number is None else int(number)


def _optional_text(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
