"""Risk policy schema, built-in default policy, and YAML loader."""

from __future__ import annotations

import logging
from pathlib import Path
import threading
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel
import yaml


logger = logging.getLogger("bookkeeping_agent.risk.policy")

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
RISK_CRITICAL = "critical"
RISK_LEVEL_PRIORITY: dict[str, int] = {
    RISK_LOW: 1,
    RISK_MEDIUM: 2,
    RISK_HIGH: 3,
    RISK_CRITICAL: 4,
}

RiskLevel = Literal["low", "medium", "high", "critical"]
Operator = Literal[">", "<", ">=", "<=", "==", "!=", "in", "not_in"]

NUMERIC_OPERATORS = {">", "<", ">=", "<="}
MEMBERSHIP_OPERATORS = {"in", "not_in"}


class PolicyError(ValueError):
    """Raised when a risk policy file is unreadable or malformed."""

    kind = "POLICY_ERROR"


def max_risk_level(left: str, right: str) -> str:
    return right if RISK_LEVEL_PRIORITY[right] > RISK_LEVEL_PRIORITY[left] else left


class _PolicyModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class RuleCondition(_PolicyModel):
    field: str
    operator: Operator
    value: str | int | float | list[str | int | float]

    @model_validator(mode="after")
    def _value_matches_operator(self) -> "RuleCondition":
        if self.operator in MEMBERSHIP_OPERATORS and not isinstance(self.value, list):
            raise ValueError(f"operator {self.operator!r} requires a list value")
        if self.operator in NUMERIC_OPERATORS and (isinstance(self.value, (list, bool)) or not _is_number_like(self.value)):
            raise ValueError(f"operator {self.operator!r} requires a numeric value")
        return self


class RiskRule(_PolicyModel):
    name: str
    description: str = ""
    condition: RuleCondition
    risk_level: RiskLevel
    requires_approval: bool


class RiskBehavior(_PolicyModel):
    requires_approval: bool
    approval_timeout_hours: float | None = None
    escalate_after_hours: float | None = None
    notify_channels: tuple[str, ...] = ()
    include_in_daily_summary: bool = False
    include_in_weekly_summary: bool = False


class ClientOverride(_PolicyModel):
    client_id: str
    approval_threshold: float | None = None
    auto_approve_vendors: tuple[str, ...] = ()
    risk_level_override: RiskLevel | None = None


class PolicySettings(_PolicyModel):
    default_risk_level: RiskLevel = "medium"
    require_approval_for_new_vendors: bool = True
    require_approval_for_new_clients: bool = True


class RiskPolicy(_PolicyModel):
    version: str
    settings: PolicySettings = PolicySettings()
    rules: tuple[RiskRule, ...]
    risk_behaviors: dict[RiskLevel, RiskBehavior] = {}
    client_overrides: tuple[ClientOverride, ...] = ()

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @model_validator(mode="after")
    def _unique_rule_names(self) -> "RiskPolicy":
        seen: set[str] = set()
        for rule in self.rules:
            if rule.name in seen:
                raise ValueError(f"duplicate rule name: {rule.name!r}")
            seen.add(rule.name)
        return self

    def behavior_for(self, level: str) -> RiskBehavior | None:
        return self.risk_behaviors.get(level)

    def override_for(self, client_id: str | None) -> ClientOverride | None:
        if not client_id:
            return None
        for item in self.client_overrides:
            if item.client_id == client_id:
                return item
        return None


def default_risk_policy() -> RiskPolicy:
    return RiskPolicy.model_validate(
        {
            "version": "1.0",
            "settings": {
                "default_risk_level": "medium",
                "require_approval_for_new_vendors": True,
                "require_approval_for_new_clients": True,
            },
            "rules": [
                {
                    "name": "critical_amount",
                    "description": "Very high value transactions",
                    "condition": {"field": "amount", "operator": ">", "value": 25000},
                    "risk_level": "critical",
                    "requires_approval": True,
                },
                {
                    "name": "high_amount",
                    "description": "High value transactions",
                    "condition": {"field": "amount", "operator": ">", "value": 5000},
                    "risk_level": "high",
                    "requires_approval": True,
                },
                {
                    "name": "new_vendor",
                    "description": "First transaction with this vendor",
                    "condition": {"field": "vendor_transaction_count", "operator": "==", "value": 0},
                    "risk_level": "high",
                    "requires_approval": True,
                },
                {
                    "name": "low_confidence",
                    "description": "LLM extraction has low confidence",
                    "condition": {"field": "extraction_confidence", "operator": "<", "value": 0.8},
                    "risk_level": "high",
                    "requires_approval": True,
                },
                {
                    "name": "payment_execution",
                    "description": "Executing actual payment",
                    "condition": {
                        "field": "action_type",
                        "operator": "in",
                        "value": ["execute_payment", "schedule_payment"],
                    },
                    "risk_level": "critical",
                    "requires_approval": True,
                },
            ],
            "risk_behaviors": {
                "critical": {
                    "requires_approval": True,
                    "approval_timeout_hours": 24,
                    "escalate_after_hours": 4,
                    "notify_channels": ["email", "slack"],
                },
                "high": {
                    "requires_approval": True,
                    "approval_timeout_hours": 48,
                    "escalate_after_hours": 24,
                    "notify_channels": ["email", "slack"],
                },
                "medium": {
                    "requires_approval": False,
                    "include_in_daily_summary": True,
                    "notify_channels": ["email"],
                },
                "low": {
                    "requires_approval": False,
                    "include_in_weekly_summary": True,
                },
            },
        }
    )


def load_risk_policy(path: Path | str | None) -> RiskPolicy:
    """Load a policy file; an unset or missing path yields the built-in default.

    Anything present but unreadable or invalid raises ``PolicyError``.
    """
    if path is None or str(path).strip() == "":
        return default_risk_policy()
    policy_path = Path(path)
    if not policy_path.exists():
        logger.warning("risk policy file not found path=%s; using default policy", policy_path)
        return default_risk_policy()
    try:
        payload = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise PolicyError(f"risk policy unreadable: {policy_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise PolicyError("risk policy must be a mapping")
    try:
        return RiskPolicy.model_validate(payload)
    except ValidationError as exc:
        raise PolicyError(f"invalid risk policy {policy_path}: {exc}") from exc


class RiskPolicyLoader:
    """Caches one policy per loader; ``invalidate`` forces the next ``load`` to re-read."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else None
        self._cached: RiskPolicy | None = None
        self._lock = threading.Lock()

    def load(self) -> RiskPolicy:
        with self._lock:
            if self._cached is None:
                self._cached = load_risk_policy(self.path)
                logger.info(
                    "risk policy loaded path=%s version=%s rules=%s",
                    self.path,
                    self._cached.version,
                    len(self._cached.rules),
                )
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


def _is_number_like(value: Any) -> bool:
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value))
    except ValueError:
        return False
    return True
