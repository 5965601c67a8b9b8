"""Risk policy loading and assessment."""

from .engine import (
    CLIENT_RISK_OVERRIDE,
    NEW_CLIENT_POLICY,
    NEW_VENDOR_POLICY,
    ClientRef,
    RiskAssessment,
    RiskAssessmentEngine,
    RiskContext,
    RuleViolation,
    ValidationResult,
    parse_amount,
)
from .policy import (
    RISK_CRITICAL,
    RISK_HIGH,
    RISK_LEVEL_PRIORITY,
    RISK_LOW,
    RISK_MEDIUM,
    PolicyError,
    RiskPolicy,
    RiskPolicyLoader,
    default_risk_policy,
    load_risk_policy,
)
