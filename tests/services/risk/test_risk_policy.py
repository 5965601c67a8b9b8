from __future__ import annotations

from pathlib import Path

import pytest

from bookkeeping_agent.risk.policy import (
    PolicyError,
    RiskPolicyLoader,
    default_risk_policy,
    load_risk_policy,
)


def test_repo_policy_matches_builtin_default() -> None:
    policy = load_risk_policy(Path("config/risk_policy.yaml"))
    default = default_risk_policy()
    assert policy.version == "1.0"
    assert [rule.name for rule in policy.rules] == [rule.name for rule in default.rules]
    assert policy.behavior_for("critical").requires_approval is True
    assert policy.behavior_for("medium").include_in_daily_summary is True
    assert policy.settings.default_risk_level == "medium"


def test_missing_or_unset_policy_falls_back_to_default(tmp_path: Path) -> None:
    assert load_risk_policy(None).rules == default_risk_policy().rules
    absent = load_risk_policy(tmp_path / "nope.yaml")
    assert [rule.name for rule in absent.rules][0] == "critical_amount"


def test_camel_case_policy_keys_are_accepted(tmp_path: Path) -> None:
    path = tmp_path / "risk-policy.yaml"
    path.write_text(
        """
version: 2
settings:
  defaultRiskLevel: low
  requireApprovalForNewVendors: false
rules:
  - name: big
    description: Big spend
    condition: {field: amount, operator: ">=", value: 100}
    riskLevel: high
    requiresApproval: true
riskBehaviors:
  high: {requiresApproval: true, approvalTimeoutHours: 12, notifyChannels: [slack]}
clientOverrides:
  - {clientId: c1, riskLevelOverride: low, autoApproveVendors: [Acme]}
""",
        encoding="utf-8",
    )
    policy = load_risk_policy(path)
    assert policy.version == "2"
    assert policy.settings.default_risk_level == "low"
    assert policy.settings.require_approval_for_new_vendors is False
    assert policy.settings.require_approval_for_new_clients is True
    assert policy.rules[0].risk_level == "high"
    assert policy.behavior_for("high").notify_channels == ("slack",)
    assert policy.override_for("c1").auto_approve_vendors == ("Acme",)
    assert policy.override_for("c2") is None


@pytest.mark.parametrize(
    "content,match",
    [
        ("- just\n- a list\n", "must be a mapping"),
        ("version: '1'\nrules: [\n", "unreadable"),
        ("version: '1'\n", "invalid risk policy"),
        (
            "version: '1'\nrules:\n  - {name: r, condition: {field: amount, operator: between, value: 1}, "
            "risk_level: high, requires_approval: true}\n",
            "invalid risk policy",
        ),
        (
            "version: '1'\nrules:\n  - {name: r, condition: {field: action_type, operator: in, value: pay}, "
            "risk_level: high, requires_approval: true}\n",
            "invalid risk policy",
        ),
        (
            "version: '1'\nrules:\n  - {name: r, condition: {field: amount, operator: '>', value: 1}, "
            "risk_level: severe, requires_approval: true}\n",
            "invalid risk policy",
        ),
    ],
)
def test_malformed_policy_raises_policy_error(tmp_path: Path, content: str, match: str) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(PolicyError, match=match) as excinfo:
        load_risk_policy(path)
    assert excinfo.value.kind == "POLICY_ERROR"


def test_duplicate_rule_names_rejected(tmp_path: Path) -> None:
    rule = "  - {name: dup, condition: {field: amount, operator: '>', value: 1}, risk_level: high, requires_approval: true}\n"
    path = tmp_path / "dup.yaml"
    path.write_text("version: '1'\nrules:\n" + rule + rule, encoding="utf-8")
    with pytest.raises(PolicyError, match="duplicate rule name"):
        load_risk_policy(path)


def test_loader_caches_until_invalidated(tmp_path: Path) -> None:
    path = tmp_path / "policy.yaml"
    path.write_text("version: '1'\nrules: []\n", encoding="utf-8")
    loader = RiskPolicyLoader(path)
    first = loader.load()

    path.write_text("version: '2'\nrules: []\n", encoding="utf-8")
    assert loader.load() is first

    loader.invalidate()
    assert loader.load().version == "2"
