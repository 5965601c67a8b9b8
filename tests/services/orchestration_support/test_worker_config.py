from __future__ import annotations

import logging
from pathlib import Path

import pytest

from bookkeeping_agent.config import WorkerConfigError, load_worker_config
from bookkeeping_agent.logging_utils import resolve_level
from bookkeeping_agent.resilience.retry import RETRY_PRESETS


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "profile.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_profile_resolves_env_placeholders_and_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUICKBOOKS_REALM_ID", "realm-9")
    monkeypatch.delenv("BOOKKEEPING_DRY_RUN", raising=False)
    monkeypatch.delenv("BOOKKEEPING_STORE_DSN", raising=False)
    profile = _write(
        tmp_path,
        """
bookkeeping:
  policy:
    path: config/risk_policy.yaml
    skip_rules: [new_vendor, " "]
  stores:
    default: ${BOOKKEEPING_STORE_DSN:-runs/test/orchestration.sqlite}
    sagas: runs/test/sagas.sqlite
  worker:
    dry_run: ${BOOKKEEPING_DRY_RUN:-true}
  resilience:
    circuits:
      quickbooks:
        failure_threshold: 2
        timeout_ms: 500
  adapters:
    quickbooks:
      realm_id: ${QUICKBOOKS_REALM_ID}
      access_token: ${QUICKBOOKS_ACCESS_TOKEN_UNSET}
logging:
  level: debug
""",
    )

    config = load_worker_config(profile)

    assert config.policy_path == Path("config/risk_policy.yaml")
    assert config.skip_rules == ("new_vendor",)
    assert config.action_store_locator == "runs/test/orchestration.sqlite"
    assert config.saga_store_locator == "runs/test/sagas.sqlite"
    assert config.batch_size == 5
    assert config.poll_interval_seconds == 2.0
    assert config.dry_run is True
    assert config.breaker_configs["quickbooks"].failure_threshold == 2
    assert config.breaker_configs["quickbooks"].reset_timeout_ms == 60000
    assert config.retry_policy == RETRY_PRESETS["external_api"]
    assert config.quickbooks.realm_id == "realm-9"
    assert config.quickbooks.access_token is None
    assert config.log_level == "DEBUG"


def test_retry_accepts_explicit_mapping(tmp_path: Path) -> None:
    profile = _write(
        tmp_path,
        """
bookkeeping:
  resilience:
    retry:
      max_attempts: 2
      initial_delay_ms: 10
      max_delay_ms: 20
      retry_on: any
""",
    )
    policy = load_worker_config(profile).retry_policy
    assert (policy.max_attempts, policy.initial_delay_ms, policy.max_delay_ms, policy.retry_on) == (2, 10, 20, "any")


@pytest.mark.parametrize(
    "body, message",
    [
        ("- just\n- a list\n", "must be a mapping"),
        ("bookkeeping:\n  resilience:\n    retry: aggressive\n", "unknown retry preset"),
        ("bookkeeping:\n  resilience:\n    circuits:\n      quickbooks:\n        failure_threshold: 0\n", "failure_threshold"),
        ("bookkeeping:\n  worker:\n    batch_size: many\n", "invalid worker profile"),
    ],
)
def test_invalid_profiles_raise_config_error(tmp_path: Path, body: str, message: str) -> None:
    with pytest.raises(WorkerConfigError, match=message):
        load_worker_config(_write(tmp_path, body))


def test_missing_profile_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(WorkerConfigError, match="unreadable"):
        load_worker_config(tmp_path / "absent.yaml")


def test_resolve_level_accepts_names_and_numbers() -> None:
    assert resolve_level("warning") == logging.WARNING
    assert resolve_level(10) == logging.DEBUG
    assert resolve_level(None) == logging.INFO
    with pytest.raises(ValueError):
        resolve_level("loud")
