"""Worker profile loading.

Profiles are YAML. Any string value written as ``${VAR}`` or ``${VAR:-default}``
is resolved from the environment, which is how adapter credentials get in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from .resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerConfigError
from .resilience.retry import RETRY_PRESETS, RetryPolicy, RetryPolicyError


_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")

DEFAULT_BATCH_SIZE = 5
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_STORE_LOCATOR = "runs/bookkeeping/orchestration.sqlite"


class WorkerConfigError(ValueError):
    """Raised when a worker profile is unreadable or invalid."""


@dataclass(frozen=True)
class QuickBooksSettings:
    realm_id: str | None = None
    access_token: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class BillComSettings:
    dev_key: str | None = None
    session_id: str | None = None
    user_name: str | None = None
    password: str | None = field(default=None, repr=False)
    org_id: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class WorkerConfig:
    profile_path: Path
    policy_path: Path | None
    strict_mode: bool
    skip_rules: tuple[str, ...]
    action_store_locator: str
    saga_store_locator: str
    queue_locator: str
    batch_size: int
    poll_interval_seconds: float
    dry_run: bool
    skip_approval_check: bool
    dispatch_on_resume: bool
    breaker_configs: dict[str, CircuitBreakerConfig]
    retry_policy: RetryPolicy
    quickbooks: QuickBooksSettings
    billcom: BillComSettings
    metrics_path: Path | None
    log_level: str
    log_paths: tuple[str, ...]


def load_worker_config(profile_path: Path) -> WorkerConfig:
    try:
        payload = yaml.safe_load(profile_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise WorkerConfigError(f"worker profile unreadable: {profile_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise WorkerConfigError("worker profile must be a mapping")
    root = _section(payload, "bookkeeping")
    policy = _section(root, "policy")
    stores = _section(root, "stores")
    worker = _section(root, "worker")
    resilience = _section(root, "resilience")
    adapters = _section(root, "adapters")
    qbo = _section(adapters, "quickbooks")
    billcom = _section(adapters, "billcom")
    logging_section = _section(payload, "logging")

    default_locator = str(_env(stores.get("default")) or DEFAULT_STORE_LOCATOR).strip()
    policy_path = _none_if_blank(_env(policy.get("path")))
    metrics_path = _none_if_blank(_env(worker.get("metrics_path")))
    try:
        return WorkerConfig(
            profile_path=profile_path,
            policy_path=Path(policy_path) if policy_path else None,
            strict_mode=_flag(policy.get("strict_mode")),
            skip_rules=tuple(str(item).strip() for item in policy.get("skip_rules") or () if str(item).strip()),
            action_store_locator=_none_if_blank(_env(stores.get("actions"))) or default_locator,
            saga_store_locator=_none_if_blank(_env(stores.get("sagas"))) or default_locator,
            queue_locator=_none_if_blank(_env(stores.get("queue"))) or default_locator,
            batch_size=max(1, int(_env(worker.get("batch_size")) or DEFAULT_BATCH_SIZE)),
            poll_interval_seconds=max(
                0.05,
                float(_env(worker.get("poll_interval_seconds")) or DEFAULT_POLL_INTERVAL_SECONDS),
            ),
            dry_run=_flag(worker.get("dry_run")),
            skip_approval_check=_flag(worker.get("skip_approval_check")),
            dispatch_on_resume=_flag(worker.get("dispatch_on_resume")),
            breaker_configs=_breaker_configs(resilience.get("circuits")),
            retry_policy=_retry_policy(resilience.get("retry")),
            quickbooks=QuickBooksSettings(
                realm_id=_none_if_blank(_env(qbo.get("realm_id"))),
                access_token=_none_if_blank(_env(qbo.get("access_token"))),
                base_url=_none_if_blank(_env(qbo.get("base_url"))),
                timeout_seconds=float(_env(qbo.get("timeout_seconds")) or 30.0),
            ),
            billcom=BillComSettings(
                dev_key=_none_if_blank(_env(billcom.get("dev_key"))),
                session_id=_none_if_blank(_env(billcom.get("session_id"))),
                user_name=_none_if_blank(_env(billcom.get("user_name"))),
                password=_none_if_blank(_env(billcom.get("password"))),
                org_id=_none_if_blank(_env(billcom.get("org_id"))),
                base_url=_none_if_blank(_env(billcom.get("base_url"))),
                timeout_seconds=float(_env(billcom.get("timeout_seconds")) or 30.0),
            ),
            metrics_path=Path(metrics_path) if metrics_path else None,
            log_level=str(_env(logging_section.get("level")) or "INFO").strip().upper(),
            log_paths=tuple(str(_env(item)) for item in logging_section.get("paths") or () if str(_env(item)).strip()),
        )
    except WorkerConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise WorkerConfigError(f"invalid worker profile {profile_path}: {exc}") from exc


def _breaker_configs(raw: Any) -> dict[str, CircuitBreakerConfig]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise WorkerConfigError("resilience.circuits must be a mapping of target name to settings")
    configs: dict[str, CircuitBreakerConfig] = {}
    for name, settings in raw.items():
        if not isinstance(settings, Mapping):
            raise WorkerConfigError(f"resilience.circuits.{name} must be a mapping")
        try:
            configs[str(name)] = CircuitBreakerConfig(
                **{key: int(_env(value)) for key, value in settings.items() if key in _BREAKER_KEYS}
            )
        except CircuitBreakerConfigError as exc:
            raise WorkerConfigError(f"resilience.circuits.{name}: {exc}") from exc
    return configs


def _retry_policy(raw: Any) -> RetryPolicy:
    if raw is None:
        return RETRY_PRESETS["external_api"]
    if isinstance(raw, str):
        preset = RETRY_PRESETS.get(str(_env(raw)).strip())
        if preset is None:
            raise WorkerConfigError(f"unknown retry preset: {raw!r}")
        return preset
    if not isinstance(raw, Mapping):
        raise WorkerConfigError("resilience.retry must be a preset name or a mapping")
    values = {key: _env(value) for key, value in raw.items() if key in _RETRY_KEYS}
    try:
        return RetryPolicy(
            max_attempts=int(values.get("max_attempts", 5)),
            initial_delay_ms=int(values.get("initial_delay_ms", 1000)),
            max_delay_ms=int(values.get("max_delay_ms", 30000)),
            multiplier=float(values.get("multiplier", 2.0)),
            jitter=float(values.get("jitter", 0.1)),
            retry_on=str(values.get("retry_on", "transient")),
        )
    except RetryPolicyError as exc:
        raise WorkerConfigError(f"resilience.retry: {exc}") from exc


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


def _env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


def _flag(value: Any) -> bool:
    resolved = _env(value)
    if isinstance(resolved, bool):
        return resolved
    return str(resolved or "").strip().lower() in {"1", "true", "yes", "on"}


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


_BREAKER_KEYS = {"failure_threshold", "success_threshold", "timeout_ms", "reset_timeout_ms"}
_RETRY_KEYS = {"max_attempts", "initial_delay_ms", "max_delay_ms", "multiplier", "jitter", "retry_on"}
