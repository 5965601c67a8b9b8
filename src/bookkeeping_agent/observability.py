"""Orchestration counters, health evaluation, and redaction helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import threading
from typing import Any, Mapping


class ObservabilityError(ValueError):
    """Raised when observability inputs are invalid."""


@dataclass(frozen=True)
class HealthThresholds:
    amber_error_rate: float = 0.05
    red_error_rate: float = 0.20
    amber_open_circuits: int = 1
    red_manual_review: int = 1


@dataclass(frozen=True)
class HealthStatus:
    state: str
    reason_codes: tuple[str, ...]
    signals: dict[str, float]


@dataclass
class OrchestrationMetrics:
    counters: dict[str, int] = field(default_factory=dict)
    recent_events: list[dict[str, Any]] = field(default_factory=list)
    max_recent_events: int = 25
    manual_review_pending: set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_recent_events <= 0:
            raise ObservabilityError("max_recent_events must be > 0")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def record_dispatch(
        self,
        *,
        action_type: str,
        target_system: str,
        outcome: str,
        error_kind: str | None = None,
    ) -> None:
        counter = _DISPATCH_COUNTERS.get(outcome)
        if counter is None:
            raise ObservabilityError(f"unsupported dispatch outcome: {outcome!r}")
        payload: dict[str, Any] = {"action_type": action_type, "target_system": target_system, "outcome": outcome}
        if error_kind:
            payload["error_kind"] = error_kind
        with self._lock:
            self.counters[counter] += 1
            if error_kind == "circuit_open":
                self.counters["dispatch_circuit_open_total"] += 1
            self._append_event("dispatch", payload)

    def record_saga_terminal(
        self,
        *,
        saga_id: str,
        status: str,
        compensated_steps: int = 0,
        skipped_steps: int = 0,
        failed_compensations: int = 0,
    ) -> None:
        counter = _SAGA_COUNTERS.get(status)
        if counter is None:
            raise ObservabilityError(f"unsupported saga status: {status!r}")
        with self._lock:
            self.counters[counter] += 1
            self.counters["compensation_steps_total"] += compensated_steps
            self.counters["compensation_skipped_total"] += skipped_steps
            self.counters["compensation_failed_total"] += failed_compensations
            if skipped_steps or failed_compensations:
                self.counters["manual_review_total"] += 1
                self.manual_review_pending.add(saga_id)
            else:
                self.manual_review_pending.discard(saga_id)
            self._append_event(
                "saga_terminal",
                {
                    "saga_id": saga_id,
                    "status": status,
                    "compensated_steps": compensated_steps,
                    "skipped_steps": skipped_steps,
                    "failed_compensations": failed_compensations,
                },
            )

    def resolve_manual_review(self, saga_id: str) -> bool:
        """Clear an outstanding review once an operator has handled the saga."""
        with self._lock:
            if saga_id not in self.manual_review_pending:
                return False
            self.manual_review_pending.discard(saga_id)
            self._append_event("manual_review_resolved", {"saga_id": saga_id})
            return True

    def record_circuit_transition(self, name: str, old_state: str, new_state: str) -> None:
        """Signature matches the circuit breaker state-change callback."""
        with self._lock:
            self.counters["circuit_transitions_total"] += 1
            if new_state == "open":
                self.counters["circuit_opened_total"] += 1
            self._append_event("circuit_transition", {"circuit": name, "from": old_state, "to": new_state})

    def record_job(self, *, job_type: str, succeeded: bool) -> None:
        with self._lock:
            self.counters["jobs_completed_total" if succeeded else "jobs_failed_total"] += 1
            self._append_event("job", {"job_type": job_type, "succeeded": succeeded})

    def snapshot(self, *, generated_at_utc: str | None = None) -> dict[str, Any]:
        with self._lock:
            return {
                "generated_at_utc": generated_at_utc or _utc_now(),
                "metrics": {**self.counters, "manual_review_pending": len(self.manual_review_pending)},
                "recent_events": list(self.recent_events),
            }

    def evaluate_health(
        self,
        *,
        open_circuits: int = 0,
        thresholds: HealthThresholds | None = None,
    ) -> HealthStatus:
        policy = thresholds or HealthThresholds()
        if open_circuits < 0:
            raise ObservabilityError("open_circuits must be >= 0")
        with self._lock:
            dispatched = int(self.counters["dispatch_executed_total"]) + int(self.counters["dispatch_failed_total"])
            failed = int(self.counters["dispatch_failed_total"])
            manual_review = len(self.manual_review_pending)
        error_rate = float(failed) / float(max(1, dispatched))

        reasons: set[str] = set()
        state = "GREEN"
        if error_rate >= policy.red_error_rate:
            state = "RED"
            reasons.add("ERROR_RATE_RED")
        elif error_rate >= policy.amber_error_rate:
            state = "AMBER"
            reasons.add("ERROR_RATE_AMBER")
        if manual_review >= policy.red_manual_review:
            state = "RED"
            reasons.add("MANUAL_REVIEW_PENDING")
        if open_circuits >= policy.amber_open_circuits and state != "RED":
            state = "AMBER"
            reasons.add("CIRCUIT_OPEN")

        return HealthStatus(
            state=state,
            reason_codes=tuple(sorted(reasons)),
            signals={
                "error_rate": error_rate,
                "dispatch_total": float(dispatched),
                "manual_review_pending": float(manual_review),
                "open_circuits": float(open_circuits),
            },
        )

    def export(self, *, output_path: str | Path, generated_at_utc: str | None = None) -> dict[str, Any]:
        payload = self.snapshot(generated_at_utc=generated_at_utc)
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
        return payload

    def _append_event(self, event_type: str, payload: Mapping[str, Any]) -> None:
        record = {
            "event_type": str(event_type),
            "ts_utc": _utc_now(),
            "payload": redact_sensitive_fields(payload),
        }
        self.recent_events.append(record)
        if len(self.recent_events) > self.max_recent_events:
            self.recent_events = self.recent_events[-self.max_recent_events :]


def redact_sensitive_fields(value: Any) -> Any:
    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for key_raw, item in value.items():
            key = str(key_raw)
            if _looks_sensitive_key(key):
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = redact_sensitive_fields(item)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact_sensitive_fields(item) for item in value]
    return value


def _looks_sensitive_key(key: str) -> bool:
    lowered = key.strip().lower()
    if not lowered:
        return False
    return any(marker in lowered for marker in _SENSITIVE_KEY_MARKERS)


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


_DISPATCH_COUNTERS: dict[str, str] = {
    "executed": "dispatch_executed_total",
    "failed": "dispatch_failed_total",
    "dry_run": "dispatch_dry_run_total",
    "compensated": "dispatch_compensated_total",
    "compensation_failed": "dispatch_compensation_failed_total",
}

_SAGA_COUNTERS: dict[str, str] = {
    "completed": "saga_completed_total",
    "compensated": "saga_compensated_total",
    "awaiting_approval": "saga_awaiting_approval_total",
}

_REQUIRED_COUNTERS: tuple[str, ...] = (
    *_DISPATCH_COUNTERS.values(),
    "dispatch_circuit_open_total",
    *_SAGA_COUNTERS.values(),
    "compensation_steps_total",
    "compensation_skipped_total",
    "compensation_failed_total",
    "manual_review_total",
    "circuit_transitions_total",
    "circuit_opened_total",
    "jobs_completed_total",
    "jobs_failed_total",
)

_SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "access_key",
    "refresh_key",
    "refresh_token",
    "session_id",
    "sessionid",
    "dev_key",
    "devkey",
)
