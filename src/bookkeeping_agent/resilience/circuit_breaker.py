"""Per-target circuit breaker with a hard call timeout."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, TypeVar


logger = logging.getLogger("bookkeeping_agent.resilience.circuit")

T = TypeVar("T")

CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half-open"
CIRCUIT_STATES = {CIRCUIT_CLOSED, CIRCUIT_OPEN, CIRCUIT_HALF_OPEN}

StateChangeCallback = Callable[[str, str, str], None]


class CircuitBreakerConfigError(ValueError):
    """Raised when circuit breaker thresholds are invalid."""


class CircuitOpenError(RuntimeError):
    """Raised when a call is short-circuited by an open breaker."""

    kind = "circuit_open"

    def __init__(self, circuit_name: str) -> None:
        super().__init__(f"Circuit breaker '{circuit_name}' is open")
        self.circuit_name = circuit_name


class CallTimeoutError(RuntimeError):
    """Raised when a guarded call does not finish within its hard timeout."""

    kind = "timeout"

    def __init__(self, name: str, timeout_ms: int) -> None:
        super().__init__(f"Circuit breaker '{name}' timeout after {timeout_ms}ms")
        self.name = name
        self.timeout_ms = timeout_ms


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_ms: int = 30000
    reset_timeout_ms: int = 60000

    def __post_init__(self) -> None:
        if self.failure_threshold <= 0:
            raise CircuitBreakerConfigError("failure_threshold must be > 0")
        if self.success_threshold <= 0:
            raise CircuitBreakerConfigError("success_threshold must be > 0")
        if self.timeout_ms < 0:
            raise CircuitBreakerConfigError("timeout_ms must be >= 0")
        if self.reset_timeout_ms < 0:
            raise CircuitBreakerConfigError("reset_timeout_ms must be >= 0")

    def as_dict(self) -> dict[str, int]:
        return {
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "timeout_ms": self.timeout_ms,
            "reset_timeout_ms": self.reset_timeout_ms,
        }


DEFAULT_CIRCUIT_CONFIG = CircuitBreakerConfig()

CIRCUIT_PRESETS: dict[str, CircuitBreakerConfig] = {
    "quickbooks": CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        timeout_ms=30000,
        reset_timeout_ms=30000,
    ),
    "billcom": CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        timeout_ms=30000,
        reset_timeout_ms=30000,
    ),
}


@dataclass(frozen=True)
class CircuitSnapshot:
    name: str
    state: str
    failure_count: int
    success_count: int
    last_failure_time: float | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
        }


class CircuitBreaker:
    """Three-state breaker guarding one external system.

    Counters and state only change under ``_lock``; the guarded call itself runs
    outside it. While half-open, a single probe call is admitted at a time and
    concurrent callers are rejected as if the breaker were open.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self.name = name
        self.config = config or CIRCUIT_PRESETS.get(name, DEFAULT_CIRCUIT_CONFIG)
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CIRCUIT_CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def call(self, fn: Callable[[], T], *, cancel: threading.Event | None = None) -> T:
        self._before_call()
        try:
            result = call_with_timeout(fn, self.config.timeout_ms, name=self.name, cancel=cancel)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_time=self._last_failure_time,
            )

    def reset(self) -> None:
        with self._lock:
            previous = self._state
            self._state = CIRCUIT_CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._probe_in_flight = False
        if previous != CIRCUIT_CLOSED:
            self._notify(previous, CIRCUIT_CLOSED)

    def _before_call(self) -> None:
        transition: tuple[str, str] | None = None
        with self._lock:
            if self._state == CIRCUIT_OPEN:
                if not self._reset_window_elapsed():
                    raise CircuitOpenError(self.name)
                transition = self._transition(CIRCUIT_HALF_OPEN)
                self._probe_in_flight = True
            elif self._state == CIRCUIT_HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name)
                self._probe_in_flight = True
        if transition:
            self._notify(*transition)

    def _record_success(self) -> None:
        transition: tuple[str, str] | None = None
        with self._lock:
            self._failure_count = 0
            if self._state == CIRCUIT_HALF_OPEN:
                self._probe_in_flight = False
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    transition = self._transition(CIRCUIT_CLOSED)
                    self._success_count = 0
        if transition:
            self._notify(*transition)

    def _record_failure(self) -> None:
        transition: tuple[str, str] | None = None
        with self._lock:
            self._failure_count += 1
            self._success_count = 0
            self._last_failure_time = self._clock()
            if self._state == CIRCUIT_HALF_OPEN:
                self._probe_in_flight = False
                transition = self._transition(CIRCUIT_OPEN)
            elif self._state == CIRCUIT_CLOSED and self._failure_count >= self.config.failure_threshold:
                transition = self._transition(CIRCUIT_OPEN)
        if transition:
            self._notify(*transition)

    def _reset_window_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        elapsed_ms = (self._clock() - self._last_failure_time) * 1000.0
        return elapsed_ms >= self.config.reset_timeout_ms

    def _transition(self, new_state: str) -> tuple[str, str]:
        previous = self._state
        self._state = new_state
        return previous, new_state

    def _notify(self, previous: str, new_state: str) -> None:
        logger.info("circuit state change circuit=%s from=%s to=%s", self.name, previous, new_state)
        if self._on_state_change is not None:
            self._on_state_change(self.name, previous, new_state)


def call_with_timeout(
    fn: Callable[[], T],
    timeout_ms: int,
    *,
    name: str = "call",
    cancel: threading.Event | None = None,
) -> T:
    """Run ``fn`` bounded by ``timeout_ms``; a zero timeout runs it inline.

    A timed-out call keeps running on its daemon thread and its late result is
    dropped. ``cancel`` is set before the timeout is raised so that cooperative
    callers (the retry loop) start no further attempts.
    """
    if timeout_ms <= 0:
        return fn()
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = fn()
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name=f"{name}-guarded-call", daemon=True)
    worker.start()
    worker.join(timeout_ms / 1000.0)
    if worker.is_alive():
        if cancel is not None:
            cancel.set()
        raise CallTimeoutError(name, timeout_ms)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
