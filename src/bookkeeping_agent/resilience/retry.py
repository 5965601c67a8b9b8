"""Bounded retry with exponential backoff and jitter for outbound calls."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import random
import threading
import time
from typing import TypeVar

import requests

from .circuit_breaker import CallTimeoutError, CircuitOpenError


logger = logging.getLogger("bookkeeping_agent.resilience.retry")

T = TypeVar("T")

RETRY_ON_ANY = "any"
RETRY_ON_TRANSIENT = "transient"
RETRY_MODES = {RETRY_ON_ANY, RETRY_ON_TRANSIENT}

RETRYABLE_STATUS_CODES = {408, 429}


class RetryPolicyError(ValueError):
    """Raised when retry policy values are invalid."""


class RetryExhaustedError(RuntimeError):
    """Raised when a call keeps failing after its allowed attempts."""

    kind = "retry_exhausted"

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter: float = 0.1
    retry_on: str = RETRY_ON_ANY

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise RetryPolicyError("max_attempts must be > 0")
        if self.initial_delay_ms < 0:
            raise RetryPolicyError("initial_delay_ms must be >= 0")
        if self.max_delay_ms < self.initial_delay_ms:
            raise RetryPolicyError("max_delay_ms must be >= initial_delay_ms")
        if self.multiplier < 1:
            raise RetryPolicyError("multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise RetryPolicyError("jitter must be within [0, 1]")
        if self.retry_on not in RETRY_MODES:
            raise RetryPolicyError(f"retry_on must be one of {sorted(RETRY_MODES)}")


DEFAULT_RETRY_POLICY = RetryPolicy()

RETRY_PRESETS: dict[str, RetryPolicy] = {
    "default": DEFAULT_RETRY_POLICY,
    "external_api": RetryPolicy(
        max_attempts=5,
        initial_delay_ms=1000,
        max_delay_ms=30000,
        multiplier=2.0,
        jitter=0.1,
        retry_on=RETRY_ON_TRANSIENT,
    ),
}


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, CircuitOpenError):
        return False
    if isinstance(exc, (CallTimeoutError, requests.Timeout, requests.ConnectionError)):
        return True
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code in RETRYABLE_STATUS_CODES or status_code >= 500
    return False


@dataclass
class Retrier:
    policy: RetryPolicy = DEFAULT_RETRY_POLICY
    sleeper: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def call(
        self,
        fn: Callable[[], T],
        *,
        label: str = "call",
        cancel: threading.Event | None = None,
    ) -> T:
        """Call ``fn`` until it succeeds or the policy gives up.

        Once ``cancel`` is set no further attempt starts; the attempt in flight
        when it was set is the last one.
        """
        last_error: Exception | None = None
        for attempt_seq in range(1, self.policy.max_attempts + 1):
            if last_error is not None and _cancelled(cancel):
                logger.warning("retry cancelled label=%s attempts=%s error=%s", label, attempt_seq - 1, last_error)
                raise RetryExhaustedError(attempt_seq - 1, last_error) from last_error
            try:
                return fn()
            except Exception as exc:
                last_error = exc
                if attempt_seq >= self.policy.max_attempts or not self.should_retry(exc) or _cancelled(cancel):
                    raise RetryExhaustedError(attempt_seq, exc) from exc
                delay_ms = self.delay_for_attempt_ms(attempt_seq)
                logger.warning(
                    "retrying after error label=%s attempt=%s max_attempts=%s delay_ms=%s error=%s",
                    label,
                    attempt_seq,
                    self.policy.max_attempts,
                    delay_ms,
                    exc,
                )
                self.sleeper(delay_ms / 1000.0)
        # The loop always returns or raises.
        raise RetryPolicyError("retry loop terminated without result")

    def should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, CircuitOpenError):
            return False
        if self.policy.retry_on == RETRY_ON_TRANSIENT:
            return is_transient_error(exc)
        return True

    def base_delay_for_attempt_ms(self, attempt_seq: int) -> int:
        if attempt_seq <= 0:
            raise RetryPolicyError("attempt_seq must be >= 1")
        delay = self.policy.initial_delay_ms * (self.policy.multiplier ** (attempt_seq - 1))
        return int(min(delay, self.policy.max_delay_ms))

    def delay_for_attempt_ms(self, attempt_seq: int) -> int:
        capped = self.base_delay_for_attempt_ms(attempt_seq)
        spread = capped * self.policy.jitter
        return max(0, int(capped + self.rng.uniform(-spread, spread)))


def _cancelled(cancel: threading.Event | None) -> bool:
    return cancel is not None and cancel.is_set()
