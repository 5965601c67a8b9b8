"""Resilience layer: one breaker per target system around a bounded retry loop."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import random
import threading
import time
from typing import TypeVar

from .circuit_breaker import (
    CIRCUIT_PRESETS,
    DEFAULT_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitSnapshot,
    StateChangeCallback,
)
from .retry import RETRY_PRESETS, Retrier, RetryPolicy


T = TypeVar("T")


class ResilienceLayer:
    """Guards outbound calls as ``breaker(timeout(retry(call)))``.

    The hard timeout bounds the whole retry loop, and the breaker records one
    outcome per guarded call regardless of how many attempts the loop made.
    When the timeout fires the loop is cancelled, so no attempt starts after
    the caller has seen the failure.
    """

    def __init__(
        self,
        *,
        breaker_configs: Mapping[str, CircuitBreakerConfig] | None = None,
        retry_policy: RetryPolicy | None = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self._breaker_configs = dict(breaker_configs or {})
        self._retrier = Retrier(
            policy=retry_policy or RETRY_PRESETS["external_api"],
            sleeper=sleeper,
            rng=rng or random.Random(),
        )
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}
        self._registry_lock = threading.Lock()

    def call(self, target: str, fn: Callable[[], T], *, operation: str = "call") -> T:
        breaker = self.breaker(target)
        cancel = threading.Event()
        return breaker.call(
            lambda: self._retrier.call(fn, label=f"{target}.{operation}", cancel=cancel),
            cancel=cancel,
        )

    def breaker(self, target: str) -> CircuitBreaker:
        with self._registry_lock:
            breaker = self._breakers.get(target)
            if breaker is None:
                config = self._breaker_configs.get(target) or CIRCUIT_PRESETS.get(target, DEFAULT_CIRCUIT_CONFIG)
                breaker = CircuitBreaker(
                    target,
                    config,
                    clock=self._clock,
                    on_state_change=self._on_state_change,
                )
                self._breakers[target] = breaker
            return breaker

    def snapshot(self) -> dict[str, CircuitSnapshot]:
        with self._registry_lock:
            breakers = list(self._breakers.values())
        return {item.name: item.snapshot() for item in breakers}

    def reset(self, target: str | None = None) -> None:
        with self._registry_lock:
            if target is None:
                breakers = list(self._breakers.values())
            else:
                existing = self._breakers.get(target)
                breakers = [existing] if existing is not None else []
        for item in breakers:
            item.reset()
