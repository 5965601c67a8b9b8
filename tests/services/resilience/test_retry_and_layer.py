from __future__ import annotations

import random
import threading

import pytest
import requests

from bookkeeping_agent.resilience.circuit_breaker import (
    CIRCUIT_OPEN,
    CallTimeoutError,
    CircuitBreakerConfig,
    CircuitOpenError,
)
from bookkeeping_agent.resilience.layer import ResilienceLayer
from bookkeeping_agent.resilience.retry import (
    RETRY_ON_TRANSIENT,
    RETRY_PRESETS,
    Retrier,
    RetryExhaustedError,
    RetryPolicy,
    RetryPolicyError,
    is_transient_error,
)


class StatusError(RuntimeError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"http_{status_code}")
        self.status_code = status_code


class ScriptedCall:
    def __init__(self, outcomes: list[object]) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    def __call__(self) -> object:
        self.calls += 1
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _no_jitter(max_attempts: int = 3, retry_on: str = "any") -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        initial_delay_ms=100,
        max_delay_ms=250,
        multiplier=2.0,
        jitter=0.0,
        retry_on=retry_on,
    )


def test_retrier_backs_off_exponentially_then_succeeds() -> None:
    sleeps: list[float] = []
    retrier = Retrier(policy=_no_jitter(max_attempts=4), sleeper=sleeps.append)
    call = ScriptedCall([RuntimeError("a"), RuntimeError("b"), RuntimeError("c"), "done"])

    assert retrier.call(call) == "done"
    assert call.calls == 4
    assert sleeps == [0.1, 0.2, 0.25]


def test_retrier_raises_exhausted_with_last_error() -> None:
    retrier = Retrier(policy=_no_jitter(max_attempts=2), sleeper=lambda _: None)
    last = StatusError(503)
    call = ScriptedCall([StatusError(500), last])

    with pytest.raises(RetryExhaustedError, match="Failed after 2 attempts") as excinfo:
        retrier.call(call)
    assert excinfo.value.attempts == 2
    assert excinfo.value.last_error is last
    assert excinfo.value.kind == "retry_exhausted"


def test_transient_mode_stops_on_client_errors() -> None:
    sleeps: list[float] = []
    retrier = Retrier(policy=_no_jitter(max_attempts=5, retry_on=RETRY_ON_TRANSIENT), sleeper=sleeps.append)
    call = ScriptedCall([StatusError(429), StatusError(400), "unused"])

    with pytest.raises(RetryExhaustedError) as excinfo:
        retrier.call(call)
    assert call.calls == 2
    assert excinfo.value.attempts == 2
    assert len(sleeps) == 1


def test_transient_classification() -> None:
    assert is_transient_error(StatusError(500))
    assert is_transient_error(StatusError(408))
    assert is_transient_error(requests.Timeout("slow"))
    assert is_transient_error(requests.ConnectionError("reset"))
    assert not is_transient_error(StatusError(404))
    assert not is_transient_error(CircuitOpenError("billcom"))
    assert not is_transient_error(ValueError("bad"))


def test_jittered_delay_stays_within_band() -> None:
    policy = RetryPolicy(max_attempts=5, initial_delay_ms=1000, max_delay_ms=30000, multiplier=2.0, jitter=0.1)
    retrier = Retrier(policy=policy, rng=random.Random(7))
    for attempt_seq, base in ((1, 1000), (2, 2000), (3, 4000)):
        assert retrier.base_delay_for_attempt_ms(attempt_seq) == base
        delay = retrier.delay_for_attempt_ms(attempt_seq)
        assert base * 0.9 - 1 <= delay <= base * 1.1


def test_retry_policy_validation_and_presets() -> None:
    assert RETRY_PRESETS["external_api"].max_attempts == 5
    assert RETRY_PRESETS["default"].max_attempts == 3
    with pytest.raises(RetryPolicyError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(RetryPolicyError, match="max_delay_ms"):
        RetryPolicy(initial_delay_ms=10, max_delay_ms=5)


def test_layer_counts_one_breaker_failure_per_exhausted_call() -> None:
    layer = ResilienceLayer(
        breaker_configs={"quickbooks": CircuitBreakerConfig(failure_threshold=2, timeout_ms=0, reset_timeout_ms=1000)},
        retry_policy=_no_jitter(max_attempts=3),
        sleeper=lambda _: None,
    )
    first = ScriptedCall([StatusError(500)] * 3)
    with pytest.raises(RetryExhaustedError):
        layer.call("quickbooks", first, operation="create_bill")
    assert first.calls == 3
    assert layer.snapshot()["quickbooks"].failure_count == 1

    with pytest.raises(RetryExhaustedError):
        layer.call("quickbooks", ScriptedCall([StatusError(500)] * 3))
    assert layer.snapshot()["quickbooks"].state == CIRCUIT_OPEN

    untouched = ScriptedCall(["never"])
    with pytest.raises(CircuitOpenError):
        layer.call("quickbooks", untouched)
    assert untouched.calls == 0


def test_layer_keeps_breakers_independent_per_target_and_resets() -> None:
    transitions: list[tuple[str, str, str]] = []
    layer = ResilienceLayer(
        breaker_configs={
            "quickbooks": CircuitBreakerConfig(failure_threshold=1, timeout_ms=0),
            "billcom": CircuitBreakerConfig(failure_threshold=1, timeout_ms=0),
        },
        retry_policy=_no_jitter(max_attempts=1),
        sleeper=lambda _: None,
        on_state_change=lambda name, old, new: transitions.append((name, old, new)),
    )
    with pytest.raises(RetryExhaustedError):
        layer.call("quickbooks", ScriptedCall([RuntimeError("down")]))

    assert layer.call("billcom", ScriptedCall(["ok"])) == "ok"
    assert transitions == [("quickbooks", "closed", "open")]

    layer.reset("quickbooks")
    assert layer.snapshot()["quickbooks"].state == "closed"
    assert layer.breaker("quickbooks") is layer.breaker("quickbooks")


def test_retrier_starts_no_attempt_after_cancel() -> None:
    cancel = threading.Event()
    retrier = Retrier(policy=_no_jitter(max_attempts=3), sleeper=lambda _: cancel.set())
    call = ScriptedCall([StatusError(500), "never"])

    with pytest.raises(RetryExhaustedError) as excinfo:
        retrier.call(call, cancel=cancel)
    assert call.calls == 1
    assert excinfo.value.attempts == 1


def test_layer_timeout_leaves_no_retry_running_behind_the_caller() -> None:
    release = threading.Event()
    calls: list[str] = []

    def slow_create_bill() -> object:
        calls.append("create_bill")
        release.wait(2.0)
        raise StatusError(503)

    layer = ResilienceLayer(
        breaker_configs={"quickbooks": CircuitBreakerConfig(timeout_ms=50)},
        retry_policy=_no_jitter(max_attempts=3),
        sleeper=lambda _: None,
    )
    with pytest.raises(CallTimeoutError):
        layer.call("quickbooks", slow_create_bill, operation="create_bill")
    assert calls == ["create_bill"]

    release.set()
    for thread in threading.enumerate():
        if thread.name == "quickbooks-guarded-call":
            thread.join(2.0)
    assert calls == ["create_bill"]
    assert layer.snapshot()["quickbooks"].failure_count == 1
