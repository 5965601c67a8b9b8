"""Timeout, retry and circuit-breaker protection for outbound calls."""

from .circuit_breaker import (
    CIRCUIT_CLOSED,
    CIRCUIT_HALF_OPEN,
    CIRCUIT_OPEN,
    CIRCUIT_PRESETS,
    CallTimeoutError,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitSnapshot,
    call_with_timeout,
)
from .layer import ResilienceLayer
from .retry import RETRY_PRESETS, Retrier, RetryExhaustedError, RetryPolicy, is_transient_error
