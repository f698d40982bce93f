"""Reliability patterns for resilient-sse.

This package provides the client-side resilience primitives: cooperative
cancellation, circuit breakers and their shared registry, reconnection with
exponential backoff, and request/idle timeouts.
"""

from resilient_sse.reliability.cancellation import CancellationToken, OperationAbortedError
from resilient_sse.reliability.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerMetrics,
    CircuitBreakerOpenError,
    CircuitBreakerState,
)
from resilient_sse.reliability.registry import CircuitBreakerRegistry
from resilient_sse.reliability.retry import (
    ReconnectionEvent,
    ReconnectionManager,
    ReconnectionState,
    calculate_backoff_delay,
    is_cancellation_error,
    is_network_error,
    sleep,
    with_retry,
)
from resilient_sse.reliability.timeout import (
    AsyncIteratorReader,
    ChunkReader,
    IdleTimeout,
    RequestTimeout,
    StreamTimeoutError,
    fetch_with_timeout,
    is_idle_timeout_error,
    is_request_timeout_error,
    is_timeout_error,
    read_stream_with_idle_timeout,
)

__all__ = [
    # Cancellation
    "CancellationToken",
    "OperationAbortedError",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitBreakerMetrics",
    "CircuitBreakerOpenError",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    # Retry
    "ReconnectionEvent",
    "ReconnectionManager",
    "ReconnectionState",
    "calculate_backoff_delay",
    "is_cancellation_error",
    "is_network_error",
    "sleep",
    "with_retry",
    # Timeouts
    "AsyncIteratorReader",
    "ChunkReader",
    "IdleTimeout",
    "RequestTimeout",
    "StreamTimeoutError",
    "fetch_with_timeout",
    "is_idle_timeout_error",
    "is_request_timeout_error",
    "is_timeout_error",
    "read_stream_with_idle_timeout",
]
