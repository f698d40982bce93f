"""
resilient-sse: resilient Server-Sent Events transport.

This package provides a wire-level SSE codec, a server-side stream
orchestrator with heartbeats and abort handling, and client-side resilience
primitives (retry with backoff, circuit breaker, request and idle timeouts)
that compose to keep a long-lived HTTP stream alive across transient
network failures.
"""

__version__ = "0.1.0"

from resilient_sse.client import SSEStreamClient, SSEStreamState
from resilient_sse.config import (
    CircuitBreakerConfig,
    HeartbeatConfig,
    RetryConfig,
    Settings,
    StreamConfig,
    TimeoutConfig,
    configure_settings,
    get_settings,
)
from resilient_sse.reliability import (
    CancellationToken,
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerRegistry,
    OperationAbortedError,
    ReconnectionManager,
    StreamTimeoutError,
    with_retry,
)
from resilient_sse.streaming import (
    Frame,
    QueueSink,
    SSEEncoder,
    SSEParser,
    SSESerializer,
    StreamObserver,
    StreamOrchestrator,
    StreamUpdate,
    create_streaming_response,
    parse_sse_stream,
)

__all__ = [
    "__version__",
    # Configuration
    "CircuitBreakerConfig",
    "HeartbeatConfig",
    "RetryConfig",
    "Settings",
    "StreamConfig",
    "TimeoutConfig",
    "configure_settings",
    "get_settings",
    # Streaming
    "Frame",
    "QueueSink",
    "SSEEncoder",
    "SSEParser",
    "SSESerializer",
    "StreamObserver",
    "StreamOrchestrator",
    "StreamUpdate",
    "create_streaming_response",
    "parse_sse_stream",
    # Reliability
    "CancellationToken",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitBreakerRegistry",
    "OperationAbortedError",
    "ReconnectionManager",
    "StreamTimeoutError",
    "with_retry",
    # Client
    "SSEStreamClient",
    "SSEStreamState",
]
