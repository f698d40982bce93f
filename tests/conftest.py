"""
Pytest configuration and shared fixtures for resilient-sse tests.

This module provides fixtures shared across the suite:
- Fast retry, heartbeat and timeout configurations
- A circuit breaker registry torn down after each test
- A recording stream observer
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from resilient_sse.config import HeartbeatConfig, RetryConfig, TimeoutConfig
from resilient_sse.reliability.registry import CircuitBreakerRegistry
from resilient_sse.streaming.orchestrator import StreamObserver


# ============================================================================
# CONFIG FIXTURES
# ============================================================================


@pytest.fixture
def fast_retry_config() -> RetryConfig:
    """Retry schedule with millisecond delays and no jitter."""
    return RetryConfig(max_retries=3, initial_delay_ms=1, max_delay_ms=10, jitter=False)


@pytest.fixture
def fast_heartbeat_config() -> HeartbeatConfig:
    """Heartbeat firing every 20ms."""
    return HeartbeatConfig(interval_ms=20)


@pytest.fixture
def no_timeouts() -> TimeoutConfig:
    """Timeout configuration with both deadlines disabled."""
    return TimeoutConfig(request_ms=0, idle_ms=0)


# ============================================================================
# RELIABILITY FIXTURES
# ============================================================================


@pytest.fixture
async def registry() -> AsyncIterator[CircuitBreakerRegistry]:
    """Provide a breaker registry and clear it after the test."""
    reg = CircuitBreakerRegistry(ttl_ms=60_000)
    yield reg
    reg.clear()


# ============================================================================
# STREAMING FIXTURES
# ============================================================================


class RecordingObserver(StreamObserver):
    """Observer that records every hook invocation as (name, args)."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def on_stream_start(self) -> None:
        self.calls.append(("stream_start", ()))

    def on_stream_end(self, duration_ms, success, error) -> None:
        self.calls.append(("stream_end", (duration_ms, success, error)))

    def on_update_sent(self, phase, bytes_sent) -> None:
        self.calls.append(("update_sent", (phase, bytes_sent)))

    def on_heartbeat(self) -> None:
        self.calls.append(("heartbeat", ()))

    def on_error(self, error) -> None:
        self.calls.append(("error", (error,)))

    def on_abort(self, reason) -> None:
        self.calls.append(("abort", (reason,)))


@pytest.fixture
def observer() -> RecordingObserver:
    """Provide a recording stream observer."""
    return RecordingObserver()

