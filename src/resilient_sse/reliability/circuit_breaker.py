"""Circuit breaker pattern implementation for streaming connections.

The circuit breaker tracks consecutive failures of a wrapped operation and
fails fast once a remote dependency looks unhealthy. Recovery is attempted on a
timer rather than on every call: entering OPEN schedules a one-shot timer
that moves the circuit to HALF_OPEN, where calls are admitted again until
enough of them succeed (CLOSED) or one fails (OPEN again).

HALF_OPEN admits every caller. Concurrent callers during the recovery window
all pass through; there is no single-caller limiter.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from resilient_sse.config import DEFAULT_CIRCUIT_BREAKER_CONFIG, CircuitBreakerConfig

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreakerState(str, Enum):
    """Circuit breaker states.

    - CLOSED: Normal operation, all requests pass through
    - OPEN: Failing, requests are rejected immediately
    - HALF_OPEN: Testing recovery, requests pass through until the
      success threshold is met or a failure reopens the circuit
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Base exception for circuit breaker errors."""

    pass


class CircuitBreakerOpenError(CircuitBreakerError):
    """Raised when the circuit is open and the call was never attempted."""

    def __init__(self, circuit_name: str, remaining_ms: int, failures: int) -> None:
        """Initialize the error with circuit details.

        Args:
            circuit_name: Name of the circuit breaker
            remaining_ms: Time until the next recovery attempt
            failures: Failure count when the call was refused
        """
        self.circuit_name = circuit_name
        self.remaining_ms = remaining_ms
        self.failures = failures
        super().__init__(
            f"Circuit breaker '{circuit_name}' is open. "
            f"Retry in {math.ceil(remaining_ms / 1000)}s"
        )


@dataclass(frozen=True)
class CircuitBreakerMetrics:
    """Point-in-time snapshot of a circuit breaker."""

    name: str
    """Name of the circuit breaker."""

    state: CircuitBreakerState
    """Current state of the circuit breaker."""

    failure_count: int
    """Number of consecutive failures."""

    success_count: int
    """Number of consecutive successes while half-open."""

    last_failure_time: datetime | None
    """Timestamp of the last recorded failure."""

    last_success_time: datetime | None
    """Timestamp of the last recorded success."""

    total_calls: int
    """Total number of calls attempted through this circuit breaker."""

    rejection_count: int
    """Number of calls rejected while OPEN."""


class CircuitBreaker:
    """Circuit breaker for protecting a streaming endpoint.

    Example:
        >>> breaker = CircuitBreaker("api-stream", failure_threshold=3)
        >>> result = await breaker.execute(lambda: open_stream(url))

    The recovery timer is an ``asyncio`` timer handle, so transitions to OPEN
    must happen on a running event loop. Call :meth:`close` when discarding
    a breaker to cancel a pending timer.
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        *,
        failure_threshold: int | None = None,
        reset_timeout_ms: int | None = None,
        success_threshold: int | None = None,
        is_failure: Callable[[Exception], bool] | None = None,
        on_state_change: Callable[[CircuitBreakerState, CircuitBreakerState], None]
        | None = None,
        on_failure: Callable[[Exception, int], None] | None = None,
        on_success: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the circuit breaker.

        Args:
            name: Name of the circuit breaker for identification
            config: Base thresholds; keyword overrides win over it
            failure_threshold: Consecutive failures before opening
            reset_timeout_ms: Milliseconds in OPEN before probing
            success_threshold: Successes in HALF_OPEN before closing
            is_failure: Decides whether an error counts (default: all do)
            on_state_change: Called with (from_state, to_state)
            on_failure: Called with the error and the new failure count
            on_success: Called when a success resets or closes the circuit
        """
        overrides: dict[str, Any] = {
            "failure_threshold": failure_threshold,
            "reset_timeout_ms": reset_timeout_ms,
            "success_threshold": success_threshold,
        }
        base = config or DEFAULT_CIRCUIT_BREAKER_CONFIG
        self._config = base.model_copy(
            update={k: v for k, v in overrides.items() if v is not None}
        )
        self._name = name
        self._is_failure = is_failure
        self._on_state_change = on_state_change
        self._on_failure = on_failure
        self._on_success = on_success

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._last_failure_time: datetime | None = None
        self._last_success_time: datetime | None = None
        self._total_calls = 0
        self._rejection_count = 0
        self._reset_timer: asyncio.TimerHandle | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        """Name of the circuit breaker."""
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        """Effective thresholds."""
        return self._config

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` with circuit breaker protection.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The result of the operation

        Raises:
            CircuitBreakerOpenError: If the circuit is OPEN. The operation
                is not invoked.
            Exception: Any exception raised by the operation, unchanged
        """
        async with self._lock:
            self._total_calls += 1
            if not self.can_pass():
                self._rejection_count += 1
                raise CircuitBreakerOpenError(
                    self._name, self._remaining_ms(), self._failure_count
                )

        try:
            result = await operation()
        except Exception as e:
            if self._is_failure is None or self._is_failure(e):
                async with self._lock:
                    self._record_failure(e)
            raise

        async with self._lock:
            self._record_success()
        return result

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: object,
        **kwargs: object,
    ) -> T:
        """Execute ``func(*args, **kwargs)`` with circuit breaker protection."""
        return await self.execute(lambda: func(*args, **kwargs))

    def can_pass(self) -> bool:
        """Check if the circuit will currently admit a call."""
        return self.get_state() != CircuitBreakerState.OPEN

    def get_state(self) -> CircuitBreakerState:
        """Get the current state of the circuit breaker."""
        # Covers a recovery timer that has not had a chance to run yet
        if self._state == CircuitBreakerState.OPEN and self._remaining_ms() <= 0:
            self._enter_half_open()
        return self._state

    def get_failures(self) -> int:
        """Get the current consecutive failure count."""
        return self._failure_count

    def get_metrics(self) -> CircuitBreakerMetrics:
        """Get current metrics snapshot."""
        return CircuitBreakerMetrics(
            name=self._name,
            state=self.get_state(),
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
            total_calls=self._total_calls,
            rejection_count=self._rejection_count,
        )

    def reset(self) -> None:
        """Manually reset the circuit breaker to CLOSED state."""
        self._cancel_timer()
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._last_failure_time = None
        self._set_state(CircuitBreakerState.CLOSED)

    def force_open(self) -> None:
        """Manually force the circuit breaker to OPEN state."""
        self._failure_count = self._config.failure_threshold
        self._open()

    def close(self) -> None:
        """Cancel the pending recovery timer, if any."""
        self._cancel_timer()

    def _set_state(self, new_state: CircuitBreakerState) -> None:
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state
        logger.info(
            "circuit_state_changed",
            circuit=self._name,
            from_state=old_state.value,
            to_state=new_state.value,
            failures=self._failure_count,
        )
        if self._on_state_change is not None:
            self._on_state_change(old_state, new_state)

    def _open(self) -> None:
        self._opened_at = time.monotonic()
        self._set_state(CircuitBreakerState.OPEN)
        self._schedule_half_open()

    def _enter_half_open(self) -> None:
        self._cancel_timer()
        self._success_count = 0
        self._set_state(CircuitBreakerState.HALF_OPEN)

    def _on_reset_timer(self) -> None:
        self._reset_timer = None
        if self._state == CircuitBreakerState.OPEN:
            self._enter_half_open()

    def _schedule_half_open(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._reset_timer = loop.call_later(
            self._config.reset_timeout_ms / 1000, self._on_reset_timer
        )

    def _cancel_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _remaining_ms(self) -> int:
        if self._opened_at is None:
            return 0
        elapsed_ms = (time.monotonic() - self._opened_at) * 1000
        return max(0, math.ceil(self._config.reset_timeout_ms - elapsed_ms))

    def _record_success(self) -> None:
        """Record a successful call.

        In CLOSED state: Reset failure count
        In HALF_OPEN state: Count the success, close once the threshold is met
        """
        self._last_success_time = datetime.now()

        if self._state == CircuitBreakerState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.success_threshold:
                self.reset()
                if self._on_success is not None:
                    self._on_success()
        elif self._state == CircuitBreakerState.CLOSED:
            self._failure_count = 0
            if self._on_success is not None:
                self._on_success()

    def _record_failure(self, error: Exception) -> None:
        """Record a failed call.

        In CLOSED state: Count the failure, open once the threshold is met
        In HALF_OPEN state: Reopen immediately
        """
        self._last_failure_time = datetime.now()
        self._failure_count += 1
        logger.debug(
            "circuit_failure_recorded",
            circuit=self._name,
            failures=self._failure_count,
            error=str(error),
        )
        if self._on_failure is not None:
            self._on_failure(error, self._failure_count)

        if self._state == CircuitBreakerState.HALF_OPEN:
            self._open()
        elif (
            self._state == CircuitBreakerState.CLOSED
            and self._failure_count >= self._config.failure_threshold
        ):
            self._open()


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitBreakerMetrics",
    "CircuitBreakerOpenError",
    "CircuitBreakerState",
]
