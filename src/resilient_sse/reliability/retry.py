"""Reconnection with exponential backoff and jitter.

Errors are classified into cancellations (never retried), network-style
failures (retried by default) and everything else (not retried). A failed
attempt restarts the whole operation; there is no resume from a byte offset.
"""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Literal, TypeVar

import httpx
import structlog

from resilient_sse.config import DEFAULT_RETRY_CONFIG, RetryConfig
from resilient_sse.reliability.cancellation import CancellationToken, OperationAbortedError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Indicators of transient network failures, matched case-insensitively
NETWORK_ERROR_PATTERNS = (
    "network",
    "failed to fetch",
    "load failed",
    "err_network_changed",
    "networkerror",
    "aborted",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "enetunreach",
    "connection reset",
    "connection refused",
    "unreachable",
)


def is_network_error(error: object) -> bool:
    """Check if an error is a retryable network error."""
    if not isinstance(error, BaseException):
        return False
    if isinstance(error, (ConnectionError, httpx.TransportError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in NETWORK_ERROR_PATTERNS)


def is_cancellation_error(error: object) -> bool:
    """Check if an error was caused by cancellation."""
    if isinstance(error, (OperationAbortedError, asyncio.CancelledError)):
        return True
    if not isinstance(error, BaseException):
        return False
    return "aborted" in str(error).lower() or type(error).__name__ == "AbortError"


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Compute the delay before retry number ``attempt`` (zero-based).

    ``min(initial * multiplier ** attempt, max)``, plus a uniformly random
    ``[0, delay * jitter_factor)`` when jitter is enabled, floored to whole
    milliseconds. Without jitter the capped delay is returned as is.
    """
    exponential = config.initial_delay_ms * config.backoff_multiplier**attempt
    capped = min(exponential, config.max_delay_ms)

    if config.jitter:
        return math.floor(capped + capped * config.jitter_factor * random.random())
    return capped


async def sleep(delay_ms: float, token: CancellationToken | None = None) -> None:
    """Sleep for ``delay_ms``, waking early with an error if ``token`` fires.

    Raises:
        OperationAbortedError: If the token is or becomes cancelled.
    """
    if token is None:
        await asyncio.sleep(delay_ms / 1000)
        return
    if token.cancelled:
        raise OperationAbortedError()
    try:
        await token.guard(asyncio.sleep(delay_ms / 1000))
    except OperationAbortedError:
        raise
    except Exception as e:
        raise OperationAbortedError() from e


@dataclass
class ReconnectionState:
    """Retry bookkeeping for a reconnection manager."""

    attempt: int
    max_attempts: int
    next_delay_ms: float
    last_error: BaseException | None = None


@dataclass(frozen=True)
class ReconnectionEvent:
    """Progress report passed to ``on_reconnecting``."""

    type: Literal["reconnecting", "connected", "failed"]
    attempt: int
    max_attempts: int
    delay_ms: float
    error: BaseException | None = None


class ReconnectionManager:
    """Retries an operation with backoff, keeping state between calls.

    Example:
        >>> manager = ReconnectionManager(
        ...     RetryConfig(max_retries=3),
        ...     on_reconnecting=lambda e: print(f"retry {e.attempt}/{e.max_attempts}"),
        ... )
        >>> body = await manager.execute(lambda token: open_stream(token), token)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        on_reconnecting: Callable[[ReconnectionEvent], None] | None = None,
        on_connected: Callable[[], None] | None = None,
        on_failed: Callable[[BaseException], None] | None = None,
        should_retry: Callable[[BaseException], bool] | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Retry schedule; defaults to :data:`DEFAULT_RETRY_CONFIG`.
            on_reconnecting: Called before each backoff sleep.
            on_connected: Called after each successful attempt.
            on_failed: Called when retries are exhausted or the error is
                not retryable.
            should_retry: Replaces the network-error classifier.
        """
        self._config = config or DEFAULT_RETRY_CONFIG
        self._on_reconnecting = on_reconnecting
        self._on_connected = on_connected
        self._on_failed = on_failed
        self._is_retryable = should_retry or is_network_error
        self._state = self._initial_state()

    @property
    def config(self) -> RetryConfig:
        """Effective retry schedule."""
        return self._config

    def _initial_state(self) -> ReconnectionState:
        return ReconnectionState(
            attempt=0,
            max_attempts=self._config.max_retries,
            next_delay_ms=self._config.initial_delay_ms,
        )

    def reset(self) -> None:
        """Forget previous attempts."""
        self._state = self._initial_state()

    def should_retry(self, error: BaseException) -> bool:
        """Check if ``error`` is retryable and attempts remain."""
        return self._is_retryable(error) and self._state.attempt < self._config.max_retries

    def get_state(self) -> ReconnectionState:
        """Return a copy of the current retry state."""
        return replace(self._state)

    async def _wait_for_retry(self, token: CancellationToken | None) -> None:
        delay = calculate_backoff_delay(self._state.attempt, self._config)
        self._state.next_delay_ms = delay

        logger.info(
            "reconnecting",
            attempt=self._state.attempt + 1,
            max_attempts=self._config.max_retries,
            delay_ms=delay,
            error=str(self._state.last_error),
        )
        if self._on_reconnecting is not None:
            self._on_reconnecting(
                ReconnectionEvent(
                    type="reconnecting",
                    attempt=self._state.attempt + 1,
                    max_attempts=self._config.max_retries,
                    delay_ms=delay,
                    error=self._state.last_error,
                )
            )

        await sleep(delay, token)
        self._state.attempt += 1

    async def execute(
        self,
        operation: Callable[[CancellationToken | None], Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds, retrying transient failures.

        Args:
            operation: Called with ``token`` on every attempt.
            token: Cancellation token honoured between and during attempts.

        Returns:
            The result of the first successful attempt.

        Raises:
            Exception: The original error when it is a cancellation, is not
                retryable, or retries are exhausted.
        """
        self.reset()

        while True:
            try:
                result = await operation(token)
            except Exception as e:
                self._state.last_error = e

                if is_cancellation_error(e) or (token is not None and token.cancelled):
                    raise

                if not self.should_retry(e):
                    logger.warning(
                        "reconnection_failed",
                        attempts=self._state.attempt,
                        error=str(e),
                    )
                    if self._on_failed is not None:
                        self._on_failed(e)
                    raise

                await self._wait_for_retry(token)
                continue

            if self._on_connected is not None:
                self._on_connected()
            self.reset()
            return result


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    config: RetryConfig | None = None,
    token: CancellationToken | None = None,
    should_retry: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> T:
    """Retry ``operation`` with exponential backoff, without persistent state.

    Args:
        operation: Zero-argument callable returning an awaitable.
        config: Retry schedule; defaults to :data:`DEFAULT_RETRY_CONFIG`.
        token: Cancellation token; a cancelled token is never retried.
        should_retry: Replaces the network-error classifier.
        on_retry: Called with (attempt, delay_ms, error) before each sleep;
            ``attempt`` starts at 1.

    Returns:
        The result of the first successful attempt.

    Example:
        >>> response = await with_retry(
        ...     lambda: client.get(url),
        ...     config=RetryConfig(max_retries=3),
        ...     on_retry=lambda n, delay, err: print(f"retry {n} in {delay}ms: {err}"),
        ... )
    """
    config = config or DEFAULT_RETRY_CONFIG
    is_retryable = should_retry or is_network_error

    for attempt in range(config.max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            if is_cancellation_error(e) or (token is not None and token.cancelled):
                raise

            if not is_retryable(e) or attempt >= config.max_retries:
                raise

            delay = calculate_backoff_delay(attempt, config)
            logger.debug("retrying", attempt=attempt + 1, delay_ms=delay, error=str(e))
            if on_retry is not None:
                on_retry(attempt + 1, delay, e)

            await sleep(delay, token)

    # The loop always returns or raises
    raise RuntimeError("Max retries exceeded")


__all__ = [
    "NETWORK_ERROR_PATTERNS",
    "ReconnectionEvent",
    "ReconnectionManager",
    "ReconnectionState",
    "calculate_backoff_delay",
    "is_cancellation_error",
    "is_network_error",
    "sleep",
    "with_retry",
]
