"""Tests for reconnection and retry with backoff."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import httpx
import pytest

from resilient_sse.config import RetryConfig
from resilient_sse.reliability.cancellation import CancellationToken, OperationAbortedError
from resilient_sse.reliability.retry import (
    ReconnectionEvent,
    ReconnectionManager,
    calculate_backoff_delay,
    is_cancellation_error,
    is_network_error,
    sleep,
    with_retry,
)
from resilient_sse.reliability.timeout import StreamTimeoutError


class FlakyOperation:
    """Fails ``failures`` times with ``error``, then returns ``result``."""

    def __init__(self, failures: int, error: Exception, result: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.result = result
        self.calls = 0

    async def __call__(self, *args) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestErrorClassification:
    """Tests for is_network_error and is_cancellation_error."""

    @pytest.mark.parametrize(
        "message",
        [
            "Network request failed",
            "Failed to fetch",
            "Load failed",
            "net::ERR_NETWORK_CHANGED",
            "NetworkError when attempting to fetch resource",
            "The operation was aborted",
            "Request timeout after 100ms",
            "read timed out",
            "ECONNRESET",
            "connect ECONNREFUSED 127.0.0.1:80",
            "ENETUNREACH",
        ],
    )
    def test_network_messages(self, message: str) -> None:
        """Test known transient failure messages are retryable."""
        assert is_network_error(Exception(message))

    def test_transport_exceptions(self) -> None:
        """Test transport exception types are retryable regardless of text."""
        assert is_network_error(ConnectionResetError())
        assert is_network_error(httpx.ConnectError("x"))
        assert is_network_error(httpx.ReadError(""))

    def test_non_network(self) -> None:
        """Test other errors and non-exceptions are not retryable."""
        assert not is_network_error(ValueError("Invalid input"))
        assert not is_network_error(Exception("HTTP 500"))
        assert not is_network_error("network")
        assert not is_network_error(None)

    def test_timeout_errors_are_network(self) -> None:
        """Test stream timeouts are classified as network errors."""
        assert is_network_error(StreamTimeoutError("idle", 100))
        assert is_network_error(StreamTimeoutError("request", 100))

    def test_cancellation(self) -> None:
        """Test cancellation detection."""
        assert is_cancellation_error(OperationAbortedError())
        assert is_cancellation_error(asyncio.CancelledError())
        assert is_cancellation_error(Exception("The user aborted a request"))

        class AbortError(Exception):
            pass

        assert is_cancellation_error(AbortError("stop"))
        assert not is_cancellation_error(ConnectionError("reset"))
        assert not is_cancellation_error("aborted")


class TestCalculateBackoffDelay:
    """Tests for calculate_backoff_delay."""

    def test_exponential_without_jitter(self) -> None:
        """Test exact delays when jitter is off."""
        config = RetryConfig(initial_delay_ms=1000, backoff_multiplier=2, max_delay_ms=30000, jitter=False)

        assert [calculate_backoff_delay(n, config) for n in range(4)] == [1000, 2000, 4000, 8000]

    def test_capped_at_max(self) -> None:
        """Test delay never exceeds max_delay_ms without jitter."""
        config = RetryConfig(initial_delay_ms=1000, max_delay_ms=5000, jitter=False)
        assert calculate_backoff_delay(10, config) == 5000

    def test_jitter_range(self) -> None:
        """Test jittered delay stays within [d, d * (1 + factor)]."""
        config = RetryConfig(initial_delay_ms=1000, jitter=True, jitter_factor=0.3)

        delays = [calculate_backoff_delay(0, config) for _ in range(200)]

        assert all(1000 <= delay < 1300 for delay in delays)
        assert all(delay == int(delay) for delay in delays)
        assert len(set(delays)) > 1

    def test_jitter_floor(self) -> None:
        """Test jitter is floored to whole milliseconds."""
        config = RetryConfig(initial_delay_ms=1000, jitter=True, jitter_factor=0.3)
        with patch("resilient_sse.reliability.retry.random.random", return_value=0.9999):
            assert calculate_backoff_delay(0, config) == 1299

    def test_jitter_applies_after_cap(self) -> None:
        """Test jitter is computed on the capped delay."""
        config = RetryConfig(initial_delay_ms=1000, max_delay_ms=2000, jitter_factor=0.5)
        with patch("resilient_sse.reliability.retry.random.random", return_value=0.5):
            assert calculate_backoff_delay(5, config) == 2500


class TestSleep:
    """Tests for the abortable sleep."""

    async def test_sleeps(self) -> None:
        """Test sleep completes without a token."""
        await sleep(1)

    async def test_already_cancelled(self) -> None:
        """Test a fired token raises immediately."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationAbortedError):
            await sleep(10_000, token)

    async def test_cancel_wakes_early(self) -> None:
        """Test cancelling during the sleep raises promptly."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(OperationAbortedError):
            await sleep(10_000, token)

        assert loop.time() - started < 1


class TestWithRetry:
    """Tests for with_retry."""

    async def test_succeeds_after_failures(self, fast_retry_config: RetryConfig) -> None:
        """Test two network failures then success yields the result."""
        operation = FlakyOperation(2, ConnectionError("network down"))
        on_retry = MagicMock()

        result = await with_retry(operation, config=fast_retry_config, on_retry=on_retry)

        assert result == "ok"
        assert operation.calls == 3
        assert [c.args[0] for c in on_retry.call_args_list] == [1, 2]
        assert [c.args[1] for c in on_retry.call_args_list] == [1, 2]

    async def test_non_retryable_raises_immediately(self, fast_retry_config: RetryConfig) -> None:
        """Test non-network errors are not retried."""
        operation = FlakyOperation(1, ValueError("Invalid input"))

        with pytest.raises(ValueError):
            await with_retry(operation, config=fast_retry_config)

        assert operation.calls == 1

    async def test_exhausted(self, fast_retry_config: RetryConfig) -> None:
        """Test the last error surfaces after max_retries retries."""
        operation = FlakyOperation(10, ConnectionError("network down"))

        with pytest.raises(ConnectionError):
            await with_retry(operation, config=fast_retry_config)

        assert operation.calls == fast_retry_config.max_retries + 1

    async def test_zero_retries(self) -> None:
        """Test max_retries=0 makes exactly one attempt."""
        operation = FlakyOperation(1, ConnectionError("network"))

        with pytest.raises(ConnectionError):
            await with_retry(operation, config=RetryConfig(max_retries=0))

        assert operation.calls == 1

    async def test_cancellation_not_retried(self, fast_retry_config: RetryConfig) -> None:
        """Test a cancellation error is re-raised without retrying."""
        operation = FlakyOperation(5, OperationAbortedError("stop"))

        with pytest.raises(OperationAbortedError):
            await with_retry(operation, config=fast_retry_config)

        assert operation.calls == 1

    async def test_cancelled_token_not_retried(self, fast_retry_config: RetryConfig) -> None:
        """Test a fired token stops retries even for network errors."""
        token = CancellationToken()
        token.cancel()
        operation = FlakyOperation(5, ConnectionError("network"))

        with pytest.raises(ConnectionError):
            await with_retry(operation, config=fast_retry_config, token=token)

        assert operation.calls == 1

    async def test_custom_should_retry(self, fast_retry_config: RetryConfig) -> None:
        """Test a custom predicate replaces the classifier."""
        operation = FlakyOperation(1, ValueError("retry me"))

        result = await with_retry(
            operation, config=fast_retry_config, should_retry=lambda e: isinstance(e, ValueError)
        )

        assert result == "ok"


class TestReconnectionManager:
    """Tests for ReconnectionManager."""

    async def test_reconnects_and_reports(self, fast_retry_config: RetryConfig) -> None:
        """Test events are reported and state resets after success."""
        events: list[ReconnectionEvent] = []
        on_connected = MagicMock()
        manager = ReconnectionManager(
            fast_retry_config, on_reconnecting=events.append, on_connected=on_connected
        )
        operation = FlakyOperation(2, ConnectionError("network"))

        result = await manager.execute(operation)

        assert result == "ok"
        assert [e.attempt for e in events] == [1, 2]
        assert all(e.type == "reconnecting" for e in events)
        assert all(e.max_attempts == 3 for e in events)
        assert [e.delay_ms for e in events] == [1, 2]
        assert isinstance(events[0].error, ConnectionError)
        on_connected.assert_called_once()
        assert manager.get_state().attempt == 0

    async def test_passes_token(self, fast_retry_config: RetryConfig) -> None:
        """Test the operation receives the token."""
        token = CancellationToken()
        seen = []

        async def operation(t):
            seen.append(t)
            return 1

        await ReconnectionManager(fast_retry_config).execute(operation, token)

        assert seen == [token]

    async def test_failed_callback(self, fast_retry_config: RetryConfig) -> None:
        """Test on_failed fires once retries are exhausted."""
        on_failed = MagicMock()
        manager = ReconnectionManager(fast_retry_config, on_failed=on_failed)
        operation = FlakyOperation(10, ConnectionError("network"))

        with pytest.raises(ConnectionError):
            await manager.execute(operation)

        assert operation.calls == 4
        on_failed.assert_called_once()
        assert manager.get_state().attempt == 3

    async def test_cancellation_skips_failed_callback(self, fast_retry_config: RetryConfig) -> None:
        """Test cancellation re-raises without on_failed."""
        on_failed = MagicMock()
        manager = ReconnectionManager(fast_retry_config, on_failed=on_failed)

        with pytest.raises(OperationAbortedError):
            await manager.execute(FlakyOperation(1, OperationAbortedError()))

        on_failed.assert_not_called()

    async def test_cancel_during_backoff(self) -> None:
        """Test cancelling while waiting aborts the retry loop."""
        token = CancellationToken()
        config = RetryConfig(initial_delay_ms=10_000, jitter=False)
        manager = ReconnectionManager(config, on_reconnecting=lambda e: token.cancel())
        operation = FlakyOperation(5, ConnectionError("network"))

        with pytest.raises(OperationAbortedError):
            await manager.execute(operation, token)

        assert operation.calls == 1

    def test_should_retry(self, fast_retry_config: RetryConfig) -> None:
        """Test should_retry combines classification and remaining attempts."""
        manager = ReconnectionManager(fast_retry_config)

        assert manager.should_retry(ConnectionError("network"))
        assert not manager.should_retry(ValueError("bad"))

    def test_state_is_a_copy(self, fast_retry_config: RetryConfig) -> None:
        """Test get_state returns a detached copy."""
        manager = ReconnectionManager(fast_retry_config)
        state = manager.get_state()
        state.attempt = 99

        assert manager.get_state().attempt == 0
        assert manager.get_state().next_delay_ms == 1

    def test_reset(self, fast_retry_config: RetryConfig) -> None:
        """Test reset restores the initial state."""
        manager = ReconnectionManager(fast_retry_config)
        manager._state.attempt = 2

        manager.reset()

        assert manager.get_state().attempt == 0
