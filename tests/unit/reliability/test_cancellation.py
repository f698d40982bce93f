"""Tests for cooperative cancellation tokens."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from resilient_sse.reliability.cancellation import CancellationToken, OperationAbortedError


class TestOperationAbortedError:
    """Tests for OperationAbortedError."""

    def test_message(self):
        """Test messages always mention the abort."""
        assert str(OperationAbortedError()) == "Aborted"
        assert str(OperationAbortedError("user left")) == "Aborted: user left"
        assert OperationAbortedError("x").reason == "x"


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initial_state(self):
        """Test a new token is not cancelled."""
        token = CancellationToken()
        assert not token.cancelled
        assert token.reason is None
        token.raise_if_cancelled()

    def test_cancel_wraps_message(self):
        """Test a string reason is wrapped in OperationAbortedError."""
        token = CancellationToken()
        token.cancel("stop")
        assert token.cancelled
        assert isinstance(token.reason, OperationAbortedError)
        assert token.reason.reason == "stop"

    def test_cancel_keeps_exception(self):
        """Test an exception reason is kept as is."""
        token = CancellationToken()
        error = TimeoutError("late")
        token.cancel(error)
        assert token.reason is error
        with pytest.raises(TimeoutError):
            token.raise_if_cancelled()

    def test_cancel_is_idempotent(self):
        """Test only the first cancel counts and listeners fire once."""
        listener = MagicMock()
        token = CancellationToken()
        token.add_listener(listener)

        token.cancel("first")
        token.cancel("second")

        listener.assert_called_once()
        assert token.reason.reason == "first"

    def test_listener_added_after_cancel_not_called(self):
        """Test late listeners are ignored."""
        token = CancellationToken()
        token.cancel()
        listener = MagicMock()
        token.add_listener(listener)
        listener.assert_not_called()

    def test_remove_listener(self):
        """Test a removed listener is not called, and unknown ones are ignored."""
        listener = MagicMock()
        token = CancellationToken()
        token.add_listener(listener)
        token.remove_listener(listener)
        token.remove_listener(MagicMock())

        token.cancel()

        listener.assert_not_called()

    def test_failing_listener_does_not_block_others(self):
        """Test a raising listener does not stop the rest."""
        second = MagicMock()
        token = CancellationToken()
        token.add_listener(MagicMock(side_effect=RuntimeError("bad")))
        token.add_listener(second)

        token.cancel()

        second.assert_called_once()

    async def test_wait(self):
        """Test wait returns the reason once cancelled."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "done")
        reason = await token.wait()
        assert isinstance(reason, OperationAbortedError)


class TestGuard:
    """Tests for CancellationToken.guard."""

    async def test_returns_result(self):
        """Test guard returns the awaitable's result."""
        token = CancellationToken()

        async def work() -> int:
            await asyncio.sleep(0)
            return 5

        assert await token.guard(work()) == 5

    async def test_propagates_error(self):
        """Test errors from the work propagate unchanged."""
        token = CancellationToken()

        async def work() -> None:
            raise ValueError("nope")

        with pytest.raises(ValueError, match="nope"):
            await token.guard(work())

    async def test_cancel_interrupts_work(self):
        """Test firing the token cancels the work and raises the reason."""
        token = CancellationToken()
        finished = False

        async def work() -> None:
            nonlocal finished
            await asyncio.sleep(10)
            finished = True

        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")

        with pytest.raises(OperationAbortedError, match="stop"):
            await token.guard(work())
        assert not finished

    async def test_already_cancelled(self):
        """Test a fired token raises before starting the work."""
        token = CancellationToken()
        token.cancel()
        started = False

        async def work() -> None:
            nonlocal started
            started = True

        with pytest.raises(OperationAbortedError):
            await token.guard(work())
        assert not started
