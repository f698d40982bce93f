"""Cooperative cancellation tokens.

A token is passed down the call chain. Each layer observes it at its own
suspension points, either by polling :attr:`CancellationToken.cancelled`,
by registering a listener, or by racing an awaitable against it with
:meth:`CancellationToken.guard`. Nothing is ever forcibly terminated from
outside the task that owns it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class OperationAbortedError(Exception):
    """Raised when an operation is cancelled through a token."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__("Aborted" if reason is None else f"Aborted: {reason}")


class CancellationToken:
    """One-shot cancellation signal shared by cooperating layers.

    Example:
        >>> token = CancellationToken()
        >>> token.add_listener(lambda reason: print("cancelled:", reason))
        >>> token.cancel("user left")
        cancelled: Aborted: user left
    """

    def __init__(self) -> None:
        self._reason: BaseException | None = None
        self._listeners: list[Callable[[BaseException], None]] = []
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """Check if the token has fired."""
        return self._reason is not None

    @property
    def reason(self) -> BaseException | None:
        """The exception describing why the token fired, if it has."""
        return self._reason

    def cancel(self, reason: BaseException | str | None = None) -> None:
        """Fire the token. Subsequent calls are no-ops.

        Args:
            reason: An exception to surface to observers, or a message that
                is wrapped in :class:`OperationAbortedError`.
        """
        if self._reason is not None:
            return
        if not isinstance(reason, BaseException):
            reason = OperationAbortedError(reason)
        self._reason = reason
        self._event.set()

        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("cancellation_listener_failed")
        self._listeners.clear()

    def add_listener(self, listener: Callable[[BaseException], None]) -> None:
        """Register a callback for when the token fires.

        Listeners added after the token fired are never called; check
        :attr:`cancelled` first.
        """
        if self._reason is None:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[BaseException], None]) -> None:
        """Detach a previously registered listener."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def raise_if_cancelled(self) -> None:
        """Raise the cancellation reason if the token has fired."""
        if self._reason is not None:
            raise self._reason

    async def wait(self) -> BaseException:
        """Suspend until the token fires and return the reason."""
        await self._event.wait()
        assert self._reason is not None
        return self._reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            BaseException: The token's reason, if it fired before the
                awaitable finished. The awaitable is cancelled.
        """
        if self._reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self._reason

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()

        if work.done() and not work.cancelled():
            return work.result()

        # Let the cancelled work unwind before surfacing the reason
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("guarded_operation_failed_after_cancel", exc_info=True)
        assert self._reason is not None
        raise self._reason


__all__ = ["CancellationToken", "OperationAbortedError"]
