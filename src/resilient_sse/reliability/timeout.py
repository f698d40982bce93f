"""Timeout enforcement for streaming requests.

Two independent deadlines are layered onto a stream:

- a request deadline, a cancellation token that fires once a fixed time has
  passed unless it is cleared first;
- an idle deadline, restarted every time a chunk arrives, which cancels the
  reader when the stream goes quiet for too long.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from typing import Literal, Protocol, TypeVar, runtime_checkable

import structlog

from resilient_sse.config import DEFAULT_TIMEOUT_CONFIG, TimeoutConfig
from resilient_sse.reliability.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TimeoutKind = Literal["request", "idle"]


class StreamTimeoutError(TimeoutError):
    """Raised when a request or idle deadline passes.

    Attributes:
        kind: ``"request"`` for the total deadline, ``"idle"`` for the gap
            between chunks.
        timeout_ms: The configured duration that elapsed.
    """

    def __init__(self, kind: TimeoutKind, timeout_ms: int) -> None:
        self.kind: TimeoutKind = kind
        self.timeout_ms = timeout_ms
        if kind == "request":
            message = f"Request timeout after {timeout_ms}ms"
        else:
            message = f"Idle timeout: no data received for {timeout_ms}ms"
        super().__init__(message)


def is_timeout_error(error: object) -> bool:
    """Check if an error is a stream timeout."""
    return isinstance(error, StreamTimeoutError)


def is_request_timeout_error(error: object) -> bool:
    """Check if an error is a request timeout."""
    return isinstance(error, StreamTimeoutError) and error.kind == "request"


def is_idle_timeout_error(error: object) -> bool:
    """Check if an error is an idle timeout."""
    return isinstance(error, StreamTimeoutError) and error.kind == "idle"


class RequestTimeout:
    """A cancellation token that fires after ``timeout_ms``.

    If ``upstream`` is given, firing it fires this token too, and the token
    starts cancelled when ``upstream`` already is. A zero duration disables
    the timer; the token then only follows ``upstream``.

    Example:
        >>> with RequestTimeout(60_000, parent_token) as token:
        ...     response = await token.guard(open_stream(token))
    """

    def __init__(self, timeout_ms: int, upstream: CancellationToken | None = None) -> None:
        self.timeout_ms = timeout_ms
        self.token = CancellationToken()
        self._upstream = upstream
        self._timer: asyncio.TimerHandle | None = None

        if upstream is not None:
            if upstream.cancelled:
                self.token.cancel(upstream.reason)
            else:
                upstream.add_listener(self.token.cancel)

        if timeout_ms > 0 and not self.token.cancelled:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout_ms / 1000, self._expire)

    def _expire(self) -> None:
        self._timer = None
        logger.debug("request_timeout_fired", timeout_ms=self.timeout_ms)
        self.token.cancel(StreamTimeoutError("request", self.timeout_ms))

    def clear(self) -> None:
        """Stop the timer and detach from the upstream token."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._upstream is not None:
            self._upstream.remove_listener(self.token.cancel)

    def __enter__(self) -> CancellationToken:
        return self.token

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.clear()


class IdleTimeout:
    """Timer restarted by :meth:`touch`, calling ``on_timeout`` when it lapses.

    The timer starts as soon as the object is created.
    """

    def __init__(self, timeout_ms: int, on_timeout: Callable[[], None]) -> None:
        self.timeout_ms = timeout_ms
        self._on_timeout = on_timeout
        self._timer: asyncio.TimerHandle | None = None
        self.touch()

    def touch(self) -> None:
        """Restart the timer."""
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.timeout_ms / 1000, self._fire)

    def clear(self) -> None:
        """Cancel the timer permanently."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        self._on_timeout()


@runtime_checkable
class ChunkReader(Protocol):
    """Pull-based byte source that can be cancelled from outside."""

    async def read(self) -> bytes | None:
        """Return the next chunk, or None at end of stream.

        Raises:
            BaseException: The cancellation reason once cancelled.
        """
        ...

    def cancel(self, reason: BaseException) -> None:
        """Abort pending and future reads with ``reason``."""
        ...


class AsyncIteratorReader:
    """Adapts an async byte iterator (e.g. ``response.aiter_bytes()``) to ChunkReader."""

    def __init__(self, source: AsyncIterable[bytes]) -> None:
        self._iterator: AsyncIterator[bytes] = aiter(source)
        self._token = CancellationToken()

    async def _next(self) -> bytes | None:
        try:
            return await anext(self._iterator)
        except StopAsyncIteration:
            return None

    async def read(self) -> bytes | None:
        return await self._token.guard(self._next())

    def cancel(self, reason: BaseException) -> None:
        self._token.cancel(reason)


async def fetch_with_timeout(
    fetch_fn: Callable[[CancellationToken], Awaitable[T]],
    config: TimeoutConfig | None = None,
    token: CancellationToken | None = None,
) -> T:
    """Run ``fetch_fn`` under the request deadline.

    Args:
        fetch_fn: Called with the token it must honour.
        config: Timeouts; only ``request_ms`` is used here.
        token: Optional upstream cancellation.

    Returns:
        Whatever ``fetch_fn`` returns.

    Raises:
        StreamTimeoutError: If the request deadline passes first.
    """
    timeout = config or DEFAULT_TIMEOUT_CONFIG

    if timeout.request_ms == 0:
        effective = token or CancellationToken()
        return await effective.guard(fetch_fn(effective))

    with RequestTimeout(timeout.request_ms, token) as request_token:
        return await request_token.guard(fetch_fn(request_token))


async def read_stream_with_idle_timeout(
    reader: ChunkReader | AsyncIterable[bytes],
    config: TimeoutConfig | None,
    on_chunk: Callable[[bytes], None],
) -> None:
    """Read every chunk, cancelling the reader if the stream goes idle.

    Args:
        reader: The byte source; plain async iterables are wrapped.
        config: Timeouts; only ``idle_ms`` is used here.
        on_chunk: Called with each chunk in arrival order.

    Raises:
        StreamTimeoutError: With ``kind == "idle"`` if no chunk arrives
            within ``idle_ms`` of the previous one (or of the start).
    """
    timeout = config or DEFAULT_TIMEOUT_CONFIG
    if not isinstance(reader, ChunkReader):
        reader = AsyncIteratorReader(reader)

    if timeout.idle_ms == 0:
        while (chunk := await reader.read()) is not None:
            on_chunk(chunk)
        return

    def on_idle() -> None:
        logger.debug("idle_timeout_fired", idle_ms=timeout.idle_ms)
        reader.cancel(StreamTimeoutError("idle", timeout.idle_ms))

    idle = IdleTimeout(timeout.idle_ms, on_idle)
    try:
        while (chunk := await reader.read()) is not None:
            idle.touch()
            on_chunk(chunk)
    finally:
        idle.clear()


__all__ = [
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
