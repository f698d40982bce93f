"""Writable sinks that carry encoded frames to the HTTP response body."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable


class SinkClosedError(Exception):
    """Raised when writing to or closing a sink that is already closed."""

    def __init__(self, message: str = "Sink is already closed") -> None:
        super().__init__(message)


@runtime_checkable
class StreamSink(Protocol):
    """Protocol for the writable end of an outbound stream."""

    def enqueue(self, data: bytes) -> None:
        """Queue encoded bytes for delivery.

        Raises:
            SinkClosedError: If the sink is closed.
        """
        ...

    def close(self) -> None:
        """Close the sink.

        Raises:
            SinkClosedError: If the sink is already closed.
        """
        ...


class QueueSink:
    """Sink backed by an asyncio queue, consumed by async iteration.

    The reading side (typically a Starlette ``StreamingResponse``) iterates
    the sink. When that iteration stops early, because the peer went away,
    the sink marks itself closed so later writes fail fast.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        """Check if the sink has been closed."""
        return self._closed

    def enqueue(self, data: bytes) -> None:
        if self._closed:
            raise SinkClosedError()
        self._queue.put_nowait(data)

    def close(self) -> None:
        if self._closed:
            raise SinkClosedError()
        self._closed = True
        # Sentinel ends iteration after queued frames drain
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    break
                yield chunk
        finally:
            self._closed = True


__all__ = ["QueueSink", "SinkClosedError", "StreamSink"]
