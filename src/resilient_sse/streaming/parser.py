"""Incremental parsing of Server-Sent Events streams.

Two parsers live here. :class:`SSEParser` reassembles ``data:`` payloads from
arbitrarily fragmented chunks and hands each decoded JSON value to a
callback. :func:`parse_sse_stream` consumes a whole byte stream, tracks the
``event:`` tag of each frame and routes payloads to typed handlers.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from resilient_sse.reliability.cancellation import CancellationToken, OperationAbortedError

logger = structlog.get_logger(__name__)

DEFAULT_PREVIEW_CHARS = 120


class SSEStreamError(Exception):
    """Raised when the server sends an ``error`` event.

    Attributes:
        payload: The decoded error payload as sent by the server.
        code: Optional error code from the payload.
        retryable: Optional retryable hint from the payload.
    """

    def __init__(self, message: str, payload: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.payload: dict[str, Any] = payload or {}
        self.code: str | None = self.payload.get("code")
        self.retryable: bool | None = self.payload.get("retryable")


class StreamCancelledError(Exception):
    """Raised when the consumer cancels a stream while it is being parsed."""

    def __init__(self, message: str = "Stream cancelled") -> None:
        super().__init__(message)


def _field_value(line: str, field: str) -> str | None:
    """Return the value of ``field:`` on ``line``, or None if it is another field."""
    prefix = f"{field}:"
    if not line.startswith(prefix):
        return None
    value = line[len(prefix) :]
    return value[1:] if value.startswith(" ") else value


class SSEParser:
    """Stateful SSE parser that handles chunked data.

    Feed it every chunk read from the transport. Incomplete frames are kept
    in an internal buffer until their terminating blank line arrives, so a
    payload split across reads is never parsed early. Bytes are decoded
    incrementally, which keeps multi-byte characters intact across splits.

    Example:
        >>> received = []
        >>> parser = SSEParser(on_message=received.append)
        >>> parser.feed('data: {"phase": "wor')
        >>> parser.feed('king"}\\n\\n')
        >>> received
        [{'phase': 'working'}]
    """

    def __init__(
        self,
        on_message: Callable[[Any], None],
        on_error: Callable[[Exception, str], None] | None = None,
        *,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
    ) -> None:
        """Initialize the parser.

        Args:
            on_message: Called with each decoded ``data:`` payload.
            on_error: Called with the exception and a truncated copy of the
                raw payload when a ``data:`` line is not valid JSON.
            preview_chars: Length the raw payload is truncated to.
        """
        self._on_message = on_message
        self._on_error = on_error
        self._preview_chars = preview_chars
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")()

    @property
    def pending(self) -> str:
        """Text buffered while waiting for a frame terminator."""
        return self._buffer

    def feed(self, chunk: str | bytes) -> None:
        """Consume one chunk and dispatch every frame it completes."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *frames, self._buffer = self._buffer.split("\n\n")

        for frame in frames:
            self._dispatch(frame)

    __call__ = feed

    def reset(self) -> None:
        """Drop any partially received frame."""
        self._buffer = ""
        self._decoder.reset()

    def _dispatch(self, frame: str) -> None:
        trimmed = frame.strip()
        if not trimmed:
            return

        for line in trimmed.split("\n"):
            # Comments, including heartbeats
            if line.startswith(":"):
                continue

            payload = _field_value(line, "data")
            if payload is None:
                continue

            try:
                data = json.loads(payload)
            except json.JSONDecodeError as e:
                preview = payload[: self._preview_chars]
                logger.debug("sse_parse_failed", error=str(e), raw=preview)
                if self._on_error is not None:
                    self._on_error(e, preview)
                continue

            self._on_message(data)


@dataclass
class SSEEventHandlers:
    """Callbacks for typed SSE events. Every handler is optional."""

    on_start: Callable[[Any], None] | None = None
    on_delta: Callable[[str], None] | None = None
    on_done: Callable[[Any], None] | None = None
    on_error: Callable[[str], None] | None = None
    on_progress: Callable[[str, str | None], None] | None = None


async def _next_chunk(iterator: AsyncIterator[bytes | str]) -> bytes | str | None:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return None


async def parse_sse_stream(
    chunks: AsyncIterable[bytes | str],
    handlers: SSEEventHandlers,
    token: CancellationToken | None = None,
) -> Any:
    """Parse a complete SSE response body with typed event handlers.

    Args:
        chunks: The response body, e.g. ``response.aiter_bytes()``.
        handlers: Callbacks routed by the ``event:`` tag of each frame.
        token: Optional cancellation; a pending read is abandoned as soon
            as it fires.

    Returns:
        The payload of the last ``done`` event, or None.

    Raises:
        SSEStreamError: If the server sends an ``error`` event. The
            ``on_error`` handler runs first.
        StreamCancelledError: If ``token`` is cancelled before the stream ends.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    buffer = ""
    current_event = ""
    final_data: Any = None

    iterator = aiter(chunks)

    while True:
        try:
            if token is not None:
                chunk = await token.guard(_next_chunk(iterator))
            else:
                chunk = await _next_chunk(iterator)
        except OperationAbortedError as e:
            raise StreamCancelledError(e.reason or "Stream cancelled") from e
        if chunk is None:
            break

        if isinstance(chunk, bytes):
            chunk = decoder.decode(chunk)
        buffer += chunk
        *lines, buffer = buffer.split("\n")

        for line in lines:
            if not line:
                # End of frame
                current_event = ""
                continue

            event = _field_value(line, "event")
            if event is not None:
                current_event = event.strip()
                continue

            if line.startswith(":"):
                continue

            data = _field_value(line, "data")
            if data is None or not data.strip():
                continue

            try:
                parsed = json.loads(data)
            except json.JSONDecodeError as e:
                logger.debug("sse_parse_failed", error=str(e), sse_event=current_event)
                continue

            match current_event:
                case "start":
                    if handlers.on_start:
                        handlers.on_start(parsed)
                case "delta":
                    text = parsed.get("text") if isinstance(parsed, dict) else None
                    if text and handlers.on_delta:
                        handlers.on_delta(text)
                case "done":
                    final_data = parsed
                    if handlers.on_done:
                        handlers.on_done(parsed)
                case "error":
                    payload = parsed if isinstance(parsed, dict) else {"error": str(parsed)}
                    message = payload.get("error") or "Unknown error"
                    if handlers.on_error:
                        handlers.on_error(message)
                    raise SSEStreamError(message, payload)
                case _:
                    if isinstance(parsed, dict) and parsed.get("phase") and handlers.on_progress:
                        handlers.on_progress(parsed["phase"], parsed.get("message"))

            current_event = ""

    return final_data


__all__ = [
    "SSEEventHandlers",
    "SSEParser",
    "SSEStreamError",
    "StreamCancelledError",
    "parse_sse_stream",
]
