"""Serialization of frames to the Server-Sent Events wire format.

Field order is fixed (``id``, ``retry``, ``event``, ``data``) and every frame
ends with a blank line. ``data`` is always a single line of compact JSON.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from resilient_sse.streaming.events import Frame, SSEEventType

if TYPE_CHECKING:
    from resilient_sse.streaming.sink import StreamSink


def to_json(data: Any) -> str:
    """Serialize a payload the way browsers' ``JSON.stringify`` would."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", exclude_none=True)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


class SSESerializer:
    """Serializer for Server-Sent Events format."""

    @staticmethod
    def format_message(
        data: Any,
        *,
        id: str | None = None,
        event: str | None = None,
        retry: int | None = None,
    ) -> str:
        """Format one SSE message.

        Args:
            data: JSON-serializable payload.
            id: Optional event id for Last-Event-ID on reconnection.
            event: Optional event type.
            retry: Optional reconnection hint in milliseconds.

        Returns:
            SSE-formatted string terminated by a blank line.
        """
        lines: list[str] = []
        if id is not None:
            lines.append(f"id: {id}")
        if retry is not None:
            lines.append(f"retry: {retry}")
        if event is not None:
            lines.append(f"event: {event}")
        lines.append(f"data: {to_json(data)}")
        return "\n".join(lines) + "\n\n"

    @staticmethod
    def serialize(frame: Frame) -> str:
        """Serialize a frame to SSE format."""
        return SSESerializer.format_message(
            frame.data, id=frame.id, event=frame.event, retry=frame.retry
        )

    @staticmethod
    def serialize_batch(frames: list[Frame]) -> str:
        """Serialize multiple frames to SSE format.

        Args:
            frames: Frames to serialize, in order.

        Returns:
            Concatenated SSE-formatted string for all frames.
        """
        return "".join(SSESerializer.serialize(frame) for frame in frames)

    @staticmethod
    def heartbeat(message: str = "heartbeat") -> str:
        """Format a heartbeat comment frame."""
        return f": [{message}]\n\n"

    @staticmethod
    def retry(retry_ms: int) -> str:
        """Format a bare ``retry:`` frame that sets the client reconnect delay."""
        return f"retry: {retry_ms}\n\n"


class SSEEncoder:
    """Typed frame helpers bound to a sink.

    Example:
        >>> encoder = SSEEncoder(sink)
        >>> encoder.start()
        >>> encoder.delta("Hello ", id="1")
        >>> encoder.done({"success": True})
    """

    def __init__(self, sink: StreamSink) -> None:
        self._sink = sink

    def _write(self, text: str) -> None:
        self._sink.enqueue(text.encode("utf-8"))

    def start(
        self,
        metadata: dict[str, Any] | None = None,
        *,
        id: str | None = None,
        retry: int | None = None,
    ) -> None:
        """Signal the beginning of a stream."""
        self._write(
            SSESerializer.format_message(
                metadata or {}, id=id, event=SSEEventType.START.value, retry=retry
            )
        )

    def delta(self, text: str, *, id: str | None = None, retry: int | None = None) -> None:
        """Emit a text chunk."""
        self._write(
            SSESerializer.format_message(
                {"text": text}, id=id, event=SSEEventType.DELTA.value, retry=retry
            )
        )

    def done(self, payload: Any, *, id: str | None = None, retry: int | None = None) -> None:
        """Signal successful completion with the final payload."""
        self._write(
            SSESerializer.format_message(
                payload, id=id, event=SSEEventType.DONE.value, retry=retry
            )
        )

    def error(
        self,
        error: BaseException | str,
        extra: dict[str, Any] | None = None,
        *,
        id: str | None = None,
        retry: int | None = None,
    ) -> None:
        """Signal that the stream failed."""
        payload = {"error": str(error), **(extra or {})}
        self._write(
            SSESerializer.format_message(
                payload, id=id, event=SSEEventType.ERROR.value, retry=retry
            )
        )

    def progress(
        self,
        phase: str,
        message: str | None = None,
        *,
        id: str | None = None,
        retry: int | None = None,
    ) -> None:
        """Emit a phase/progress update."""
        payload: dict[str, Any] = {"phase": phase}
        if message is not None:
            payload["message"] = message
        self._write(
            SSESerializer.format_message(
                payload, id=id, event=SSEEventType.PROGRESS.value, retry=retry
            )
        )

    def heartbeat(self, message: str = "heartbeat") -> None:
        """Emit a heartbeat comment."""
        self._write(SSESerializer.heartbeat(message))

    def data(self, data: Any, *, id: str | None = None, retry: int | None = None) -> None:
        """Emit a bare ``data:`` frame with no event type."""
        self._write(SSESerializer.format_message(data, id=id, retry=retry))

    def event(
        self,
        event_type: str,
        data: Any,
        *,
        id: str | None = None,
        retry: int | None = None,
    ) -> None:
        """Emit an application-specific event type."""
        self._write(SSESerializer.format_message(data, id=id, event=event_type, retry=retry))

    def retry(self, retry_ms: int) -> None:
        """Tell clients how long to wait before reconnecting."""
        self._write(SSESerializer.retry(retry_ms))

    @staticmethod
    def format(frame: Frame) -> str:
        """Format a frame without sending it."""
        return SSESerializer.serialize(frame)


__all__ = ["SSEEncoder", "SSESerializer", "to_json"]
