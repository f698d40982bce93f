"""Server-side orchestration of one outbound SSE stream.

A :class:`StreamOrchestrator` owns the lifecycle of a single response body:
it encodes updates into frames, keeps the connection warm with heartbeat
comments, and tears everything down exactly once when the stream is closed,
aborted, or its cancellation token fires. Once closed, every send is a
silent no-op.

Example:
    >>> sink, orchestrator = create_streaming_response()
    >>> orchestrator.start_heartbeat()
    >>> await orchestrator.send_progress("processing", "Working...")
    >>> await orchestrator.send_result({"data": "complete"})
    >>> await orchestrator.close()
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from resilient_sse.config import DEFAULT_HEARTBEAT_CONFIG, HeartbeatConfig
from resilient_sse.reliability.cancellation import CancellationToken, OperationAbortedError
from resilient_sse.streaming.events import StreamUpdate, UpdatePhase
from resilient_sse.streaming.serialization import SSESerializer
from resilient_sse.streaming.sink import QueueSink, SinkClosedError, StreamSink

logger = structlog.get_logger(__name__)


class StreamObserver:
    """Lifecycle hooks for metrics and tracing.

    Every hook is a no-op; subclass and override the ones you need. Hooks
    never influence control flow, and exceptions raised by them are logged
    and discarded.
    """

    def on_stream_start(self) -> None:
        """Called when the stream is created."""

    def on_stream_end(self, duration_ms: float, success: bool, error: BaseException | None) -> None:
        """Called once when the stream closes or aborts."""

    def on_update_sent(self, phase: str, bytes_sent: int) -> None:
        """Called after each update frame is written."""

    def on_heartbeat(self) -> None:
        """Called after each heartbeat comment is written."""

    def on_error(self, error: BaseException) -> None:
        """Called when writing to the sink fails."""

    def on_abort(self, reason: str) -> None:
        """Called when the stream is aborted."""


class StreamMetrics(BaseModel):
    """Snapshot of one stream."""

    duration_ms: float
    bytes_sent: int
    closed: bool
    aborted: bool


class StreamOrchestrator:
    """Orchestrates one Server-Sent Events stream.

    Pure streaming logic, no business rules. Heartbeats run as an asyncio
    task, so :meth:`start_heartbeat` needs a running event loop.
    """

    def __init__(
        self,
        sink: StreamSink,
        *,
        heartbeat: HeartbeatConfig | None = None,
        complete_phase: str = UpdatePhase.COMPLETE.value,
        error_phase: str = UpdatePhase.ERROR.value,
        observer: StreamObserver | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        """Initialize the orchestrator around a writable sink.

        Args:
            sink: Where encoded frames are written.
            heartbeat: Heartbeat interval and message.
            complete_phase: Phase tag used by :meth:`send_result`.
            error_phase: Phase tag used by :meth:`send_error`.
            observer: Lifecycle hooks.
            token: External cancellation; firing it aborts the stream.
        """
        self._sink = sink
        self._heartbeat_config = heartbeat or DEFAULT_HEARTBEAT_CONFIG
        self._complete_phase = complete_phase
        self._error_phase = error_phase
        self._observer = observer or StreamObserver()
        self._token = token

        self._start_time = time.monotonic()
        self._bytes_sent = 0
        self._is_closed = False
        self._is_aborted = False
        self._last_error: BaseException | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._listening = False

        self._notify("on_stream_start")

        if token is not None:
            if token.cancelled:
                self._handle_abort(self._reason_text(token.reason))
            else:
                token.add_listener(self._on_token_cancelled)
                self._listening = True

    @property
    def closed(self) -> bool:
        """Check if the stream is closed."""
        return self._is_closed

    @property
    def aborted(self) -> bool:
        """Check if the stream was aborted."""
        return self._is_aborted

    @property
    def last_error(self) -> BaseException | None:
        """The error that closed the stream, if any."""
        return self._last_error

    def _elapsed_ms(self) -> float:
        return (time.monotonic() - self._start_time) * 1000

    def _notify(self, hook: str, *args: Any) -> None:
        try:
            getattr(self._observer, hook)(*args)
        except Exception:
            logger.exception("stream_observer_failed", hook=hook)

    @staticmethod
    def _reason_text(reason: BaseException | None) -> str:
        if isinstance(reason, OperationAbortedError) and reason.reason:
            return reason.reason
        if reason is not None and not isinstance(reason, OperationAbortedError):
            return str(reason) or "Stream aborted"
        return "Stream aborted"

    def _on_token_cancelled(self, reason: BaseException) -> None:
        self._listening = False
        self._handle_abort(self._reason_text(reason))

    def _detach_token(self) -> None:
        if self._token is not None and self._listening:
            self._token.remove_listener(self._on_token_cancelled)
            self._listening = False

    def _handle_abort(self, reason: str) -> None:
        if self._is_closed:
            return

        self._is_aborted = True
        self._last_error = OperationAbortedError(reason)
        self.stop_heartbeat()
        self._is_closed = True
        logger.info("stream_aborted", reason=reason, bytes_sent=self._bytes_sent)

        self._notify("on_abort", reason)
        self._notify("on_stream_end", self._elapsed_ms(), False, self._last_error)

        self._close_sink()
        self._detach_token()

    def _close_sink(self) -> None:
        try:
            self._sink.close()
        except SinkClosedError:
            logger.debug("stream_sink_already_closed")
        except Exception as e:
            logger.warning("stream_sink_close_failed", error=str(e), error_type=type(e).__name__)

    def _write(self, text: str) -> int:
        encoded = text.encode("utf-8")
        self._sink.enqueue(encoded)
        self._bytes_sent += len(encoded)
        return len(encoded)

    def _fail(self, error: Exception, context: str) -> None:
        self._is_closed = True
        self._last_error = error
        self._notify("on_error", error)
        if isinstance(error, SinkClosedError):
            logger.info("stream_closed_by_client", context=context)
        else:
            logger.warning("stream_write_failed", context=context, error=str(error))

    async def send_update(self, update: StreamUpdate | dict[str, Any]) -> None:
        """Send an update frame.

        A failed write (the peer went away) closes the stream and is
        reported to the observer; it is never raised. A dict that does not
        validate as a :class:`StreamUpdate` is logged and dropped.
        """
        if self._is_closed:
            logger.debug("stream_closed_skipping_update")
            return

        if not isinstance(update, StreamUpdate):
            try:
                update = StreamUpdate.model_validate(update)
            except ValidationError as e:
                logger.warning("invalid_stream_update", error=str(e))
                return
        phase = str(update.phase)

        try:
            size = self._write(SSESerializer.format_message(update.to_wire()))
        except Exception as e:
            self._fail(e, context=phase)
            return

        self._notify("on_update_sent", phase, size)

    async def send_progress(self, phase: str, message: str | None = None) -> None:
        """Send a progress update with a phase and optional message."""
        await self.send_update({"phase": phase, "message": message})

    async def send_result(self, result: Any) -> None:
        """Send the final result under the complete phase."""
        await self.send_update({"phase": self._complete_phase, "result": result})

    async def send_error(self, error: str, extra: dict[str, Any] | None = None) -> None:
        """Send an error message under the error phase.

        Keys in ``extra`` are spread over the payload and win on conflict.
        """
        await self.send_update({"phase": self._error_phase, "error": error, **(extra or {})})

    async def send_with_metadata(
        self,
        phase: str,
        metadata: dict[str, Any],
        message: str | None = None,
    ) -> None:
        """Send an update carrying caller-defined metadata."""
        await self.send_update({"phase": phase, "message": message, "metadata": metadata})

    async def send_event(self, event_type: str, data: Any) -> None:
        """Send a frame with a custom ``event:`` type, bypassing the update shape."""
        if self._is_closed:
            return

        try:
            self._write(SSESerializer.format_message(data, event=event_type))
        except Exception as e:
            self._fail(e, context=event_type)

    def start_heartbeat(self) -> None:
        """Start sending periodic heartbeat comments.

        Proxies and browsers drop connections that stay silent too long.
        Calling this while a heartbeat is running is a no-op.
        """
        if not self._heartbeat_config.enabled or self._heartbeat_task is not None:
            return
        if self._is_closed:
            return
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    def stop_heartbeat(self) -> None:
        """Stop the heartbeat task."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        interval = self._heartbeat_config.interval_ms / 1000
        frame = SSESerializer.heartbeat(self._heartbeat_config.message)

        while True:
            await asyncio.sleep(interval)
            if self._is_closed:
                self.stop_heartbeat()
                return

            try:
                self._write(frame)
            except Exception as e:
                self.stop_heartbeat()
                self._fail(e, context="heartbeat")
                return

            self._notify("on_heartbeat")

    async def close(self) -> None:
        """Close the stream. Calling it again is a no-op."""
        if self._is_closed:
            return

        self.stop_heartbeat()
        self._detach_token()
        self._close_sink()

        self._is_closed = True
        success = self._last_error is None
        logger.debug("stream_closed", bytes_sent=self._bytes_sent, success=success)
        self._notify("on_stream_end", self._elapsed_ms(), success, self._last_error)

    def abort(self, reason: str | None = None) -> None:
        """Abort the stream from server-side code."""
        self._handle_abort(reason or "Stream aborted")

    def get_metrics(self) -> StreamMetrics:
        """Get a snapshot of stream metrics."""
        return StreamMetrics(
            duration_ms=self._elapsed_ms(),
            bytes_sent=self._bytes_sent,
            closed=self._is_closed,
            aborted=self._is_aborted,
        )


def create_streaming_response(
    **options: Any,
) -> tuple[QueueSink, StreamOrchestrator]:
    """Create a queue-backed sink and an orchestrator writing into it.

    Args:
        **options: Keyword arguments for :class:`StreamOrchestrator`.

    Returns:
        The sink (iterate it to get the response body) and the orchestrator.
    """
    sink = QueueSink()
    return sink, StreamOrchestrator(sink, **options)


__all__ = [
    "StreamMetrics",
    "StreamObserver",
    "StreamOrchestrator",
    "create_streaming_response",
]
