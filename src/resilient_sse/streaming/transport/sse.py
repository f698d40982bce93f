"""Server-Sent Events transport for streaming."""

from collections.abc import AsyncIterable, Mapping
from typing import Any

from starlette.responses import StreamingResponse

from resilient_sse.streaming.orchestrator import StreamOrchestrator, create_streaming_response

SSE_MEDIA_TYPE = "text/event-stream"

SSE_HEADERS: dict[str, str] = {
    "Content-Type": SSE_MEDIA_TYPE,
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class SSETransport:
    """Turns a sink's byte stream into an HTTP response.

    Example:
        >>> transport = SSETransport()
        >>> response, orchestrator = transport.stream()
        >>> orchestrator.start_heartbeat()
        >>> return response
    """

    def __init__(self, headers: Mapping[str, str] | None = None) -> None:
        """Initialize the SSE transport.

        Args:
            headers: Extra response headers, merged over :data:`SSE_HEADERS`.
        """
        self._headers = {**SSE_HEADERS, **(headers or {})}

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with every response."""
        return dict(self._headers)

    def create_response(
        self,
        body: AsyncIterable[bytes],
        media_type: str = SSE_MEDIA_TYPE,
    ) -> StreamingResponse:
        """Create a Starlette StreamingResponse for SSE.

        Args:
            body: The byte stream, usually a :class:`QueueSink`.
            media_type: MIME type for the response.

        Returns:
            StreamingResponse configured for SSE.
        """
        return StreamingResponse(body, media_type=media_type, headers=self._headers)

    def stream(self, **options: Any) -> tuple[StreamingResponse, StreamOrchestrator]:
        """Create a response together with the orchestrator that feeds it.

        Args:
            **options: Keyword arguments for :class:`StreamOrchestrator`.
        """
        sink, orchestrator = create_streaming_response(**options)
        return self.create_response(sink), orchestrator


def create_sse_response(
    body: AsyncIterable[bytes],
    headers: Mapping[str, str] | None = None,
) -> StreamingResponse:
    """Wrap ``body`` in a streaming response with the standard SSE headers."""
    return SSETransport(headers).create_response(body)


__all__ = ["SSE_HEADERS", "SSE_MEDIA_TYPE", "SSETransport", "create_sse_response"]
