"""Transport layer for streaming responses."""

from resilient_sse.streaming.transport.sse import (
    SSE_HEADERS,
    SSE_MEDIA_TYPE,
    SSETransport,
    create_sse_response,
)

__all__ = ["SSE_HEADERS", "SSE_MEDIA_TYPE", "SSETransport", "create_sse_response"]
