"""
Streaming functionality for resilient-sse.

This module provides the SSE wire codec, incremental parsers, writable sinks
and the server-side stream orchestrator.
"""

from resilient_sse.streaming.events import (
    Frame,
    SSEEventType,
    StreamUpdate,
    UpdatePhase,
    is_complete_update,
    is_error_update,
)
from resilient_sse.streaming.orchestrator import (
    StreamMetrics,
    StreamObserver,
    StreamOrchestrator,
    create_streaming_response,
)
from resilient_sse.streaming.parser import (
    SSEEventHandlers,
    SSEParser,
    SSEStreamError,
    StreamCancelledError,
    parse_sse_stream,
)
from resilient_sse.streaming.serialization import SSEEncoder, SSESerializer, to_json
from resilient_sse.streaming.sink import QueueSink, SinkClosedError, StreamSink

__all__ = [
    # Events
    "Frame",
    "SSEEventType",
    "StreamUpdate",
    "UpdatePhase",
    "is_complete_update",
    "is_error_update",
    # Codec
    "SSEEncoder",
    "SSESerializer",
    "to_json",
    # Parsing
    "SSEEventHandlers",
    "SSEParser",
    "SSEStreamError",
    "StreamCancelledError",
    "parse_sse_stream",
    # Sinks
    "QueueSink",
    "SinkClosedError",
    "StreamSink",
    # Orchestration
    "StreamMetrics",
    "StreamObserver",
    "StreamOrchestrator",
    "create_streaming_response",
]
