"""Resilient SSE consumer built on httpx.

:class:`SSEStreamClient` composes every client-side primitive: the request
deadline and idle timeout bound each attempt, the reconnection manager
restarts failed attempts from scratch, and an optional circuit breaker
wraps the whole retry loop so a persistently failing endpoint fails fast.
Progress is exposed as a :class:`SSEStreamState` snapshot and through
callbacks.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from resilient_sse.config import DEFAULT_TIMEOUT_CONFIG, RetryConfig, TimeoutConfig
from resilient_sse.reliability.cancellation import CancellationToken
from resilient_sse.reliability.circuit_breaker import CircuitBreaker
from resilient_sse.reliability.retry import (
    ReconnectionEvent,
    ReconnectionManager,
    is_cancellation_error,
)
from resilient_sse.reliability.timeout import RequestTimeout, read_stream_with_idle_timeout
from resilient_sse.streaming.events import StreamUpdate, UpdatePhase
from resilient_sse.streaming.parser import DEFAULT_PREVIEW_CHARS, SSEParser, SSEStreamError

logger = structlog.get_logger(__name__)


class StreamHTTPError(Exception):
    """Raised when the server answers a stream request with a non-2xx status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ReconnectionInfo:
    """Reconnection progress shown while a retry is pending."""

    attempt: int
    max_attempts: int
    retry_delay_ms: float


@dataclass
class SSEStreamState:
    """Observable state of a stream consumer."""

    phase: str
    phase_message: str | None = None
    result: Any = None
    error: str | None = None
    is_streaming: bool = False
    reconnection_info: ReconnectionInfo | None = None


class SSEStreamClient:
    """Consumes a JSON-update SSE endpoint with retry, timeouts and a breaker.

    Example:
        >>> client = SSEStreamClient(
        ...     "https://api.example.com/analyze",
        ...     reconnecting_phase="reconnecting",
        ...     on_update=lambda update: print(update.phase),
        ... )
        >>> result = await client.start({"query": "hello"})
    """

    def __init__(
        self,
        endpoint: str | Callable[[Any], str],
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        retry: RetryConfig | None = None,
        timeout: TimeoutConfig | None = None,
        breaker: CircuitBreaker | None = None,
        initial_phase: str = "idle",
        complete_phase: str = UpdatePhase.COMPLETE.value,
        error_phase: str = UpdatePhase.ERROR.value,
        reconnecting_phase: str | None = None,
        on_update: Callable[[StreamUpdate], None] | None = None,
        on_complete: Callable[[Any], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        extract_result: Callable[[StreamUpdate], Any] | None = None,
        extract_error: Callable[[StreamUpdate], str | None] | None = None,
        is_complete: Callable[[StreamUpdate], bool] | None = None,
        is_error: Callable[[StreamUpdate], bool] | None = None,
        stream_query_param: bool = True,
        http_client: httpx.AsyncClient | None = None,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: URL, or a callable building the URL from the payload.
            method: HTTP method; the payload is sent as a JSON body unless
                it is GET.
            headers: Extra request headers.
            retry: Reconnection schedule.
            timeout: Request and idle deadlines for each attempt.
            breaker: Breaker wrapping the whole retry loop, typically
                shared through a :class:`CircuitBreakerRegistry`.
            initial_phase: Phase reported before the first update.
            complete_phase: Phase tag that carries the final result.
            error_phase: Phase tag that carries a server-side error.
            reconnecting_phase: Phase shown while waiting to reconnect.
            on_update: Called with every decoded update.
            on_complete: Called with the final result.
            on_error: Called with the error message when the stream fails.
            extract_result: Pulls the result out of a completion update.
            extract_error: Pulls the message out of an error update.
            is_complete: Decides whether an update completes the stream.
            is_error: Decides whether an update reports an error.
            stream_query_param: Append ``stream=true`` to the URL.
            http_client: Client to send requests with; one is created per
                :meth:`start` when omitted.
            preview_chars: Raw payload length kept for parse failures.
        """
        self._endpoint = endpoint
        self._method = method.upper()
        self._headers = headers or {}
        self._retry = retry
        self._timeout = timeout or DEFAULT_TIMEOUT_CONFIG
        self._breaker = breaker
        self._initial_phase = initial_phase
        self._reconnecting_phase = reconnecting_phase
        self._on_update = on_update
        self._on_complete = on_complete
        self._on_error = on_error
        self._extract_result = extract_result or (lambda update: update.result)
        self._extract_error = extract_error or (lambda update: update.error)
        self._is_complete = is_complete or (lambda update: update.phase == complete_phase)
        self._is_error = is_error or (lambda update: update.phase == error_phase)
        self._stream_query_param = stream_query_param
        self._http_client = http_client
        self._preview_chars = preview_chars

        self._state = SSEStreamState(phase=initial_phase)
        self._token: CancellationToken | None = None

    @property
    def state(self) -> SSEStreamState:
        """A copy of the current state."""
        return replace(self._state)

    @property
    def is_streaming(self) -> bool:
        return self._state.is_streaming

    async def start(self, payload: Any = None) -> Any:
        """Open the stream and consume it until completion.

        Any stream already running on this client is cancelled first.

        Args:
            payload: Request body (JSON) and argument for a callable endpoint.

        Returns:
            The extracted result, or None if the stream ended without one
            or was cancelled.

        Raises:
            CircuitBreakerOpenError: If the breaker refuses the call.
            SSEStreamError: If the server reports an error update.
            StreamHTTPError: On a non-2xx response.
            StreamTimeoutError: If retries are exhausted on a timeout.
        """
        if self._token is not None:
            self._token.cancel("Superseded by a new stream")
        token = CancellationToken()
        self._token = token

        self._state = SSEStreamState(phase=self._initial_phase, is_streaming=True)

        manager = ReconnectionManager(self._retry, on_reconnecting=self._on_reconnecting)

        async def run() -> Any:
            return await manager.execute(lambda t: self._attempt(payload, t), token)

        try:
            if self._breaker is not None:
                return await self._breaker.execute(run)
            return await run()
        except Exception as e:
            if is_cancellation_error(e) or token.cancelled:
                logger.debug("stream_cancelled", error=str(e))
                self._state.is_streaming = False
                return None

            message = str(e) or "Stream failed"
            logger.warning("stream_failed", error=message, error_type=type(e).__name__)
            self._state.error = message
            self._state.is_streaming = False
            if self._on_error is not None:
                self._on_error(message)
            raise
        finally:
            if self._token is token:
                self._token = None

    def cancel(self) -> None:
        """Cancel the running stream, if any."""
        if self._token is not None:
            self._token.cancel("Stream cancelled")
            self._token = None
        self._state.is_streaming = False

    def reset(self) -> None:
        """Cancel the running stream and restore the initial state."""
        if self._token is not None:
            self._token.cancel("Stream reset")
            self._token = None
        self._state = SSEStreamState(phase=self._initial_phase)

    def _on_reconnecting(self, event: ReconnectionEvent) -> None:
        self._state.reconnection_info = ReconnectionInfo(
            attempt=event.attempt,
            max_attempts=event.max_attempts,
            retry_delay_ms=event.delay_ms,
        )
        if self._reconnecting_phase is None:
            return

        self._state.phase = self._reconnecting_phase
        if self._on_update is not None:
            self._on_update(
                StreamUpdate(
                    phase=self._reconnecting_phase,
                    reconnect_attempt=event.attempt,
                    max_attempts=event.max_attempts,
                    retry_delay_ms=int(event.delay_ms),
                )
            )

    def _url(self, payload: Any) -> str:
        if callable(self._endpoint):
            return self._endpoint(payload)
        return self._endpoint

    async def _attempt(self, payload: Any, token: CancellationToken | None) -> Any:
        # The request deadline spans connect and the full read
        request = RequestTimeout(self._timeout.request_ms, token)
        try:
            return await request.token.guard(self._stream_once(payload))
        finally:
            request.clear()

    async def _stream_once(self, payload: Any) -> Any:
        if self._http_client is not None:
            return await self._consume(self._http_client, payload)
        async with httpx.AsyncClient(timeout=None) as client:
            return await self._consume(client, payload)

    async def _consume(self, client: httpx.AsyncClient, payload: Any) -> Any:
        url = self._url(payload)
        params = {"stream": "true"} if self._stream_query_param else None
        body = payload if self._method != "GET" else None
        headers = {"Accept": "text/event-stream", **self._headers}

        final: dict[str, Any] = {}

        def handle(message: Any) -> None:
            try:
                update = StreamUpdate.model_validate(message)
            except ValidationError:
                logger.warning("invalid_stream_update", payload=str(message)[: self._preview_chars])
                return
            self._apply_update(update, final)

        def on_parse_error(error: Exception, raw: str) -> None:
            logger.warning("sse_parse_error", error=str(error), raw=raw)

        parser = SSEParser(handle, on_parse_error, preview_chars=self._preview_chars)

        logger.debug("stream_request", method=self._method, url=url)
        async with client.stream(
            self._method, url, params=params, json=body, headers=headers
        ) as response:
            if not response.is_success:
                await response.aread()
                raise StreamHTTPError(self._http_error_message(response), response.status_code)

            await read_stream_with_idle_timeout(response.aiter_bytes(), self._timeout, parser.feed)

        return final.get("result")

    @staticmethod
    def _http_error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return f"HTTP {response.status_code}"

    def _apply_update(self, update: StreamUpdate, final: dict[str, Any]) -> None:
        if self._on_update is not None:
            self._on_update(update)

        self._state.phase = str(update.phase)
        if update.message is not None:
            self._state.phase_message = update.message
        self._state.reconnection_info = None

        if self._is_complete(update):
            result = self._extract_result(update)
            if result is not None:
                final["result"] = result
                self._state.result = result
                self._state.is_streaming = False
                if self._on_complete is not None:
                    self._on_complete(result)

        if self._is_error(update):
            message = self._extract_error(update) or "Unknown error"
            raise SSEStreamError(message, update.to_wire())


__all__ = [
    "ReconnectionInfo",
    "SSEStreamClient",
    "SSEStreamState",
    "StreamHTTPError",
]
