"""CLI listen command: consume a stream through SSEStreamClient."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import httpx
import typer
from rich.console import Console

from resilient_sse.client import SSEStreamClient
from resilient_sse.reliability.registry import CircuitBreakerRegistry
from resilient_sse.streaming.events import StreamUpdate, UpdatePhase

if TYPE_CHECKING:
    from resilient_sse.cli.main import CLIContext

console = Console()


def print_update(update: StreamUpdate, error_phase: str = UpdatePhase.ERROR.value) -> None:
    """Print one update as a single line, highlighting ``error_phase`` in red."""
    color = "red" if update.phase == error_phase else "cyan"
    line = f"[{color}]{update.phase}[/{color}]"
    if update.message:
        line += f" {update.message}"
    if update.reconnect_attempt is not None:
        line += f" [dim](attempt {update.reconnect_attempt}/{update.max_attempts})[/dim]"
    console.print(line)


def parse_body(data: str | None) -> Any:
    """Decode the ``--data`` option.

    Raises:
        typer.Exit: If the body is not valid JSON.
    """
    if data is None:
        return None
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON body:[/red] {e}")
        raise typer.Exit(1) from e


def listen_command(
    ctx: CLIContext,
    url: str,
    *,
    method: str = "GET",
    data: str | None = None,
    max_retries: int | None = None,
    idle_ms: int | None = None,
    request_ms: int | None = None,
    stream_query_param: bool = False,
) -> None:
    """Consume ``url`` until it completes, printing every update.

    Retry and timeout settings start from the CLI context's settings;
    explicit options override them. The endpoint's host names the shared
    circuit breaker.

    Raises:
        typer.Exit: With code 1 if the stream fails.
    """
    settings = ctx.settings
    body = parse_body(data)

    retry = settings.retry
    if max_retries is not None:
        retry = retry.model_copy(update={"max_retries": max_retries})

    timeout_overrides = {
        key: value
        for key, value in (("idle_ms", idle_ms), ("request_ms", request_ms))
        if value is not None
    }
    timeout = settings.timeout.model_copy(update=timeout_overrides)

    async def run() -> Any:
        registry = CircuitBreakerRegistry(ttl_ms=settings.breaker_ttl_ms)
        try:
            breaker = registry.get_or_create(
                httpx.URL(url).host or url, config=settings.circuit_breaker
            )
            client = SSEStreamClient(
                url,
                method=method,
                retry=retry,
                timeout=timeout,
                breaker=breaker,
                complete_phase=settings.complete_phase,
                error_phase=settings.error_phase,
                reconnecting_phase=UpdatePhase.RECONNECTING.value,
                on_update=lambda update: print_update(update, settings.error_phase),
                stream_query_param=stream_query_param,
                preview_chars=settings.parse_error_preview_chars,
            )
            return await client.start(body)
        finally:
            registry.clear()

    ctx.logger.debug(f"Listening to {url} ({method})")
    try:
        result = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]✗ Stream failed:[/red] {e}")
        raise typer.Exit(1) from e

    if result is None:
        console.print("[yellow]Stream ended without a result[/yellow]")
        return

    console.print("[green]✓ Result[/green]")
    console.print_json(data=result)
