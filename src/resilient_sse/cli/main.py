"""CLI main module for resilient-sse.

This module provides the primary entry point for the resilient-sse
command-line interface using Typer. It handles settings loading, logging
setup, and dispatches to subcommands.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Annotated

import typer

from resilient_sse import __version__
from resilient_sse.config import Settings, get_settings
from resilient_sse.logging import setup_logging

if TYPE_CHECKING:
    import logging

app = typer.Typer(
    name="resilient-sse",
    help="resilient-sse: Consume and inspect Server-Sent Events streams.",
    add_completion=False,
    rich_markup_mode="rich",
)

# Global state for CLI context
_cli_context: CLIContext | None = None


class CLIContext:
    """Context object passed to CLI commands.

    Attributes:
        settings: Application settings instance
        logger: Configured logger instance
        verbose: Verbosity level (0=normal, 1+=debug)
    """

    def __init__(self, settings: Settings, logger: logging.Logger, verbose: int = 0) -> None:
        self.settings = settings
        self.logger = logger
        self.verbose = verbose


def get_cli_context() -> CLIContext:
    """Get the current CLI context.

    Raises:
        typer.Exit: If context not initialized.
    """
    if _cli_context is None:
        typer.echo("Error: CLI context not initialized", err=True)
        raise typer.Exit(1)
    return _cli_context


def setup_logging_from_verbosity(verbosity: int, settings: Settings) -> logging.Logger:
    """Configure logging based on verbosity level (0=settings level, 1+=DEBUG)."""
    log_level = settings.log_level if verbosity == 0 else "DEBUG"
    return setup_logging(settings=settings, log_level=log_level)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"resilient-sse version {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose",
            "-v",
            count=True,
            help="Increase verbosity (-v for debug logging)",
        ),
    ] = 0,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = None,
) -> None:
    """resilient-sse: Consume and inspect Server-Sent Events streams.

    Settings come from RESILIENT_SSE_* environment variables or a .env file.
    """
    global _cli_context

    try:
        settings = get_settings()
    except Exception as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from e

    logger = setup_logging_from_verbosity(verbose, settings)
    _cli_context = CLIContext(settings=settings, logger=logger, verbose=verbose)

    if verbose > 0:
        logger.debug(f"CLI started with verbosity={verbose}")


@app.command()
def listen(
    url: Annotated[str, typer.Argument(help="Stream endpoint URL")],
    method: Annotated[
        str,
        typer.Option("--method", "-X", help="HTTP method: GET or POST"),
    ] = "GET",
    data: Annotated[
        str | None,
        typer.Option("--data", "-d", help="JSON request body (POST only)"),
    ] = None,
    max_retries: Annotated[
        int | None,
        typer.Option("--max-retries", help="Override the retry limit"),
    ] = None,
    idle_ms: Annotated[
        int | None,
        typer.Option("--idle-ms", help="Idle timeout in milliseconds (0 disables)"),
    ] = None,
    request_ms: Annotated[
        int | None,
        typer.Option("--request-ms", help="Request deadline in milliseconds (0 disables)"),
    ] = None,
    query_param: Annotated[
        bool,
        typer.Option("--stream-param/--no-stream-param", help="Append ?stream=true"),
    ] = False,
) -> None:
    """Consume a JSON-update stream and print each update.

    Examples:
        resilient-sse listen http://localhost:8000/events
        resilient-sse listen http://localhost:8000/analyze -X POST -d '{"q": "hi"}'
        resilient-sse listen http://localhost:8000/events --idle-ms 0 --max-retries 5
    """
    from resilient_sse.cli.commands.listen import listen_command

    ctx = get_cli_context()
    listen_command(
        ctx,
        url,
        method=method,
        data=data,
        max_retries=max_retries,
        idle_ms=idle_ms,
        request_ms=request_ms,
        stream_query_param=query_param,
    )


@app.command("show-config")
def show_config(
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the effective settings.

    Examples:
        resilient-sse show-config
        RESILIENT_SSE_RETRY__MAX_RETRIES=5 resilient-sse show-config --json
    """
    from resilient_sse.cli.commands.show_config import show_config_command

    ctx = get_cli_context()
    show_config_command(ctx, as_json=as_json)


def main() -> None:
    """Entry point for the console script, with graceful shutdown on interrupts."""
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("\nInterrupted by user", err=True)
        sys.exit(130)


__all__ = ["CLIContext", "app", "get_cli_context", "main"]
