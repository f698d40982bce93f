"""Tests for CLI main module."""
from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import typer
from typer.testing import CliRunner

import resilient_sse.cli.main as cli_main
import resilient_sse.config as config_module
from resilient_sse import __version__
from resilient_sse.cli.commands.listen import print_update
from resilient_sse.cli.commands.show_config import flatten
from resilient_sse.cli.main import (
    CLIContext,
    app,
    get_cli_context,
    main,
    setup_logging_from_verbosity,
    version_callback,
)
from resilient_sse.client import StreamHTTPError
from resilient_sse.config import Settings
from resilient_sse.streaming.events import StreamUpdate

runner = CliRunner()


@pytest.fixture(autouse=True)
def reset_global_state(tmp_path, monkeypatch):
    """Isolate settings and CLI context between tests."""
    monkeypatch.chdir(tmp_path)
    config_module._settings = None
    cli_main._cli_context = None
    yield
    config_module._settings = None
    cli_main._cli_context = None


@pytest.fixture
def mock_client():
    """Replace the stream client used by the listen command."""
    with patch("resilient_sse.cli.commands.listen.SSEStreamClient") as client_cls:
        client_cls.return_value.start = AsyncMock(return_value={"answer": 42})
        yield client_cls


class TestCLIContext:
    """Tests for CLIContext class."""

    def test_cli_context_initialization(self) -> None:
        """Test CLIContext stores its attributes."""
        settings = MagicMock(spec=Settings)
        logger = MagicMock(spec=logging.Logger)

        ctx = CLIContext(settings=settings, logger=logger, verbose=2)

        assert ctx.settings is settings
        assert ctx.logger is logger
        assert ctx.verbose == 2

    def test_get_cli_context_raises_when_not_initialized(self) -> None:
        """Test get_cli_context exits when no command set it up."""
        with pytest.raises(typer.Exit):
            get_cli_context()


class TestSetupLoggingFromVerbosity:
    """Tests for setup_logging_from_verbosity."""

    def test_verbosity_zero_uses_settings_level(self) -> None:
        """Test verbosity 0 keeps the configured level."""
        settings = Settings(log_level="WARNING")

        with patch("resilient_sse.cli.main.setup_logging") as mock_setup:
            setup_logging_from_verbosity(0, settings)

        mock_setup.assert_called_once_with(settings=settings, log_level="WARNING")

    def test_verbosity_one_uses_debug(self) -> None:
        """Test -v switches to DEBUG."""
        settings = Settings()

        with patch("resilient_sse.cli.main.setup_logging") as mock_setup:
            setup_logging_from_verbosity(1, settings)

        mock_setup.assert_called_once_with(settings=settings, log_level="DEBUG")


class TestVersion:
    """Tests for the version option."""

    def test_version_callback_false_does_nothing(self) -> None:
        """Test the callback ignores a false value."""
        version_callback(False)

    def test_version_callback_true_raises_exit(self) -> None:
        """Test the callback exits after printing."""
        with pytest.raises(typer.Exit):
            version_callback(True)

    def test_version_flag_shows_version(self) -> None:
        """Test --version prints the package version."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"resilient-sse version {__version__}" in result.stdout

    def test_help_flag_shows_help(self) -> None:
        """Test --help lists the commands."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "listen" in result.stdout
        assert "show-config" in result.stdout


class TestShowConfig:
    """Tests for the show-config command."""

    def test_json_output(self) -> None:
        """Test --json prints every setting."""
        result = runner.invoke(app, ["show-config", "--json"])

        assert result.exit_code == 0
        values = json.loads(result.stdout)
        assert values["retry"]["max_retries"] == 3
        assert values["timeout"]["idle_ms"] == 30000
        assert values["complete_phase"] == "complete"

    def test_environment_overrides(self, monkeypatch) -> None:
        """Test environment variables show up in the output."""
        monkeypatch.setenv("RESILIENT_SSE_RETRY__MAX_RETRIES", "5")

        result = runner.invoke(app, ["show-config", "--json"])

        assert json.loads(result.stdout)["retry"]["max_retries"] == 5

    def test_table_output(self) -> None:
        """Test the default output is a table of dotted keys."""
        result = runner.invoke(app, ["show-config"])

        assert result.exit_code == 0
        assert "resilient-sse Settings" in result.stdout
        assert "retry.max_retries" in result.stdout

    def test_flatten(self) -> None:
        """Test nested values are flattened into dotted keys."""
        rows = flatten({"a": 1, "b": {"c": 2, "d": {"e": 3}}})

        assert rows == [("a", 1), ("b.c", 2), ("b.d.e", 3)]


class TestListen:
    """Tests for the listen command."""

    def test_prints_result(self, mock_client) -> None:
        """Test a completed stream prints its result."""
        result = runner.invoke(app, ["listen", "http://localhost:8000/events"])

        assert result.exit_code == 0
        assert '"answer": 42' in result.stdout
        mock_client.return_value.start.assert_awaited_once_with(None)

    def test_passes_options(self, mock_client) -> None:
        """Test CLI options reach the client."""
        result = runner.invoke(
            app,
            [
                "listen",
                "http://localhost:8000/analyze",
                "-X",
                "POST",
                "-d",
                '{"q": "hi"}',
                "--max-retries",
                "5",
                "--idle-ms",
                "0",
                "--stream-param",
            ],
        )

        assert result.exit_code == 0
        args, kwargs = mock_client.call_args
        assert args == ("http://localhost:8000/analyze",)
        assert kwargs["method"] == "POST"
        assert kwargs["retry"].max_retries == 5
        assert kwargs["timeout"].idle_ms == 0
        assert kwargs["timeout"].request_ms == 120000
        assert kwargs["stream_query_param"] is True
        assert kwargs["breaker"].name == "localhost"
        mock_client.return_value.start.assert_awaited_once_with({"q": "hi"})

    def test_no_result(self, mock_client) -> None:
        """Test a stream ending without a result is reported."""
        mock_client.return_value.start = AsyncMock(return_value=None)

        result = runner.invoke(app, ["listen", "http://localhost:8000/events"])

        assert result.exit_code == 0
        assert "Stream ended without a result" in result.stdout

    def test_failure_exits_with_error(self, mock_client) -> None:
        """Test a failed stream exits with code 1."""
        mock_client.return_value.start = AsyncMock(side_effect=StreamHTTPError("HTTP 503", 503))

        result = runner.invoke(app, ["listen", "http://localhost:8000/events"])

        assert result.exit_code == 1
        assert "Stream failed" in result.stdout
        assert "HTTP 503" in result.stdout

    def test_invalid_json_body(self, mock_client) -> None:
        """Test an invalid --data value exits before connecting."""
        result = runner.invoke(app, ["listen", "http://localhost:8000/events", "-d", "{bad"])

        assert result.exit_code == 1
        assert "Invalid JSON body" in result.stdout
        mock_client.assert_not_called()


class TestPrintUpdate:
    """Tests for update rendering in the listen command."""

    def test_custom_error_phase_is_red(self) -> None:
        """Test the configured error phase is highlighted, not the default one."""
        with patch("resilient_sse.cli.commands.listen.console") as console:
            print_update(StreamUpdate(phase="failed", error="boom"), "failed")
            print_update(StreamUpdate(phase="error"), "failed")

        lines = [c.args[0] for c in console.print.call_args_list]
        assert lines[0].startswith("[red]failed")
        assert lines[1].startswith("[cyan]error")

    def test_reconnect_attempt_shown(self) -> None:
        """Test reconnecting updates show the attempt counter."""
        with patch("resilient_sse.cli.commands.listen.console") as console:
            print_update(StreamUpdate(phase="reconnecting", reconnect_attempt=1, max_attempts=3))

        assert "(attempt 1/3)" in console.print.call_args.args[0]

    def test_listen_uses_settings_error_phase(self, mock_client, monkeypatch) -> None:
        """Test the listen command highlights the error phase from settings."""
        monkeypatch.setenv("RESILIENT_SSE_ERROR_PHASE", "failed")

        result = runner.invoke(app, ["listen", "http://localhost:8000/events"])

        assert result.exit_code == 0
        on_update = mock_client.call_args.kwargs["on_update"]
        with patch("resilient_sse.cli.commands.listen.console") as console:
            on_update(StreamUpdate(phase="failed"))
        assert console.print.call_args.args[0].startswith("[red]failed")


class TestMain:
    """Tests for main function."""

    def test_main_handles_keyboard_interrupt(self) -> None:
        """Test main exits with 130 on KeyboardInterrupt."""
        with patch("resilient_sse.cli.main.app", side_effect=KeyboardInterrupt()):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 130
