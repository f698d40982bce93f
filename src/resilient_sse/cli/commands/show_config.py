"""CLI show-config command: print the effective settings."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from resilient_sse.cli.main import CLIContext

console = Console()


def flatten(values: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    """Flatten nested settings into dotted keys."""
    rows: list[tuple[str, Any]] = []
    for key, value in values.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            rows.extend(flatten(value, f"{name}."))
        else:
            rows.append((name, value))
    return rows


def show_config_command(ctx: CLIContext, *, as_json: bool = False) -> None:
    """Print settings as a table, or as JSON for scripting."""
    values = ctx.settings.model_dump(mode="json")

    if as_json:
        print(json.dumps(values, indent=2))
        return

    table = Table(title="resilient-sse Settings", show_header=True, header_style="bold")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    for name, value in flatten(values):
        table.add_row(name, str(value))
    console.print(table)
