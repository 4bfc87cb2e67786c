"""``jobrelay config``: show the effective orchestrator configuration."""

from __future__ import annotations

from typing import Any

import typer
import yaml
from rich.table import Table

from ..helpers import load_cli_config, resolve_config_path
from ..output import console

_SECRET_KEYS = ("url",)


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten a nested dict into dot-notation keys."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value:
            result.update(_flatten(value, full_key))
        else:
            result[full_key] = value
    return result


def _file_keys(path: Any) -> set[str]:
    if not path.exists():
        return set()
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return set(_flatten(data)) if isinstance(data, dict) else set()


def config(
    as_yaml: bool = typer.Option(False, "--yaml", help="Print as YAML instead of a table"),
) -> None:
    """Display the effective configuration (file values over defaults).

    Examples:
        jobrelay config
        jobrelay --config ./jobrelay.yaml config --yaml
    """
    effective = load_cli_config(console)
    data = effective.model_dump(mode="json", exclude={"config_file"})

    if as_yaml:
        console.print(
            yaml.safe_dump(data, sort_keys=False), highlight=False, markup=False, soft_wrap=True,
        )
        return

    path = resolve_config_path()
    from_file = _file_keys(path)
    source_label = f"[dim]{path}[/dim]" if path.exists() else "[dim](defaults)[/dim]"
    console.print(f"\nOrchestrator configuration: {source_label}\n")

    table = Table(show_header=True, header_style="bold cyan", padding=(0, 1))
    table.add_column("Key", style="white", min_width=30)
    table.add_column("Value", style="green")
    table.add_column("Source", style="dim")
    for key, value in _flatten(data).items():
        shown = "***" if key.endswith(_SECRET_KEYS) and value and "@" in str(value) else value
        table.add_row(key, str(shown), "file" if key in from_file else "default")
    console.print(table)
