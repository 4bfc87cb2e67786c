"""jobrelay CLI.

Typer app assembly. Global options are handled by the ``main`` callback and
stored in ``helpers``; commands live in ``cli/commands``:

    cli/
    ├── __init__.py       # app assembly
    ├── helpers.py        # global option state, config loading
    ├── output.py         # Rich formatting
    └── commands/
        ├── serve.py      # serve
        ├── maintenance.py  # sweep, inspect
        └── config_cmd.py   # config
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from jobrelay import __version__

from . import helpers as helpers
from .commands import config, inspect, serve, sweep
from .output import console

app = typer.Typer(
    name="jobrelay",
    help="Job orchestration and live event streaming for remote browser workers",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"jobrelay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Orchestrator config file (default: ~/.jobrelay/config.yaml)",
            envvar="JOBRELAY_CONFIG",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="JOBRELAY_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            help="Path for rotating log file output",
            envvar="JOBRELAY_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            help="Log format: json or console",
            envvar="JOBRELAY_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """jobrelay - launch remote workers, track their jobs, stream their events."""
    settings = helpers.get_settings()
    settings.config_file = config_file
    if log_level:
        level = log_level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
        settings.log_level = level  # type: ignore[assignment]
    if log_format:
        if log_format not in ("json", "console"):
            raise typer.BadParameter(f"Unknown log format: {log_format}", param_hint="--log-format")
        settings.log_format = log_format  # type: ignore[assignment]
    settings.log_file = log_file


app.command()(serve)
app.command()(sweep)
app.command()(inspect)
app.command()(config)


__all__ = ["app", "main"]
