"""``jobrelay serve``: run the orchestrator API under uvicorn."""

from __future__ import annotations

import typer
import uvicorn
from rich.panel import Panel

from jobrelay.api import create_app
from jobrelay.orchestrator.service import Orchestrator

from ..helpers import configure_cli_logging, load_cli_config
from ..output import console


def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    no_sweeps: bool = typer.Option(
        False,
        "--no-sweeps",
        help="Disable the background log inspector and stale-job reaper",
    ),
) -> None:
    """Start the orchestrator API, event bus and background sweeps.

    Examples:
        jobrelay serve
        jobrelay serve --host 0.0.0.0 --port 9000
        jobrelay --config ./jobrelay.yaml serve
    """
    config = load_cli_config(console)
    if no_sweeps:
        config.inspector.enabled = False
        config.reaper.enabled = False
    configure_cli_logging(config)

    orchestrator = Orchestrator(config)
    app = create_app(orchestrator)

    console.print(
        Panel(
            f"[bold]jobrelay[/bold]\n\n"
            f"API: http://{host}:{port}\n"
            f"Docs: http://{host}:{port}/docs\n"
            f"Events: {'redis ' + config.redis.url if config.redis.enabled else 'in-process'}\n"
            f"Store: {config.store.db_path}\n\n"
            f"[dim]Press Ctrl+C to stop[/dim]",
            title="Starting Server",
        )
    )

    try:
        uvicorn.run(app, host=host, port=port, log_level=config.log_level)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped.[/yellow]")
