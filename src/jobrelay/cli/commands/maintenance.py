"""One-shot maintenance commands: ``sweep`` and ``inspect``.

Both open the job store directly (no server needed) and run the same code
paths as the background sweeps.
"""

from __future__ import annotations

import asyncio

import typer

from jobrelay.orchestrator.exceptions import NotFoundError
from jobrelay.orchestrator.inspector import Inspection
from jobrelay.orchestrator.service import Orchestrator

from ..helpers import configure_cli_logging, load_cli_config
from ..output import console, print_inspection


def sweep() -> None:
    """Run one stale-job reaper pass followed by one log inspector pass."""
    config = load_cli_config(console)
    configure_cli_logging(config)

    async def _run() -> tuple[int, int]:
        orchestrator = Orchestrator(config)
        await orchestrator.start(background=False)
        try:
            reaped = await orchestrator.reaper.sweep()
            inspections = await orchestrator.inspector.sweep()
        finally:
            await orchestrator.shutdown()
        return reaped.total, sum(1 for i in inspections if i.applied)

    reaped, inferred = asyncio.run(_run())
    console.print(
        f"Reaped [bold]{reaped}[/bold] stale job(s); "
        f"inspector failed [bold]{inferred}[/bold] dead worker(s)."
    )


def inspect(
    job_id: str = typer.Argument(..., help="Job to inspect"),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report the verdict without failing the job",
    ),
    tail: int = typer.Option(20, "--tail", "-n", help="Log lines to show"),
) -> None:
    """Read a job's worker logs and show the inspector's verdict."""
    config = load_cli_config(console)
    configure_cli_logging(config)

    async def _run() -> Inspection:
        orchestrator = Orchestrator(config)
        await orchestrator.start(background=False)
        try:
            job = await orchestrator.lifecycle.get_job(job_id)
            return await orchestrator.inspector.inspect(job, apply=not dry_run)
        finally:
            await orchestrator.shutdown()

    try:
        inspection = asyncio.run(_run())
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from None
    print_inspection(inspection, tail=tail)
