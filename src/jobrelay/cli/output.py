"""Rich output formatting for the jobrelay CLI."""

from __future__ import annotations

from rich.console import Console

from jobrelay.orchestrator.inspector import Inspection, InspectionVerdict

# Shared console instance
console = Console()

VERDICT_COLORS: dict[InspectionVerdict, str] = {
    InspectionVerdict.ALIVE: "green",
    InspectionVerdict.FAILED: "red",
    InspectionVerdict.UNDETERMINED: "yellow",
}


def print_inspection(inspection: Inspection, *, tail: int = 20) -> None:
    color = VERDICT_COLORS[inspection.verdict]
    console.print(
        f"Job [bold]{inspection.job_id}[/bold]: "
        f"[{color}]{inspection.verdict.value}[/{color}]"
        + (f" ({inspection.reason})" if inspection.reason else "")
    )
    if inspection.applied:
        console.print("[red]Job marked failed.[/red]")
    for line in inspection.logs[-tail:]:
        console.print(f"  [dim]{line.message.rstrip()}[/dim]", highlight=False)


__all__ = ["console", "print_inspection"]
