"""Liveness watchdog CLI command.

Reports stories in flight that have gone quiet, and optionally leaves a
``[WATCHDOG]`` note on each.
"""

from __future__ import annotations

import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from storyloom.orchestrator.watchdog import FlagResult, LivenessWatchdog, WatchdogReport

console = Console()


def watchdog(
    project: Annotated[str, typer.Argument(help="Project short code")],
    threshold: Annotated[
        Optional[int],
        typer.Option("--threshold", "-t", help="Stale threshold in minutes (override)"),
    ] = None,
    flag: Annotated[
        bool,
        typer.Option("--flag", help="Add a watchdog note to each stale story"),
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Report stories with no activity past the threshold."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()
    dog = LivenessWatchdog(ctx.session_factory, ctx.config.scheduler)

    async def _scan() -> tuple[WatchdogReport, list[FlagResult]]:
        report = await dog.scan(project, threshold_minutes=threshold)
        flags = await dog.flag(report) if flag else []
        return report, flags

    report, flags = run_command(_scan(), "running watchdog")

    if as_json:
        payload = {
            "stale": [s.model_dump(mode="json") for s in report.stale],
            "thresholdMinutes": report.threshold_minutes,
            "activeCount": report.active_count,
        }
        if flag:
            payload["flags"] = [f.model_dump(mode="json") for f in flags]
        typer.echo(json.dumps(payload, indent=2))
        return

    if not report.stale:
        console.print(
            f"[green]All {report.active_count} active stories have activity within "
            f"{report.threshold_minutes} minutes[/green]"
        )
        return

    table = Table(title=f"Stale stories (> {report.threshold_minutes} min)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Worker", style="blue")
    table.add_column("Idle", justify="right", style="red")
    table.add_column("Last activity", style="dim")
    for stale in report.stale:
        table.add_row(
            stale.short_id,
            stale.status.value,
            stale.assigned_worker or "-",
            f"{stale.minutes_since_activity}m",
            stale.activity_source.value,
        )
    console.print(table)

    flagged = [f.short_id for f in flags if f.flagged]
    failed = [f for f in flags if f.error]
    if flagged:
        console.print(f"[yellow]Flagged:[/yellow] {', '.join(flagged)}")
    for f in failed:
        console.print(f"[red]Could not flag {f.short_id}:[/red] {f.error}")
