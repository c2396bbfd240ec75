"""File reservation CLI commands.

This module provides CLI commands for setting, checking and clearing a
story's reservations, and for the request/release protocol that blocks
and resumes stories competing for the same files.
"""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from storyloom.logging import bind_story_context
from storyloom.orchestrator.reservations import (
    ReleaseOutcome,
    ReleaseResult,
    RequestOutcome,
    RequestResult,
    ReservationManager,
    ReservationReport,
)

app = typer.Typer(help="File reservation commands")
console = Console()


def _manager() -> ReservationManager:
    from storyloom.main import get_app_context

    ctx = get_app_context()
    return ReservationManager(ctx.session_factory, ctx.config.reservations)


def _print_report(report: ReservationReport) -> None:
    if not report.reserved_paths:
        console.print(f"[dim]{report.short_id} has no reservations[/dim]")
        return

    console.print(f"[bold]{report.short_id}[/bold] reserves:")
    for path in report.reserved_paths:
        marker = " [yellow](high conflict)[/yellow]" if path in report.high_conflict else ""
        console.print(f"  {path}{marker}")

    if not report.conflicts:
        console.print("[green]No overlaps with active stories[/green]")
        return

    table = Table(title="Overlaps with active stories")
    table.add_column("Holder", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Paths", style="red")
    for conflict in report.conflicts:
        table.add_row(conflict.holder, conflict.holder_status.value, ", ".join(conflict.paths))
    console.print(table)


@app.command("set")
def set_command(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    paths: Annotated[list[str], typer.Argument(help="Paths or glob patterns to reserve")],
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Replace a story's reservations and report overlaps."""
    from storyloom.main import run_command

    report = run_command(_manager().set_reservations(short_id, paths), "setting reservations")

    if as_json:
        typer.echo(report.model_dump_json(indent=2))
        return
    _print_report(report)


@app.command()
def check(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Report a story's overlaps with every active story.

    Exits with status 1 when any overlap is found.
    """
    from storyloom.main import run_command

    report = run_command(_manager().check(short_id), "checking reservations")

    if as_json:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _print_report(report)

    if report.conflicts:
        raise typer.Exit(code=1)


@app.command()
def clear(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
) -> None:
    """Drop a story's reservations without resuming waiting stories."""
    from storyloom.main import run_command

    cleared = run_command(_manager().clear(short_id), "clearing reservations")
    if cleared:
        console.print(f"[green]Cleared {len(cleared)} reservation(s) on {short_id.upper()}[/green]")
    else:
        console.print(f"[dim]{short_id.upper()} had no reservations[/dim]")


@app.command()
def request(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    path: Annotated[str, typer.Argument(help="Path wanted")],
    worker: Annotated[
        Optional[str],
        typer.Option("--worker", "-w", help="Worker asking for the path"),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Ask for a path; block the story if another active story holds it."""
    from storyloom.main import run_command

    bind_story_context(short_id=short_id.upper(), worker=worker)
    result: RequestResult = run_command(
        _manager().request(short_id, path, worker=worker), "requesting path"
    )

    if as_json:
        typer.echo(result.model_dump_json(indent=2))
        return

    if result.outcome == RequestOutcome.FREE:
        console.print(f"[green]{result.path} is free[/green]")
    else:
        console.print(
            f"[red]{result.short_id} blocked:[/red] {result.path} is held by {result.holder}"
        )


@app.command()
def release(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    worker: Annotated[
        Optional[str],
        typer.Option("--worker", "-w", help="Worker releasing the files"),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Release a story's reservations and resume stories waiting on them."""
    from storyloom.main import run_command

    bind_story_context(short_id=short_id.upper(), worker=worker)
    result: ReleaseResult = run_command(
        _manager().release(short_id, worker=worker), "releasing reservations"
    )

    if as_json:
        typer.echo(result.model_dump_json(indent=2))
        return

    console.print(
        f"[green]Released {len(result.released_paths)} reservation(s) on {result.short_id}[/green]"
    )
    for item in result.items:
        if item.outcome == ReleaseOutcome.UNBLOCKED:
            console.print(f"  [green]{item.short_id} unblocked[/green] -> {item.status.value}")
        elif item.outcome == ReleaseOutcome.REASSIGNED:
            console.print(f"  [yellow]{item.short_id} still waiting[/yellow] on {item.holder}")
        else:
            console.print(f"  [red]{item.short_id} {item.outcome.value}:[/red] {item.detail}")
