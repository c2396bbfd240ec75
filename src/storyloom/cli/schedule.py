"""Admission scheduling CLI command.

Runs one admission pass over a project's backlog and shows which stories
may start now and which are queued behind reservation overlaps.
"""

from __future__ import annotations

import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from storyloom.orchestrator.scheduler import AdmissionPlan, AdmissionScheduler, Assignment

console = Console()


def schedule(
    project: Annotated[str, typer.Argument(help="Project short code")],
    max_parallel: Annotated[
        Optional[int],
        typer.Option("--max-parallel", "-m", help="Override the admission cap"),
    ] = None,
    assign: Annotated[
        bool,
        typer.Option("--assign", help="Assign a worker to each admitted story"),
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Decide which backlog stories can start now."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()
    scheduler = AdmissionScheduler(
        ctx.session_factory,
        ctx.config.scheduler,
        ctx.config.routing,
    )

    async def _schedule() -> tuple[AdmissionPlan, list[Assignment]]:
        plan = await scheduler.plan(project, max_parallel=max_parallel)
        assignments = await scheduler.assign(plan) if assign else []
        return plan, assignments

    plan, assignments = run_command(_schedule(), "scheduling")

    if as_json:
        payload = plan.model_dump(mode="json")
        payload["assignments"] = [a.model_dump(mode="json") for a in assignments]
        typer.echo(json.dumps(payload, indent=2))
        return

    mode = f"burst, max {plan.max_parallel}" if plan.burst_mode else "serial"
    console.print(f"[bold]Admission pass[/bold] ({mode})")
    if plan.active:
        console.print(f"[dim]Active:[/dim] {', '.join(plan.active)}")

    if not plan.assignable and not plan.queued:
        console.print("[yellow]Backlog is empty[/yellow]")
        return

    assigned = {a.short_id: a.worker for a in assignments}
    if plan.assignable:
        table = Table(title="Assignable")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Pri", justify="center")
        table.add_column("Title", style="bold")
        table.add_column("Worker", style="blue")
        table.add_column("Files", style="dim")
        for story in plan.assignable:
            table.add_row(
                story.short_id,
                story.priority.value,
                story.title,
                assigned.get(story.short_id) or story.assigned_worker or "-",
                ", ".join(story.reserved_paths) or "-",
            )
        console.print(table)

    if plan.queued:
        table = Table(title="Queued (file overlaps)")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Pri", justify="center")
        table.add_column("Waiting on", style="red")
        for queued in plan.queued:
            detail = "; ".join(f"{c.holder} ({', '.join(c.paths)})" for c in queued.conflicts)
            table.add_row(queued.story.short_id, queued.story.priority.value, detail)
        console.print(table)

    if plan.unconsidered:
        console.print(f"[dim]Not considered this pass:[/dim] {', '.join(plan.unconsidered)}")
