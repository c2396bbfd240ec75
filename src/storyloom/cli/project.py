"""Project management CLI commands.

This module provides CLI commands for creating projects and adjusting
their scheduling settings.
"""

from __future__ import annotations

import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from storyloom.database.models.project import Project
from storyloom.database.queries.project import (
    create_project,
    list_projects,
    require_project,
    update_project_settings,
)

app = typer.Typer(help="Project management commands")
console = Console()


def _mode(project: Project) -> str:
    if project.burst_mode is None:
        return "default"
    return "burst" if project.burst_mode else "serial"


def _project_dict(project: Project) -> dict[str, object]:
    return {
        "id": str(project.id),
        "name": project.name,
        "short_code": project.short_code,
        "story_counter": project.story_counter,
        "burst_mode": project.burst_mode,
        "max_parallel_stories": project.max_parallel_stories,
        "stale_threshold_minutes": project.stale_threshold_minutes,
    }


@app.command()
def create(
    name: Annotated[str, typer.Argument(help="Project name")],
    short_code: Annotated[str, typer.Argument(help="Story id prefix, e.g. SL")],
    burst: Annotated[
        Optional[bool],
        typer.Option("--burst/--serial", help="Admit several stories per pass"),
    ] = None,
    max_parallel: Annotated[
        Optional[int],
        typer.Option("--max-parallel", help="Stories admitted per pass in burst mode"),
    ] = None,
    stale_threshold: Annotated[
        Optional[int],
        typer.Option("--stale-threshold", help="Minutes of inactivity before a story is stale"),
    ] = None,
) -> None:
    """Create a new project.

    Args:
        name: Human-readable project name
        short_code: Namespace prefix for story ids
        burst: Enable or disable burst mode; unset uses the configured default
        max_parallel: Optional admission cap
        stale_threshold: Optional staleness threshold in minutes
    """
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()

    async def _create() -> Project:
        async with ctx.session_factory() as session:
            return await create_project(
                session,
                name=name,
                short_code=short_code,
                burst_mode=burst,
                max_parallel_stories=max_parallel,
                stale_threshold_minutes=stale_threshold,
            )

    project = run_command(_create(), "creating project")

    panel = Panel(
        f"[green]Project created successfully![/green]\n\n"
        f"[bold]Name:[/bold] {project.name}\n"
        f"[bold]Short code:[/bold] {project.short_code}\n"
        f"[bold]Mode:[/bold] {_mode(project)}",
        title="Project Created",
        border_style="green",
    )
    console.print(panel)


@app.command("list")
def list_command(
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """List projects."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()

    async def _list() -> list[Project]:
        async with ctx.session_factory() as session:
            return await list_projects(session)

    projects = run_command(_list(), "listing projects")

    if as_json:
        typer.echo(json.dumps([_project_dict(p) for p in projects], indent=2))
        return

    if not projects:
        console.print("[yellow]No projects found[/yellow]")
        return

    table = Table(title="Projects")
    table.add_column("Code", style="cyan", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Stories", justify="right")
    table.add_column("Mode", style="magenta")
    table.add_column("Max parallel", justify="right", style="dim")
    table.add_column("Stale after", justify="right", style="dim")

    for p in projects:
        table.add_row(
            p.short_code,
            p.name,
            str(p.story_counter),
            _mode(p),
            str(p.max_parallel_stories) if p.max_parallel_stories else "default",
            f"{p.stale_threshold_minutes}m" if p.stale_threshold_minutes else "default",
        )
    console.print(table)


@app.command()
def configure(
    short_code: Annotated[str, typer.Argument(help="Project short code")],
    burst: Annotated[
        Optional[bool],
        typer.Option("--burst/--serial", help="Admit several stories per pass"),
    ] = None,
    max_parallel: Annotated[
        Optional[int],
        typer.Option("--max-parallel", help="Stories admitted per pass in burst mode"),
    ] = None,
    stale_threshold: Annotated[
        Optional[int],
        typer.Option("--stale-threshold", help="Minutes of inactivity before a story is stale"),
    ] = None,
) -> None:
    """Change a project's scheduling settings."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()

    async def _configure() -> Project:
        async with ctx.session_factory() as session:
            project = await require_project(session, short_code)
            return await update_project_settings(
                session,
                project,
                burst_mode=burst,
                max_parallel_stories=max_parallel,
                stale_threshold_minutes=stale_threshold,
            )

    project = run_command(_configure(), "configuring project")
    console.print(
        f"[green]Updated {project.short_code}:[/green] "
        f"mode={_mode(project)} "
        f"max_parallel={project.max_parallel_stories or 'default'} "
        f"stale_threshold={project.stale_threshold_minutes or 'default'}"
    )
