"""Story management CLI commands.

This module provides CLI commands for creating, inspecting and updating
stories, adding notes and sending worker heartbeats.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from storyloom.database.models.story import Complexity, Priority, Story, StoryNote, StoryStatus
from storyloom.database.queries.project import require_project
from storyloom.database.queries.story import (
    add_note,
    list_notes,
    list_stories,
    require_story,
    update_story,
)
from storyloom.logging import bind_story_context
from storyloom.orchestrator.allocator import StoryAllocator, StoryDraft
from storyloom.orchestrator.routing import normalise_tags, split_tags
from storyloom.orchestrator.state_machine import StoryStateMachine
from storyloom.orchestrator.watchdog import HeartbeatResult, record_heartbeat

app = typer.Typer(help="Story management commands")
console = Console()

STATUS_COLORS = {
    "ideas": "dim",
    "backlog": "white",
    "in-design": "cyan",
    "in-progress": "blue",
    "in-review": "magenta",
    "done": "green",
    "blocked": "red",
    "cancelled": "red dim",
}


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def story_dict(story: Story) -> dict[str, Any]:
    """Serialise a story for JSON output."""
    return {
        "id": str(story.id),
        "short_id": story.short_id,
        "title": story.title,
        "description": story.description,
        "status": story.status.value,
        "previous_status": story.previous_status.value if story.previous_status else None,
        "priority": story.priority.value,
        "complexity": story.complexity.value,
        "assigned_worker": story.assigned_worker,
        "reserved_paths": list(story.reserved_paths or []),
        "tags": list(story.tags or []),
        "blocked_reason": story.blocked_reason,
        "waiting_on_path": story.waiting_on_path,
        "last_heartbeat_at": (
            story.last_heartbeat_at.isoformat() if story.last_heartbeat_at else None
        ),
        "heartbeat_worker": story.heartbeat_worker,
        "heartbeat_message": story.heartbeat_message,
        "created_at": story.created_at.isoformat(),
        "updated_at": story.updated_at.isoformat(),
    }


@app.command()
def create(
    project: Annotated[str, typer.Argument(help="Project short code")],
    title: Annotated[str, typer.Argument(help="Story title")],
    description: Annotated[
        str,
        typer.Option("--description", "-d", help="Detailed description"),
    ] = "",
    priority: Annotated[
        Priority,
        typer.Option("--priority", "-p", help="Priority (P0 highest)"),
    ] = Priority.P2,
    complexity: Annotated[
        Complexity,
        typer.Option("--complexity", help="Size estimate"),
    ] = Complexity.M,
    tags: Annotated[
        Optional[str],
        typer.Option("--tags", "-t", help="Comma-separated capability tags"),
    ] = None,
    files: Annotated[
        Optional[str],
        typer.Option("--files", "-f", help="Comma-separated paths or globs to reserve"),
    ] = None,
    ideas: Annotated[
        bool,
        typer.Option("--ideas", help="Create in ideas instead of backlog"),
    ] = False,
    worker: Annotated[
        str,
        typer.Option("--worker", "-w", help="Who is creating the story"),
    ] = "user",
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Create a story with the next id in the project's namespace."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()

    async def _create() -> Story:
        draft = StoryDraft(
            title=title,
            description=description,
            priority=priority,
            complexity=complexity,
            status=StoryStatus.ideas if ideas else StoryStatus.backlog,
            tags=_split_csv(tags),
            reserved_paths=_split_csv(files),
        )
        allocator = StoryAllocator(ctx.session_factory, ctx.config.allocator)
        return await allocator.allocate(project, draft, worker=worker)

    story = run_command(_create(), "creating story")
    _, unrecognized = split_tags(story.tags or [])

    if as_json:
        payload = story_dict(story)
        payload["unrecognized_tags"] = unrecognized
        typer.echo(json.dumps(payload, indent=2))
        return

    panel = Panel(
        f"[green]Story created![/green]\n\n"
        f"[bold]ID:[/bold] {story.short_id}\n"
        f"[bold]Title:[/bold] {story.title}\n"
        f"[bold]Status:[/bold] {story.status.value}\n"
        f"[bold]Priority:[/bold] {story.priority.value}\n"
        f"[bold]Complexity:[/bold] {story.complexity.value}\n"
        f"[bold]Tags:[/bold] {', '.join(story.tags) or '-'}\n"
        f"[bold]Files:[/bold] {', '.join(story.reserved_paths) or '-'}",
        title="Story Created",
        border_style="green",
    )
    console.print(panel)
    if unrecognized:
        console.print(f"[yellow]Unrecognized tags:[/yellow] {', '.join(unrecognized)}")


@app.command()
def get(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Show a story and its notes."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()

    async def _get() -> tuple[Story, list[StoryNote]]:
        async with ctx.session_factory() as session:
            story = await require_story(session, short_id)
            return story, await list_notes(session, story.id)

    story, notes = run_command(_get(), "loading story")

    if as_json:
        payload = story_dict(story)
        payload["notes"] = [
            {"author": n.author, "text": n.text, "created_at": n.created_at.isoformat()}
            for n in notes
        ]
        typer.echo(json.dumps(payload, indent=2))
        return

    color = STATUS_COLORS.get(story.status.value, "white")
    lines = [
        f"[bold]Title:[/bold] {story.title}",
        f"[bold]Status:[/bold] [{color}]{story.status.value}[/{color}]",
        f"[bold]Priority:[/bold] {story.priority.value}   "
        f"[bold]Complexity:[/bold] {story.complexity.value}",
        f"[bold]Worker:[/bold] {story.assigned_worker or '-'}",
        f"[bold]Tags:[/bold] {', '.join(story.tags or []) or '-'}",
        f"[bold]Files:[/bold] {', '.join(story.reserved_paths or []) or '-'}",
    ]
    if story.blocked_reason:
        lines.append(f"[bold]Reason:[/bold] {story.blocked_reason}")
    if story.last_heartbeat_at:
        lines.append(
            f"[bold]Heartbeat:[/bold] {story.last_heartbeat_at.isoformat()} "
            f"({story.heartbeat_worker}) {story.heartbeat_message or ''}"
        )
    console.print(Panel("\n".join(lines), title=story.short_id, border_style=color))

    for note in notes:
        console.print(f"[dim]{note.created_at:%Y-%m-%d %H:%M}[/dim] [cyan]{note.author}[/cyan]: {note.text}")


@app.command("list")
def list_command(
    project: Annotated[str, typer.Argument(help="Project short code")],
    status: Annotated[
        Optional[list[StoryStatus]],
        typer.Option("--status", "-s", help="Filter by status (repeatable)"),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """List a project's stories in creation order."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()

    async def _list() -> list[Story]:
        async with ctx.session_factory() as session:
            proj = await require_project(session, project)
            return await list_stories(session, project_id=proj.id, statuses=status or None)

    stories = run_command(_list(), "listing stories")

    if as_json:
        typer.echo(json.dumps([story_dict(s) for s in stories], indent=2))
        return

    if not stories:
        console.print("[yellow]No stories found[/yellow]")
        return

    table = Table(title="Stories")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="bold")
    table.add_column("Status")
    table.add_column("Pri", justify="center")
    table.add_column("Worker", style="blue")
    table.add_column("Files", style="dim")

    for s in stories:
        color = STATUS_COLORS.get(s.status.value, "white")
        table.add_row(
            s.short_id,
            s.title,
            f"[{color}]{s.status.value}[/{color}]",
            s.priority.value,
            s.assigned_worker or "-",
            ", ".join(s.reserved_paths or []) or "-",
        )
    console.print(table)


@app.command()
def update(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    status: Annotated[
        Optional[StoryStatus],
        typer.Option("--status", "-s", help="New status"),
    ] = None,
    reason: Annotated[
        Optional[str],
        typer.Option("--reason", "-r", help="Reason (required for blocked/cancelled)"),
    ] = None,
    priority: Annotated[
        Optional[Priority],
        typer.Option("--priority", "-p", help="New priority"),
    ] = None,
    assign: Annotated[
        Optional[str],
        typer.Option("--assign", "-a", help="Assign to a worker"),
    ] = None,
    tags: Annotated[
        Optional[str],
        typer.Option("--tags", "-t", help="Replace tags (comma-separated)"),
    ] = None,
    note: Annotated[
        Optional[str],
        typer.Option("--note", "-n", help="Activity note for the status change"),
    ] = None,
    worker: Annotated[
        str,
        typer.Option("--worker", "-w", help="Who is making the change"),
    ] = "user",
) -> None:
    """Update a story's status, priority, assignee or tags."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()
    bind_story_context(short_id=short_id.upper(), worker=worker)

    fields: dict[str, Any] = {}
    if priority is not None:
        fields["priority"] = priority
    if assign is not None:
        fields["assigned_worker"] = assign or None
    if tags is not None:
        fields["tags"] = normalise_tags(_split_csv(tags))

    if status is None and not fields:
        console.print("[yellow]Nothing to update[/yellow]")
        raise typer.Exit(code=1)

    async def _update() -> Story:
        async with ctx.session_factory() as session:
            story = await require_story(session, short_id)
            if status is not None:
                story = await StoryStateMachine().transition(
                    session,
                    story,
                    status,
                    worker=worker,
                    reason=reason,
                    note=note,
                    extra_values=fields or None,
                )
            else:
                story = await update_story(session, story, fields)
            return story

    story = run_command(_update(), "updating story")
    color = STATUS_COLORS.get(story.status.value, "white")
    console.print(
        f"[green]Updated {story.short_id}[/green]: "
        f"[{color}]{story.status.value}[/{color}] {story.priority.value} "
        f"worker={story.assigned_worker or '-'}"
    )
    if story.blocked_reason:
        console.print(f"[dim]Reason:[/dim] {story.blocked_reason}")


@app.command("note")
def note_command(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    text: Annotated[str, typer.Argument(help="Note text")],
    author: Annotated[
        str,
        typer.Option("--author", "-a", help="Note author"),
    ] = "user",
) -> None:
    """Append a note to a story."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()

    async def _note() -> Story:
        async with ctx.session_factory() as session:
            story = await require_story(session, short_id)
            await add_note(session, story.id, author=author, text=text)
            return story

    story = run_command(_note(), "adding note")
    console.print(f"[green]Note added to {story.short_id}[/green]")


@app.command()
def heartbeat(
    short_id: Annotated[str, typer.Argument(help="Story id, e.g. SL-4")],
    worker: Annotated[str, typer.Option("--worker", "-w", help="Worker sending the heartbeat")],
    message: Annotated[
        Optional[str],
        typer.Option("--message", "-m", help="Progress message"),
    ] = None,
) -> None:
    """Record that a worker is still active on a story."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()
    bind_story_context(short_id=short_id.upper(), worker=worker)

    async def _beat() -> HeartbeatResult:
        async with ctx.session_factory() as session:
            return await record_heartbeat(
                session,
                short_id,
                worker=worker,
                message=message,
                config=ctx.config.heartbeat,
            )

    result = run_command(_beat(), "recording heartbeat")
    if result.recorded:
        console.print(f"[green]Heartbeat recorded for {result.short_id}[/green]")
    else:
        console.print(
            f"[dim]Heartbeat skipped for {result.short_id}; "
            f"next accepted in {result.seconds_until_next}s[/dim]"
        )
