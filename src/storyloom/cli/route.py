"""Worker routing CLI command.

Ranks workers for a set of capability tags (or a story's tags) and
explains the recommendation.
"""

from __future__ import annotations

import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from storyloom.database.queries.story import require_story
from storyloom.orchestrator.routing import (
    VALID_TAGS,
    RoutingResult,
    explain,
    load_worker_profiles,
    route_story,
    seed_default_workers,
)

console = Console()


def route(
    tags: Annotated[
        Optional[list[str]],
        typer.Argument(help="Capability tags (space or comma separated)"),
    ] = None,
    story: Annotated[
        Optional[str],
        typer.Option("--story", "-s", help="Use this story's tags"),
    ] = None,
    seed: Annotated[
        bool,
        typer.Option("--seed", help="Store the default worker directory first"),
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Rank workers for capability tags and recommend one."""
    from storyloom.main import get_app_context, run_command

    ctx = get_app_context()
    tag_list = [t for raw in tags or [] for t in raw.split(",") if t.strip()]

    async def _route() -> RoutingResult:
        async with ctx.session_factory() as session:
            if seed:
                await seed_default_workers(session)
            wanted = list(tag_list)
            if story is not None:
                wanted.extend((await require_story(session, story)).tags or [])
            workers = await load_worker_profiles(session)
        return route_story(wanted, workers, ctx.config.routing)

    result = run_command(_route(), "routing")

    if as_json:
        typer.echo(result.model_dump_json(indent=2))
        return

    if result.recommended:
        console.print(f"[bold]Recommended:[/bold] [green]{result.recommended}[/green] ({result.reason.value})")
    if result.unrecognized_tags:
        console.print(
            f"[yellow]Unrecognized tags:[/yellow] {', '.join(result.unrecognized_tags)} "
            f"[dim](valid: {', '.join(sorted(VALID_TAGS))})[/dim]"
        )

    if not result.rankings:
        for line in explain(result):
            console.print(line)
        return

    table = Table(title="Worker ranking")
    table.add_column("Worker", style="cyan", no_wrap=True)
    table.add_column("Score", justify="right")
    table.add_column("Primary", style="green")
    table.add_column("Secondary", style="blue")
    for score in result.rankings:
        table.add_row(
            score.worker_id,
            f"{score.score:g}" + (" *" if score.fallback_bonus else ""),
            ", ".join(score.primary_matches) or "-",
            ", ".join(score.secondary_matches) or "-",
        )
    console.print(table)
