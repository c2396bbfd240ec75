"""Main CLI entry point for Storyloom.

This module provides the main Typer application with sub-commands for
projects, stories and file reservations, plus the admission, routing and
watchdog commands.

Usage:
    storyloom project create "Storyloom" SL --burst --max-parallel 3
    storyloom story create SL "Add login form" --priority P1 --tags frontend,api
    storyloom reserve request SL-4 src/app.py
    storyloom schedule SL --assign
    storyloom route frontend api
    storyloom watchdog SL --flag
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Annotated, Any, Optional, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console

from storyloom.cli import project as project_cli
from storyloom.cli import reserve as reserve_cli
from storyloom.cli import route as route_cli
from storyloom.cli import schedule as schedule_cli
from storyloom.cli import story as story_cli
from storyloom.cli import watchdog as watchdog_cli
from storyloom.config import StoryloomConfig, load_config
from storyloom.database.connection import get_engine, get_session_factory
from storyloom.database.models import Base
from storyloom.exceptions import StoryloomError
from storyloom.logging import setup_logging

T = TypeVar("T")

app = typer.Typer(
    name="storyloom",
    help="Storyloom: parallel story admission and file reservations",
    no_args_is_help=True,
)

# Add sub-apps
app.add_typer(project_cli.app, name="project", help="Manage projects")
app.add_typer(story_cli.app, name="story", help="Manage stories")
app.add_typer(reserve_cli.app, name="reserve", help="Manage file reservations")

# Single-command groups
app.command("schedule")(schedule_cli.schedule)
app.command("route")(route_cli.route)
app.command("watchdog")(watchdog_cli.watchdog)

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Storyloom configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: StoryloomConfig):
        """Initialize application context.

        Args:
            config: Storyloom configuration
        """
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a coroutine to completion and close pooled connections.

        Args:
            coro: Coroutine to run

        Returns:
            The coroutine's result
        """

        async def _runner() -> T:
            try:
                return await coro
            finally:
                await self.engine.dispose()

        return asyncio.run(_runner())


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Returns:
        AppContext instance with config and database connections

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: StoryloomConfig) -> AppContext:
    """Initialize the global application context.

    Args:
        config: Storyloom configuration

    Returns:
        Initialized AppContext instance
    """
    global _app_context
    _app_context = AppContext(config)
    return _app_context


def run_command(coro: Coroutine[Any, Any, T], action: str) -> T:
    """Run a command coroutine, turning Storyloom errors into exit code 1.

    Args:
        coro: Coroutine doing the command's work
        action: Short description used in the error message

    Returns:
        The coroutine's result
    """
    ctx = get_app_context()
    try:
        return ctx.run(coro)
    except (StoryloomError, ValidationError) as e:
        console.print(f"[red]Error {action}:[/red] {e}")
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db() -> None:
    """Create any missing database tables.

    Intended for SQLite and development databases; production schemas
    are managed with Alembic (``alembic upgrade head``).
    """
    ctx = get_app_context()

    async def _create() -> None:
        async with ctx.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    ctx.run(_create())
    console.print("[green]Database tables ready[/green]")


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default from config)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default from config)"),
    ] = None,
) -> None:
    """Start the Storyloom HTTP API.

    Args:
        host: Host address to bind to
        port: Port number to bind to
    """
    import uvicorn

    from storyloom.web.app import create_app

    config = get_app_context().config
    host = host or config.web.host
    port = port or config.web.port

    console.print("[bold cyan]Starting Storyloom API[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {host}")
    console.print(f"[dim]Port:[/dim] {port}")
    console.print()

    uvicorn.run(
        create_app(config),
        host=host,
        port=port,
        log_level="info",
    )


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    # Load configuration
    try:
        config = load_config(config_path)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    # Logs go to stderr so command output stays parseable; the CLI is quiet
    # unless a level is configured explicitly
    if verbose:
        level = "DEBUG"
    elif "level" in config.logging.model_fields_set:
        level = config.logging.level
    else:
        level = "WARNING"
    logging_config = config.logging.model_copy(update={"level": level})
    setup_logging(logging_config, stream=sys.stderr)

    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]", highlight=False)


if __name__ == "__main__":
    app()
