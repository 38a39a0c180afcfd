"""Main CLI entry point for Inkvault.

This module provides the main Typer application with sub-commands for
embedding queue administration, the background worker and the REST API.

Usage:
    inkvault queue stats
    inkvault queue retry <task-id>
    inkvault worker start
    inkvault serve --port 8000
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from inkvault.cli import queue as queue_cli
from inkvault.cli import worker as worker_cli
from inkvault.config import InkvaultConfig, load_config
from inkvault.database.connection import get_engine, get_session_factory
from inkvault.logging import setup_logging

app = typer.Typer(
    name="inkvault",
    help="Inkvault: article embedding queue and vector index",
    no_args_is_help=True,
)

app.add_typer(queue_cli.app, name="queue", help="Inspect and manage the embedding queue")
app.add_typer(worker_cli.app, name="worker", help="Run the embedding worker")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Inkvault configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: InkvaultConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)


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


def initialize_context(config: InkvaultConfig) -> AppContext:
    """Initialize the global application context.

    Args:
        config: Inkvault configuration

    Returns:
        Initialized AppContext instance
    """
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default: web.host)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default: web.port)"),
    ] = None,
) -> None:
    """Start the Inkvault REST API server.

    Serves the health and embedding queue endpoints with uvicorn.

    Args:
        host: Host address to bind to
        port: Port number to bind to
    """
    import uvicorn

    from inkvault.web.app import create_app

    config = get_app_context().config
    bind_host = host or config.web.host
    bind_port = port or config.web.port

    console.print("[bold cyan]Starting Inkvault API Server[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {bind_host}")
    console.print(f"[dim]Port:[/dim] {bind_port}")
    console.print()

    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
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
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    # Command output owns stdout; logs go to stderr
    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_config, stream=sys.stderr)

    try:
        initialize_context(config)
    except Exception as e:
        console.print(f"[red]Error initializing application:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
