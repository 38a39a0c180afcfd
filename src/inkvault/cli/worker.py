"""Background worker CLI commands.

This module provides the command that runs the embedding worker in the
foreground until interrupted.
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import AsyncExitStack
from typing import Annotated

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from inkvault.embedding_queue.service import EmbeddingQueueService
from inkvault.embedding_queue.worker import BackgroundWorker
from inkvault.intelligence.embeddings import EmbeddingService, OpenAIEmbeddingClient
from inkvault.intelligence.ollama_client import OllamaClient
from inkvault.intelligence.vector_index import PgVectorIndex, SqlArticleStore

app = typer.Typer(help="Background worker commands")
console = Console()


@app.command()
def start(
    live_status: Annotated[
        bool,
        typer.Option("--live/--no-live", help="Show a live status table"),
    ] = True,
) -> None:
    """Start the embedding worker.

    The worker claims queued tasks, chunks and embeds the articles and
    writes the vectors to the index until interrupted with Ctrl+C. The task
    in flight is finished before the worker exits.

    Args:
        live_status: Render a live status table while running
    """
    from inkvault.main import get_app_context

    ctx = get_app_context()
    queue_config = ctx.config.embedding_queue

    if not queue_config.enabled:
        console.print("[yellow]Embedding queue is disabled in configuration[/yellow]")
        raise typer.Exit(code=1)

    console.print()
    console.print(
        Panel(
            f"[bold cyan]Inkvault Embedding Worker[/bold cyan]\n\n"
            f"[bold]Embedding model:[/bold] {ctx.config.ollama.model}\n"
            f"[bold]OpenAI fallback:[/bold] "
            f"{'enabled' if ctx.config.openai.enabled else 'disabled'}\n"
            f"[bold]Poll interval:[/bold] {queue_config.poll_interval_seconds} seconds\n"
            f"[bold]Max attempts:[/bold] {queue_config.max_attempts}",
            title="Starting Worker",
            border_style="cyan",
        )
    )
    console.print()

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        console.print()
        console.print("[yellow]Shutdown signal received. Stopping worker...[/yellow]")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def run_worker():
        async with AsyncExitStack() as stack:
            ollama = await stack.enter_async_context(OllamaClient(ctx.config.ollama))
            openai = None
            if ctx.config.openai.enabled:
                openai = await stack.enter_async_context(
                    OpenAIEmbeddingClient(ctx.config.openai)
                )

            queue = EmbeddingQueueService(ctx.session_factory, queue_config)
            worker = BackgroundWorker(
                queue=queue,
                provider=EmbeddingService(ollama_client=ollama, openai_client=openai),
                article_store=SqlArticleStore(ctx.session_factory),
                vector_index=PgVectorIndex(ctx.session_factory),
                config=queue_config,
                chunking=ctx.config.chunking,
            )

            if not await ollama.health_check():
                console.print(
                    f"[yellow]Ollama is not reachable at {ctx.config.ollama.url}; "
                    f"tasks will retry until it is[/yellow]"
                )

            await worker.start()
            try:
                console.print("[bold green]Worker running[/bold green]")
                console.print("[dim]Press Ctrl+C to stop[/dim]")
                console.print()

                if live_status:
                    with Live(generate_status_table(worker), refresh_per_second=1) as live:
                        while not shutdown_event.is_set():
                            await asyncio.sleep(0.5)
                            live.update(generate_status_table(worker))
                else:
                    while not shutdown_event.is_set():
                        await asyncio.sleep(0.5)
            finally:
                await worker.stop()
                console.print()
                console.print(
                    f"[green]Worker stopped[/green] "
                    f"({worker.tasks_processed} processed, {worker.tasks_failed} failed)"
                )

    try:
        asyncio.run(run_worker())
    except Exception as e:
        console.print(f"[red]Fatal error:[/red] {e}")
        raise typer.Exit(code=1)


def generate_status_table(worker: BackgroundWorker) -> Table:
    """Generate a status table for the worker.

    Args:
        worker: Worker instance to get status from

    Returns:
        Rich Table with current worker status
    """
    snapshot = worker.status_snapshot()

    table = Table(title="Worker Status", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")

    state = snapshot["state"]
    state_text = f"[green]{state}[/green]" if state == "running" else f"[dim]{state}[/dim]"
    table.add_row("State", state_text)
    table.add_row("Current Task", snapshot["current_task_id"] or "-")
    table.add_row("Processed", str(snapshot["tasks_processed"]))
    table.add_row("Succeeded", f"[green]{snapshot['tasks_succeeded']}[/green]")
    table.add_row("Failed", f"[red]{snapshot['tasks_failed']}[/red]")
    table.add_row("Poll Interval", f"{snapshot['poll_interval_seconds']}s")

    return table
