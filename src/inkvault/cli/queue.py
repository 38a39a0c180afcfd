"""Embedding queue administration CLI commands.

This module provides commands for inspecting, debugging and repairing the
embedding task queue: statistics, health, task listing and inspection,
manual retries, cleanup and the audit log.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Annotated, Any, Optional
from uuid import UUID

import typer
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from inkvault.database.models.audit_log import LogCategory, LogLevel
from inkvault.database.models.base import ensure_utc, utcnow
from inkvault.database.models.embedding_task import EmbeddingTask, TaskStatus
from inkvault.embedding_queue.audit import LogQueryFilters
from inkvault.embedding_queue.diagnostics import (
    classify_error,
    diagnose_task,
    health_recommendations,
)
from inkvault.embedding_queue.service import EmbeddingQueueService

app = typer.Typer(help="Embedding queue administration commands")
console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
}

LEVEL_COLORS = {
    "debug": "dim",
    "info": "cyan",
    "warn": "yellow",
    "error": "red",
}


def _queue() -> EmbeddingQueueService:
    from inkvault.main import get_app_context

    ctx = get_app_context()
    return EmbeddingQueueService(ctx.session_factory, ctx.config.embedding_queue)


def _run(coro: Any, action: str) -> Any:
    try:
        return asyncio.run(coro)
    except Exception as e:
        console.print(f"[red]Error {action}:[/red] {e}")
        raise typer.Exit(code=1)


def _parse_task_id(task_id: str) -> UUID:
    try:
        return UUID(task_id)
    except ValueError:
        console.print(f"[red]Invalid task UUID:[/red] {task_id}")
        raise typer.Exit(code=1)


def _parse_status(status: str) -> TaskStatus:
    try:
        return TaskStatus(status)
    except ValueError:
        valid = ", ".join(s.value for s in TaskStatus)
        console.print(f"[red]Invalid status:[/red] {status}. Valid values: {valid}")
        raise typer.Exit(code=1)


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _fmt_time(value: Any) -> str:
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%d %H:%M:%S") if value is not None else "-"


def _status_text(status: TaskStatus) -> str:
    color = STATUS_COLORS.get(status.value, "white")
    return f"[{color}]{status.value}[/{color}]"


def task_to_dict(task: EmbeddingTask) -> dict[str, Any]:
    """JSON-friendly representation of a task."""
    return {
        "id": str(task.id),
        "article_id": task.article_id,
        "slug": task.slug,
        "operation": task.operation.value,
        "priority": task.priority.value,
        "status": task.status.value,
        "attempts": task.attempts,
        "max_attempts": task.max_attempts,
        "error_message": task.error_message,
        "metadata": task.task_metadata,
        "created_at": ensure_utc(task.created_at),
        "scheduled_at": ensure_utc(task.scheduled_at),
        "processed_at": ensure_utc(task.processed_at),
        "completed_at": ensure_utc(task.completed_at),
    }


def _task_table(tasks: list[EmbeddingTask], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Article", justify="right")
    table.add_column("Slug", style="bold")
    table.add_column("Operation", style="blue")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Attempts", justify="right", style="dim")
    table.add_column("Created", style="dim")

    for t in tasks:
        table.add_row(
            str(t.id)[:8] + "...",
            str(t.article_id),
            t.slug,
            t.operation.value,
            t.priority.value,
            _status_text(t.status),
            f"{t.attempts}/{t.max_attempts}",
            _fmt_time(t.created_at),
        )
    return table


def _task_panel(task: EmbeddingTask) -> Panel:
    lines = [
        f"[bold]ID:[/bold] {task.id}",
        f"[bold]Article:[/bold] {task.article_id} ({task.slug})",
        f"[bold]Operation:[/bold] {task.operation.value}",
        f"[bold]Priority:[/bold] {task.priority.value}",
        f"[bold]Status:[/bold] {_status_text(task.status)}",
        f"[bold]Attempts:[/bold] {task.attempts}/{task.max_attempts}",
        f"[bold]Created:[/bold] {_fmt_time(task.created_at)}",
        f"[bold]Scheduled:[/bold] {_fmt_time(task.scheduled_at)}",
        f"[bold]Processed:[/bold] {_fmt_time(task.processed_at)}",
        f"[bold]Completed:[/bold] {_fmt_time(task.completed_at)}",
    ]
    if task.error_message:
        lines.append(f"[bold]Error:[/bold] [red]{task.error_message}[/red]")
    if task.task_metadata:
        lines.append(f"[bold]Metadata:[/bold] {json.dumps(task.task_metadata, default=str)}")
    return Panel("\n".join(lines), title="Embedding Task", border_style="cyan")


@app.command()
def stats(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show queue statistics and worker status."""
    queue = _queue()

    async def _stats():
        detailed = await queue.get_detailed_queue_stats()
        worker = await queue.get_worker_status()
        return detailed, worker

    detailed, worker = _run(_stats(), "reading queue statistics")

    worker_info = None
    if worker is not None:
        worker_info = {
            "is_running": worker.is_running,
            "last_heartbeat": ensure_utc(worker.last_heartbeat),
            "started_at": ensure_utc(worker.started_at),
            "tasks_processed": worker.tasks_processed,
            "tasks_succeeded": worker.tasks_succeeded,
            "tasks_failed": worker.tasks_failed,
        }

    if format == "json":
        _print_json({"queue": detailed.model_dump(), "worker": worker_info})
        return

    table = Table(title="Embedding Queue")
    table.add_column("Status", style="bold")
    table.add_column("Tasks", justify="right")
    for name in ("pending", "processing", "completed", "failed"):
        color = STATUS_COLORS[name]
        table.add_row(f"[{color}]{name}[/{color}]", str(getattr(detailed.stats, name)))
    table.add_row("[bold]total[/bold]", str(detailed.stats.total))
    console.print(table)

    breakdown = Table(title="Active Tasks", show_header=True)
    breakdown.add_column("Breakdown", style="bold cyan")
    breakdown.add_column("Value")
    breakdown.add_column("Tasks", justify="right")
    for priority, count in detailed.by_priority.items():
        breakdown.add_row("priority", priority, str(count))
    for operation, count in detailed.by_operation.items():
        breakdown.add_row("operation", operation, str(count))
    console.print(breakdown)

    avg = detailed.average_processing_seconds
    console.print(
        f"[bold]Last 24h:[/bold] {detailed.completed_last_24h} completed, "
        f"{detailed.failed_last_24h} failed, "
        f"{detailed.superseded_last_24h} superseded, "
        f"avg processing {f'{avg:.2f}s' if avg is not None else '-'}"
    )

    if worker_info is None:
        console.print("[yellow]Worker has never started[/yellow]")
    else:
        state = "[green]Running[/green]" if worker_info["is_running"] else "[dim]Stopped[/dim]"
        console.print(
            f"[bold]Worker:[/bold] {state}, last heartbeat "
            f"{_fmt_time(worker_info['last_heartbeat'])}, "
            f"{worker_info['tasks_processed']} processed "
            f"({worker_info['tasks_succeeded']} ok, {worker_info['tasks_failed']} failed)"
        )


@app.command()
def health(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Check queue health; exits with code 1 when the queue is unhealthy."""
    queue = _queue()
    report = _run(queue.get_queue_health(), "checking queue health")
    recommendations = health_recommendations(report)

    if format == "json":
        _print_json({**report.model_dump(), "recommendations": recommendations})
    else:
        status = "[green]HEALTHY[/green]" if report.is_healthy else "[red]UNHEALTHY[/red]"
        rate = report.failure_rate_last_24h
        body = [
            f"[bold]Status:[/bold] {status}",
            f"[bold]Total tasks:[/bold] {report.total_tasks}",
            f"[bold]Pending:[/bold] {report.pending_tasks}",
            f"[bold]Processing:[/bold] {report.processing_tasks}",
            f"[bold]Stuck:[/bold] {report.stuck_tasks}",
            f"[bold]Oldest pending:[/bold] {_fmt_time(report.oldest_pending_task)}",
            f"[bold]Failure rate (24h):[/bold] {f'{rate:.1%}' if rate is not None else '-'}",
        ]
        if report.worker_running is not None:
            body.append(
                f"[bold]Worker:[/bold] {'running' if report.worker_running else 'stopped'}, "
                f"last heartbeat {_fmt_time(report.worker_last_heartbeat)}"
            )
        console.print(
            Panel(
                "\n".join(body),
                title="Queue Health",
                border_style="green" if report.is_healthy else "red",
            )
        )
        for issue in report.issues:
            console.print(f"[red]-[/red] {issue}")
        if recommendations:
            console.print()
            console.print("[bold]Recommendations:[/bold]")
            for recommendation in recommendations:
                console.print(f"  [cyan]>[/cyan] {recommendation}")

    if not report.is_healthy:
        raise typer.Exit(code=1)


@app.command("list")
def list_tasks(
    status: Annotated[
        str,
        typer.Option(
            "--status",
            "-s",
            help="Task status (pending, processing, completed, failed)",
        ),
    ] = "pending",
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, max=1000)] = 20,
    offset: Annotated[int, typer.Option("--offset", min=0)] = 0,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List tasks in one status, most urgent first."""
    status_filter = _parse_status(status)
    queue = _queue()
    tasks = _run(
        queue.get_tasks_by_status(status_filter, limit=limit, offset=offset),
        "listing tasks",
    )

    if format == "json":
        _print_json([task_to_dict(t) for t in tasks])
        return

    if not tasks:
        console.print(f"[yellow]No {status_filter.value} tasks found[/yellow]")
        return
    console.print(_task_table(tasks, f"{status_filter.value.capitalize()} Tasks"))


@app.command()
def inspect(
    task_id: Annotated[str, typer.Argument(help="Task UUID")],
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show every field of one task."""
    task_uuid = _parse_task_id(task_id)
    queue = _queue()
    task = _run(queue.get_task_status(task_uuid), "reading task")
    if task is None:
        console.print(f"[red]Task not found:[/red] {task_id}")
        raise typer.Exit(code=1)

    if format == "json":
        _print_json(task_to_dict(task))
    else:
        console.print(_task_panel(task))


@app.command()
def debug(
    task_id: Annotated[str, typer.Argument(help="Task UUID")],
) -> None:
    """Diagnose a task: error analysis, duplicates and suggested fixes."""
    task_uuid = _parse_task_id(task_id)
    queue = _queue()

    async def _debug():
        task = await queue.get_task_status(task_uuid)
        if task is None:
            return None, [], [], []
        duplicates = await queue.find_duplicate_tasks(task)
        recent_failed = await queue.get_tasks_by_status(TaskStatus.failed, limit=500)
        history = await queue.audit.query_logs(LogQueryFilters(task_id=task_uuid, limit=20))
        return task, duplicates, recent_failed, history

    task, duplicates, recent_failed, history = _run(_debug(), "debugging task")
    if task is None:
        console.print(f"[red]Task not found:[/red] {task_id}")
        raise typer.Exit(code=1)

    now = utcnow()
    stuck_timeout = timedelta(minutes=queue.config.stuck_task_timeout_minutes)
    diagnosis = diagnose_task(task, duplicates, now, stuck_timeout)

    console.print(_task_panel(task))

    findings = list(diagnosis.findings)
    if diagnosis.error_category is not None:
        since = now - timedelta(hours=24)
        similar = [
            t
            for t in recent_failed
            if t.id != task.id
            and t.completed_at is not None
            and ensure_utc(t.completed_at) >= since
            and classify_error(t.error_message) == diagnosis.error_category
        ]
        if similar:
            findings.append(f"{len(similar)} similar failures in last 24 hours")

    console.print("[bold]Findings:[/bold]")
    if findings:
        for finding in findings:
            console.print(f"  [yellow]-[/yellow] {finding}")
    else:
        console.print("  [green]No problems detected[/green]")

    if duplicates:
        console.print(_task_table(duplicates, "Tasks For The Same Article And Operation"))

    if diagnosis.recommendations:
        console.print("[bold]Recommendations:[/bold]")
        for recommendation in diagnosis.recommendations:
            console.print(f"  [cyan]>[/cyan] {recommendation}")

    if history:
        table = Table(title="Task History")
        table.add_column("Time", style="dim")
        table.add_column("Level")
        table.add_column("Message")
        for entry in reversed(history):
            color = LEVEL_COLORS.get(entry.level.value, "white")
            table.add_row(
                _fmt_time(entry.timestamp),
                f"[{color}]{entry.level.value}[/{color}]",
                entry.message,
            )
        console.print(table)


@app.command()
def retry(
    task_id: Annotated[str, typer.Argument(help="Task UUID of a failed task")],
) -> None:
    """Send one failed task back to pending."""
    task_uuid = _parse_task_id(task_id)
    queue = _queue()
    task = _run(queue.retry_task(task_uuid), "retrying task")
    if task is None:
        console.print(f"[red]Task is not in failed status or does not exist:[/red] {task_id}")
        raise typer.Exit(code=1)

    console.print(
        Panel(
            f"[green]Task requeued[/green]\n\n"
            f"[bold]ID:[/bold] {task.id}\n"
            f"[bold]Status:[/bold] {_status_text(task.status)}\n"
            f"[bold]Attempts:[/bold] {task.attempts}/{task.max_attempts}",
            title="Task Retried",
            border_style="green",
        )
    )


@app.command("retry-failed")
def retry_failed(
    max_attempts: Annotated[
        Optional[int],
        typer.Option(
            "--max-attempts",
            "-m",
            min=1,
            help="Retry tasks with fewer attempts than this and raise their budget to it",
        ),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Requeue failed tasks that still have attempt budget."""
    if not yes:
        typer.confirm("Requeue failed tasks?", abort=True)
    queue = _queue()
    count = _run(queue.retry_failed_tasks(max_attempts=max_attempts), "retrying failed tasks")
    console.print(f"[green]Requeued {count} failed task(s)[/green]")


@app.command()
def cleanup(
    older_than_days: Annotated[
        Optional[int],
        typer.Option(
            "--older-than-days",
            "-d",
            min=0,
            help="Delete completed tasks finished more than this many days ago "
            "(default: configured retention)",
        ),
    ] = None,
) -> None:
    """Delete old completed tasks."""
    queue = _queue()
    days = older_than_days if older_than_days is not None else queue.config.cleanup_retention_days
    cutoff = utcnow() - timedelta(days=days)
    deleted = _run(queue.clear_completed_tasks(cutoff), "cleaning up tasks")
    console.print(
        f"[green]Deleted {deleted} completed task(s) older than {days} day(s)[/green]"
    )


@app.command("cleanup-failed")
def cleanup_failed(
    older_than_days: Annotated[
        int,
        typer.Option(
            "--older-than-days",
            "-d",
            min=0,
            help="Delete failed tasks finished more than this many days ago",
        ),
    ] = 7,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Delete old failed tasks."""
    if not yes:
        typer.confirm(
            f"Delete failed tasks older than {older_than_days} day(s)?", abort=True
        )
    queue = _queue()
    cutoff = utcnow() - timedelta(days=older_than_days)
    deleted = _run(queue.clear_failed_tasks(cutoff), "cleaning up failed tasks")
    console.print(
        f"[green]Deleted {deleted} failed task(s) older than {older_than_days} day(s)[/green]"
    )


@app.command("cleanup-stuck")
def cleanup_stuck(
    timeout_minutes: Annotated[
        Optional[int],
        typer.Option(
            "--timeout-minutes",
            "-t",
            min=1,
            help="Processing age considered stuck (default: configured timeout)",
        ),
    ] = None,
) -> None:
    """Reset tasks stuck in processing back to pending."""
    queue = _queue()
    timeout = timedelta(minutes=timeout_minutes) if timeout_minutes is not None else None
    reset = _run(queue.reset_stuck_tasks(timeout), "resetting stuck tasks")
    if reset:
        console.print(f"[yellow]Reset {reset} stuck task(s) to pending[/yellow]")
    else:
        console.print("[green]No stuck tasks found[/green]")


@app.command()
def article(
    article_id: Annotated[int, typer.Argument(help="Article ID")],
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show every task of one article, newest first."""
    queue = _queue()
    tasks = _run(queue.get_tasks_for_article(article_id), "listing article tasks")

    if format == "json":
        _print_json([task_to_dict(t) for t in tasks])
        return

    if not tasks:
        console.print(f"[yellow]No tasks found for article {article_id}[/yellow]")
        return
    console.print(_task_table(tasks, f"Tasks For Article {article_id}"))


@app.command()
def logs(
    level: Annotated[
        Optional[str],
        typer.Option("--level", "-l", help="Filter by level (debug, info, warn, error)"),
    ] = None,
    category: Annotated[
        Optional[str],
        typer.Option("--category", "-c", help="Filter by category"),
    ] = None,
    task_id: Annotated[Optional[str], typer.Option("--task", help="Filter by task UUID")] = None,
    article_id: Annotated[
        Optional[int], typer.Option("--article", help="Filter by article ID")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, max=1000)] = 50,
    show_stats: Annotated[
        bool, typer.Option("--stats", help="Show aggregate statistics instead of entries")
    ] = False,
    days: Annotated[int, typer.Option("--days", min=1, help="Statistics window")] = 7,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Query the embedding audit log."""
    queue = _queue()

    if show_stats:
        statistics = _run(queue.audit.get_log_statistics(days=days), "reading log statistics")
        if format == "json":
            _print_json(statistics.model_dump())
            return
        table = Table(title=f"Audit Log (last {days} days)")
        table.add_column("Group", style="bold cyan")
        table.add_column("Value")
        table.add_column("Entries", justify="right")
        for name, count in statistics.by_level.items():
            table.add_row("level", name, str(count))
        for name, count in statistics.by_category.items():
            table.add_row("category", name, str(count))
        table.add_row("[bold]total[/bold]", "", str(statistics.total))
        console.print(table)
        return

    try:
        filters = LogQueryFilters(
            level=LogLevel(level) if level else None,
            category=LogCategory(category) if category else None,
            task_id=UUID(task_id) if task_id else None,
            article_id=article_id,
            limit=limit,
        )
    except ValueError as e:
        console.print(f"[red]Invalid filter:[/red] {e}")
        raise typer.Exit(code=1)

    entries = _run(queue.audit.query_logs(filters), "querying audit log")

    if format == "json":
        _print_json(
            [
                {
                    "id": str(e.id),
                    "timestamp": ensure_utc(e.timestamp),
                    "level": e.level.value,
                    "category": e.category.value,
                    "message": e.message,
                    "task_id": str(e.task_id) if e.task_id else None,
                    "article_id": e.article_id,
                    "operation_id": e.operation_id,
                    "metadata": e.event_metadata,
                    "duration_ms": e.duration_ms,
                    "error": e.error,
                    "stack_trace": e.stack_trace,
                }
                for e in entries
            ]
        )
        return

    if not entries:
        console.print("[yellow]No audit entries found[/yellow]")
        return

    table = Table(title="Audit Log")
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Category", style="blue")
    table.add_column("Message")
    table.add_column("Task", style="cyan", no_wrap=True)
    for entry in entries:
        color = LEVEL_COLORS.get(entry.level.value, "white")
        table.add_row(
            _fmt_time(entry.timestamp),
            f"[{color}]{entry.level.value}[/{color}]",
            entry.category.value,
            entry.message,
            str(entry.task_id)[:8] if entry.task_id else "-",
        )
    console.print(table)


def generate_monitor_view(queue_stats: Any, report: Any) -> Group:
    """Build the live monitor display from stats and health.

    Args:
        queue_stats: QueueStats snapshot
        report: QueueHealth snapshot

    Returns:
        Renderable group with a counts table and health line
    """
    table = Table(title="Embedding Queue Monitor", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value", justify="right")
    for name in ("pending", "processing", "completed", "failed"):
        color = STATUS_COLORS[name]
        table.add_row(name, f"[{color}]{getattr(queue_stats, name)}[/{color}]")
    table.add_row("total", str(queue_stats.total))
    worker = "-"
    if report.worker_running is not None:
        worker = "[green]running[/green]" if report.worker_running else "[dim]stopped[/dim]"
    table.add_row("worker", worker)

    if report.is_healthy:
        status = "[green]Queue healthy[/green]"
    else:
        status = "[red]Queue unhealthy:[/red] " + "; ".join(report.issues)
    return Group(table, status, f"[dim]Updated {_fmt_time(utcnow())}[/dim]")


@app.command()
def monitor(
    interval: Annotated[
        float, typer.Option("--interval", "-i", min=0.1, help="Refresh interval in seconds")
    ] = 5.0,
    count: Annotated[
        int, typer.Option("--count", help="Stop after this many refreshes (0 = until Ctrl+C)")
    ] = 0,
) -> None:
    """Continuously display queue statistics and health."""
    queue = _queue()

    async def _snapshot():
        return await queue.get_queue_stats(), await queue.get_queue_health()

    async def _monitor():
        queue_stats, report = await _snapshot()
        refreshes = 1
        with Live(generate_monitor_view(queue_stats, report), refresh_per_second=1) as live:
            while count == 0 or refreshes < count:
                await asyncio.sleep(interval)
                queue_stats, report = await _snapshot()
                live.update(generate_monitor_view(queue_stats, report))
                refreshes += 1

    try:
        asyncio.run(_monitor())
    except KeyboardInterrupt:
        console.print("[dim]Monitor stopped[/dim]")
    except Exception as e:
        console.print(f"[red]Monitor error:[/red] {e}")
        raise typer.Exit(code=1)
