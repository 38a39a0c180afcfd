"""Audit logging for the embedding queue.

Every audit event is emitted to structlog first and then stored in the
embedding_audit_logs table on a best-effort basis: a storage failure is
reported once through the local logger and otherwise ignored, so that
auditing never fails the operation being audited.

Example usage:
    >>> audit = AuditLogger(session_factory)
    >>> await audit.log_task_event("claimed", task)
    >>> await audit.log_worker_event("started", "Background worker started")
    >>> stats = await audit.get_log_statistics(days=7)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from inkvault.database.models.audit_log import AuditLogEntry, LogCategory, LogLevel
from inkvault.database.models.base import utcnow
from inkvault.database.queries.audit_log import (
    count_log_entries_by_category,
    count_log_entries_by_level,
    delete_log_entries_before,
    get_log_time_range,
    insert_log_entry,
    list_log_entries,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from inkvault.database.models.embedding_task import EmbeddingTask

logger = structlog.get_logger(__name__)

_LEVEL_METHODS = {
    LogLevel.debug: "debug",
    LogLevel.info: "info",
    LogLevel.warn: "warning",
    LogLevel.error: "error",
}


class LogQueryFilters(BaseModel):
    """Filters for querying audit entries; all given filters must match."""

    level: LogLevel | None = None
    category: LogCategory | None = None
    task_id: uuid.UUID | None = None
    article_id: int | None = None
    operation_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class LogStatistics(BaseModel):
    """Aggregate view of recent audit entries.

    Attributes:
        days: Window the statistics cover.
        total: Entries in the window.
        by_level: Entry count per level.
        by_category: Entry count per category.
        recent_errors: Number of error entries in the window.
        oldest: Oldest entry timestamp in the window.
        newest: Newest entry timestamp in the window.
    """

    days: int
    total: int
    by_level: dict[str, int]
    by_category: dict[str, int]
    recent_errors: int
    oldest: datetime | None = None
    newest: datetime | None = None


def new_operation_id(prefix: str) -> str:
    """Identifier correlating the audit events of one admin or bulk operation."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class AuditLogger:
    """Structured audit trail for queue and worker events.

    Attributes:
        session_factory: Factory for the sessions audit rows are written with
        enabled: When False, events only go to structlog
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None,
        enabled: bool = True,
    ) -> None:
        self.session_factory = session_factory
        self.enabled = enabled and session_factory is not None

    async def log(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        *,
        task_id: uuid.UUID | None = None,
        article_id: int | None = None,
        operation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        error: str | None = None,
        stack_trace: str | None = None,
    ) -> None:
        """Emit an audit event locally and persist it if storage is enabled.

        Args:
            level: Severity.
            category: Event category.
            message: Human-readable description.
            task_id: Related task.
            article_id: Related article.
            operation_id: Correlation ID of a bulk or admin operation.
            metadata: Extra JSON context.
            duration_ms: Measured duration of the described work.
            error: Error text for failure events.
            stack_trace: Traceback captured with the error.
        """
        timestamp = utcnow()
        log_method = getattr(logger, _LEVEL_METHODS[level])
        log_method(
            "audit_event",
            category=category.value,
            audit_message=message,
            task_id=str(task_id) if task_id else None,
            article_id=article_id,
            operation_id=operation_id,
            duration_ms=duration_ms,
            error=error,
            audit_metadata=metadata,
        )

        if not self.enabled:
            return

        try:
            async with self.session_factory() as session:
                await insert_log_entry(
                    session,
                    level=level,
                    category=category,
                    message=message,
                    timestamp=timestamp,
                    task_id=task_id,
                    article_id=article_id,
                    operation_id=operation_id,
                    metadata=metadata,
                    duration_ms=duration_ms,
                    error=error,
                    stack_trace=stack_trace,
                )
        except Exception as e:
            logger.warning(
                "audit_log_store_failed",
                category=category.value,
                audit_message=message,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def log_task_event(
        self,
        event: str,
        task: EmbeddingTask,
        *,
        level: LogLevel = LogLevel.info,
        message: str | None = None,
        duration_ms: float | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
        stack_trace: str | None = None,
    ) -> None:
        """Audit a task lifecycle transition.

        Args:
            event: Short event name (enqueued, claimed, completed, ...).
            task: The task the event is about.
            level: Severity.
            message: Description; defaults to one built from the task.
            duration_ms: Processing duration, if measured.
            error: Failure reason, if any.
            metadata: Extra context merged with the task summary.
            stack_trace: Traceback of the failure, if captured.
        """
        context = {
            "event": event,
            "operation": task.operation.value,
            "priority": task.priority.value,
            "status": task.status.value,
            "attempts": task.attempts,
            "max_attempts": task.max_attempts,
            "slug": task.slug,
        }
        context.update(metadata or {})
        await self.log(
            level,
            LogCategory.task_lifecycle,
            message or f"Task {event}: {task.operation.value} {task.slug}",
            task_id=task.id,
            article_id=task.article_id,
            metadata=context,
            duration_ms=duration_ms,
            error=error,
            stack_trace=stack_trace,
        )

    async def log_worker_event(
        self,
        event: str,
        message: str,
        *,
        level: LogLevel = LogLevel.info,
        metadata: dict[str, Any] | None = None,
        error: str | None = None,
        stack_trace: str | None = None,
    ) -> None:
        """Audit a worker state change (started, stopped, store error, ...)."""
        await self.log(
            level,
            LogCategory.worker_status,
            message,
            metadata={"event": event, **(metadata or {})},
            error=error,
            stack_trace=stack_trace,
        )

    async def log_queue_operation(
        self,
        operation: str,
        message: str,
        *,
        level: LogLevel = LogLevel.info,
        operation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Audit a queue maintenance or admin operation."""
        await self.log(
            level,
            LogCategory.queue_operations,
            message,
            operation_id=operation_id,
            metadata={"operation": operation, **(metadata or {})},
            duration_ms=duration_ms,
        )

    async def log_performance_metric(
        self,
        metric: str,
        duration_ms: float,
        *,
        task_id: uuid.UUID | None = None,
        article_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Audit a timing measurement."""
        await self.log(
            LogLevel.debug,
            LogCategory.performance,
            f"{metric} took {duration_ms:.1f}ms",
            task_id=task_id,
            article_id=article_id,
            metadata={"metric": metric, **(metadata or {})},
            duration_ms=duration_ms,
        )

    async def log_bulk_operation(
        self,
        operation: str,
        affected: int,
        *,
        operation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Audit an operation touching many tasks at once."""
        await self.log(
            LogLevel.info,
            LogCategory.bulk_operations,
            f"{operation}: {affected} task(s) affected",
            operation_id=operation_id,
            metadata={"operation": operation, "affected": affected, **(metadata or {})},
        )

    def _require_storage(self) -> async_sessionmaker[AsyncSession]:
        if self.session_factory is None:
            raise RuntimeError("Audit log storage is not configured")
        return self.session_factory

    async def query_logs(self, filters: LogQueryFilters | None = None) -> list[AuditLogEntry]:
        """List stored audit entries newest first.

        Raises:
            RuntimeError: If the logger has no session factory.
        """
        filters = filters or LogQueryFilters()
        async with self._require_storage()() as session:
            return await list_log_entries(
                session,
                level=filters.level,
                category=filters.category,
                task_id=filters.task_id,
                article_id=filters.article_id,
                operation_id=filters.operation_id,
                start=filters.start,
                end=filters.end,
                limit=filters.limit,
                offset=filters.offset,
            )

    async def get_log_statistics(self, days: int = 7) -> LogStatistics:
        """Summarize the audit entries of the last ``days`` days."""
        since = utcnow() - timedelta(days=days)
        async with self._require_storage()() as session:
            by_level = await count_log_entries_by_level(session, since)
            by_category = await count_log_entries_by_category(session, since)
            oldest, newest = await get_log_time_range(session, since)

        return LogStatistics(
            days=days,
            total=sum(by_level.values()),
            by_level={level.value: count for level, count in by_level.items()},
            by_category={category.value: count for category, count in by_category.items()},
            recent_errors=by_level.get(LogLevel.error, 0),
            oldest=oldest,
            newest=newest,
        )

    async def cleanup_old_logs(self, retention_days: int = 90) -> int:
        """Delete audit entries older than the retention window.

        Returns:
            Number of entries deleted.
        """
        cutoff = utcnow() - timedelta(days=retention_days)
        async with self._require_storage()() as session:
            deleted = await delete_log_entries_before(session, cutoff)

        await self.log_queue_operation(
            "audit_cleanup",
            f"Deleted {deleted} audit entries older than {retention_days} days",
            metadata={"retention_days": retention_days, "deleted": deleted},
        )
        return deleted
