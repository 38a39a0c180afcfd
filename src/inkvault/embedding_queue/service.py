"""Embedding queue service.

EmbeddingQueueService is the single entry point producers, the background
worker and the admin surfaces use to talk to the task store. It adds
policy on top of the query layer (defaults, validation, audit events,
statistics and health rules) while every state change stays one atomic
statement in the database.

Each method opens its own short-lived session. Database errors
(sqlalchemy.exc.SQLAlchemyError) propagate to the caller unretried;
task-level outcomes never raise.

Example usage:
    >>> queue = EmbeddingQueueService(session_factory, config.embedding_queue)
    >>> task_id = await queue.enqueue_task(42, "my-article", "update")
    >>> task = await queue.claim_next_task()
    >>> await queue.record_success(task.id)
    >>> health = await queue.get_queue_health()
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from pydantic import BaseModel

from inkvault.config import EmbeddingQueueConfig
from inkvault.database.models.base import ensure_utc, utcnow
from inkvault.database.models.embedding_task import (
    EmbeddingTask,
    TaskOperation,
    TaskPriority,
    TaskStatus,
)
from inkvault.database.models.audit_log import LogCategory, LogLevel
from inkvault.database.queries import embedding_task as task_queries
from inkvault.database.queries.worker_status import get_worker_status
from inkvault.embedding_queue.audit import AuditLogger, new_operation_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from inkvault.database.models.worker_status import WorkerStatus

logger = structlog.get_logger(__name__)


class QueueStats(BaseModel):
    """Task counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class DetailedQueueStats(BaseModel):
    """Queue statistics with breakdowns and 24h activity.

    Attributes:
        stats: Counts per status.
        by_priority: Active (pending + processing) tasks per priority.
        by_operation: Active (pending + processing) tasks per operation.
        completed_last_24h: Tasks completed in the last 24 hours.
        failed_last_24h: Tasks that failed terminally in the last 24 hours,
            not counting superseded ones.
        superseded_last_24h: Pending tasks superseded by newer work in the
            last 24 hours.
        average_processing_seconds: Mean claim-to-completion time of tasks
            completed in the last 24 hours.
    """

    stats: QueueStats
    by_priority: dict[str, int]
    by_operation: dict[str, int]
    completed_last_24h: int
    failed_last_24h: int
    superseded_last_24h: int = 0
    average_processing_seconds: float | None = None


class QueueHealth(BaseModel):
    """Derived health of the queue.

    is_healthy is False exactly when issues is non-empty. Superseded tasks
    are reported apart and never count towards the failure rate.
    """

    is_healthy: bool
    issues: list[str]
    total_tasks: int
    pending_tasks: int
    processing_tasks: int
    stuck_tasks: int
    oldest_pending_task: datetime | None = None
    completed_last_24h: int
    failed_last_24h: int
    superseded_last_24h: int = 0
    failure_rate_last_24h: float | None = None
    average_processing_seconds: float | None = None
    worker_running: bool | None = None
    worker_last_heartbeat: datetime | None = None


def _coerce(enum_cls: Any, value: Any, field: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {field}: {value}. Must be one of {valid}") from None


def _mean_seconds(windows: list[tuple[datetime, datetime]]) -> float | None:
    durations = [
        (ensure_utc(finished) - ensure_utc(started)).total_seconds()
        for started, finished in windows
        if started is not None and finished is not None
    ]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 3)


class EmbeddingQueueService:
    """Durable, prioritized embedding task queue.

    Attributes:
        session_factory: Factory producing AsyncSession instances
        config: Queue configuration (defaults, health thresholds, retention)
        audit: Audit logger receiving task and queue events
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: EmbeddingQueueConfig | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the queue service.

        Args:
            session_factory: Factory producing AsyncSession instances.
            config: Queue configuration; defaults are used when omitted.
            audit: Audit logger; a database-backed one is created if omitted.
            clock: Source of the current UTC time.
        """
        self.session_factory = session_factory
        self.config = config or EmbeddingQueueConfig()
        self.audit = audit or AuditLogger(
            session_factory, enabled=self.config.audit_log_enabled
        )
        self._clock = clock

    # --- Producers ---

    async def enqueue_task(
        self,
        article_id: int,
        slug: str,
        operation: TaskOperation | str,
        priority: TaskPriority | str = TaskPriority.normal,
        metadata: dict[str, Any] | None = None,
        max_attempts: int | None = None,
        scheduled_at: datetime | None = None,
    ) -> UUID:
        """Insert a pending task and return its ID.

        No deduplication is performed; producers that want to replace older
        work call supersede_pending_tasks first.

        Args:
            article_id: Article the task belongs to.
            slug: Article slug at enqueue time.
            operation: create, update or delete.
            priority: high, normal or low.
            metadata: Optional JSON payload.
            max_attempts: Attempt budget (config default when omitted).
            scheduled_at: Earliest claim time (now when omitted).

        Returns:
            The new task's UUID.

        Raises:
            ValueError: If operation, priority or max_attempts is invalid.
        """
        operation = _coerce(TaskOperation, operation, "operation")
        priority = _coerce(TaskPriority, priority, "priority")
        if max_attempts is None:
            max_attempts = self.config.max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        now = self._clock()
        async with self.session_factory() as session:
            task = await task_queries.create_task(
                session,
                article_id=article_id,
                slug=slug,
                operation=operation,
                priority=priority,
                max_attempts=max_attempts,
                metadata=metadata,
                scheduled_at=scheduled_at,
                now=now,
            )

        await self.audit.log_task_event("enqueued", task, metadata=metadata)
        return task.id

    # --- Reads ---

    async def get_task_status(self, task_id: UUID) -> EmbeddingTask | None:
        """Return the task with this ID, or None."""
        async with self.session_factory() as session:
            return await task_queries.get_task(session, task_id)

    async def get_tasks_by_status(
        self,
        status: TaskStatus | str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[EmbeddingTask]:
        """List tasks in one status, high priority first then oldest schedule.

        Raises:
            ValueError: If status is not a known task status.
        """
        status = _coerce(TaskStatus, status, "status")
        async with self.session_factory() as session:
            return await task_queries.list_tasks_by_status(
                session, status, limit=limit, offset=offset
            )

    async def get_tasks_for_article(self, article_id: int) -> list[EmbeddingTask]:
        """List every task of an article, newest first."""
        async with self.session_factory() as session:
            return await task_queries.list_tasks_for_article(session, article_id)

    async def find_duplicate_tasks(self, task: EmbeddingTask) -> list[EmbeddingTask]:
        """Other tasks with the same article and operation."""
        async with self.session_factory() as session:
            return await task_queries.find_duplicate_tasks(session, task)

    async def get_worker_status(self) -> WorkerStatus | None:
        """The singleton worker status row, if it exists."""
        async with self.session_factory() as session:
            return await get_worker_status(session)

    # --- Worker transitions ---

    async def claim_next_task(self) -> EmbeddingTask | None:
        """Atomically claim the next eligible task, or return None."""
        now = self._clock()
        async with self.session_factory() as session:
            task = await task_queries.claim_next_task(session, now)

        if task is not None:
            await self.audit.log_task_event("claimed", task, level=LogLevel.debug)
        return task

    async def _require_task(self, task_id: UUID) -> EmbeddingTask:
        task = await self.get_task_status(task_id)
        if task is None:
            raise ValueError(f"Embedding task {task_id} not found")
        return task

    async def record_success(
        self,
        task_id: UUID,
        duration_ms: float | None = None,
    ) -> EmbeddingTask:
        """Mark a claimed task completed.

        A task that is not processing is returned unchanged. That covers a
        task the stuck-task sweep already sent back to pending.

        Raises:
            ValueError: If no task has this ID.
        """
        now = self._clock()
        async with self.session_factory() as session:
            task = await task_queries.mark_completed(session, task_id, now)

        if task is None:
            task = await self._require_task(task_id)
            logger.warning(
                "embedding_task_not_active",
                task_id=str(task_id),
                status=task.status.value,
                transition="completed",
            )
            return task

        await self.audit.log_task_event("completed", task, duration_ms=duration_ms)
        return task

    async def record_failure(
        self,
        task_id: UUID,
        error: str,
        retry_delay: timedelta | None = None,
        duration_ms: float | None = None,
        stack_trace: str | None = None,
    ) -> EmbeddingTask:
        """Record a failed attempt; retry if budget remains, else fail terminally.

        Args:
            task_id: Task that failed.
            error: Failure reason stored on the task.
            retry_delay: Delay before the retry becomes eligible (immediate
                when omitted).
            duration_ms: How long the failed attempt ran.
            stack_trace: Traceback of the failure, kept in the audit log.

        Returns:
            The updated task: pending (retry scheduled) or failed.
            A task that is not processing is returned unchanged.

        Raises:
            ValueError: If no task has this ID.
        """
        now = self._clock()
        retry_at = now + (retry_delay or timedelta(0))
        async with self.session_factory() as session:
            task = await task_queries.mark_attempt_failed(
                session, task_id, error, retry_at=retry_at, now=now
            )

        if task is None:
            task = await self._require_task(task_id)
            logger.warning(
                "embedding_task_not_active",
                task_id=str(task_id),
                status=task.status.value,
                transition="failed",
            )
            return task

        if task.status == TaskStatus.failed:
            logger.error(
                "embedding_task_permanently_failed",
                task_id=str(task_id),
                article_id=task.article_id,
                attempts=task.attempts,
                error=error,
            )
            await self.audit.log_task_event(
                "permanently_failed",
                task,
                level=LogLevel.error,
                message=f"Task failed after {task.attempts} attempt(s): {error}",
                duration_ms=duration_ms,
                error=error,
                stack_trace=stack_trace,
            )
        else:
            await self.audit.log_task_event(
                "retry_scheduled",
                task,
                level=LogLevel.warn,
                message=f"Task attempt {task.attempts} failed, retry scheduled",
                duration_ms=duration_ms,
                error=error,
                metadata={"retry_at": retry_at.isoformat()},
                stack_trace=stack_trace,
            )
        return task

    # --- Maintenance ---

    async def reset_stuck_tasks(self, timeout: timedelta | None = None) -> int:
        """Return tasks stuck in processing longer than timeout to pending.

        Args:
            timeout: Processing age considered stuck (config default when omitted).

        Returns:
            Number of tasks reset.
        """
        if timeout is None:
            timeout = timedelta(minutes=self.config.stuck_task_timeout_minutes)
        cutoff = self._clock() - timeout
        async with self.session_factory() as session:
            tasks = await task_queries.reset_stuck_tasks(session, cutoff)

        for task in tasks:
            await self.audit.log_task_event(
                "stuck_reset",
                task,
                level=LogLevel.warn,
                message="Task was stuck in processing and has been reset to pending",
                metadata={"timeout_minutes": round(timeout.total_seconds() / 60, 2)},
            )
        if tasks:
            await self.audit.log_bulk_operation(
                "reset_stuck_tasks",
                len(tasks),
                metadata={"timeout_minutes": round(timeout.total_seconds() / 60, 2)},
            )
        return len(tasks)

    async def clear_completed_tasks(self, cutoff: datetime | None = None) -> int:
        """Delete completed tasks that finished before cutoff.

        Args:
            cutoff: Completion-time cutoff (now minus the retention window
                when omitted).

        Returns:
            Number of tasks deleted. Tasks in other statuses are never touched.
        """
        if cutoff is None:
            cutoff = self._clock() - timedelta(days=self.config.cleanup_retention_days)
        async with self.session_factory() as session:
            deleted = await task_queries.delete_finished_tasks(
                session, TaskStatus.completed, cutoff
            )

        await self.audit.log_bulk_operation(
            "clear_completed_tasks", deleted, metadata={"cutoff": cutoff.isoformat()}
        )
        return deleted

    async def clear_failed_tasks(self, cutoff: datetime) -> int:
        """Delete failed tasks that finished before cutoff."""
        async with self.session_factory() as session:
            deleted = await task_queries.delete_finished_tasks(
                session, TaskStatus.failed, cutoff
            )

        await self.audit.log_bulk_operation(
            "clear_failed_tasks", deleted, metadata={"cutoff": cutoff.isoformat()}
        )
        return deleted

    # --- Admin ---

    async def retry_task(self, task_id: UUID) -> EmbeddingTask | None:
        """Send a failed task back to pending with one more attempt.

        Returns:
            The requeued task, or None when the task is not in failed.
        """
        async with self.session_factory() as session:
            task = await task_queries.requeue_failed_task(session, task_id, self._clock())

        if task is not None:
            await self.audit.log_task_event(
                "manual_retry",
                task,
                message="Failed task requeued by administrator",
                metadata={"reason": "manual_retry"},
            )
        return task

    async def retry_failed_tasks(self, max_attempts: int | None = None) -> int:
        """Requeue failed tasks that still have attempt budget.

        Args:
            max_attempts: Override budget; tasks with fewer attempts than this
                are retried and their budget raised to it.

        Returns:
            Number of tasks requeued.
        """
        operation_id = new_operation_id("retry_failed")
        async with self.session_factory() as session:
            count = await task_queries.requeue_failed_tasks(
                session, self._clock(), max_attempts=max_attempts
            )

        await self.audit.log_bulk_operation(
            "retry_failed_tasks",
            count,
            operation_id=operation_id,
            metadata={"max_attempts": max_attempts},
        )
        return count

    async def supersede_pending_tasks(
        self,
        article_id: int,
        reason: str,
        operation: TaskOperation | str | None = None,
    ) -> int:
        """Fail an article's pending tasks because newer work replaces them.

        Returns:
            Number of tasks superseded.
        """
        if operation is not None:
            operation = _coerce(TaskOperation, operation, "operation")
        async with self.session_factory() as session:
            count = await task_queries.supersede_pending_tasks(
                session, article_id, reason, self._clock(), operation=operation
            )

        if count:
            await self.audit.log(
                LogLevel.info,
                LogCategory.task_lifecycle,
                f"Superseded {count} pending task(s): {reason}",
                article_id=article_id,
                metadata={"reason": reason, "count": count},
            )
        return count

    # --- Statistics and health ---

    async def get_queue_stats(self) -> QueueStats:
        """Task counts per status."""
        async with self.session_factory() as session:
            counts = await task_queries.count_by_status(session)
        return QueueStats(
            pending=counts[TaskStatus.pending],
            processing=counts[TaskStatus.processing],
            completed=counts[TaskStatus.completed],
            failed=counts[TaskStatus.failed],
            total=sum(counts.values()),
        )

    async def get_detailed_queue_stats(self) -> DetailedQueueStats:
        """Statistics with priority/operation breakdowns and 24h activity."""
        since = self._clock() - timedelta(hours=24)
        async with self.session_factory() as session:
            counts = await task_queries.count_by_status(session)
            by_priority = await task_queries.count_active_by_priority(session)
            by_operation = await task_queries.count_active_by_operation(session)
            finished = await task_queries.count_finished_since(session, since)
            superseded = await task_queries.count_superseded_since(session, since)
            windows = await task_queries.list_processing_windows(session, since)

        return DetailedQueueStats(
            stats=QueueStats(
                pending=counts[TaskStatus.pending],
                processing=counts[TaskStatus.processing],
                completed=counts[TaskStatus.completed],
                failed=counts[TaskStatus.failed],
                total=sum(counts.values()),
            ),
            by_priority={p.value: n for p, n in by_priority.items()},
            by_operation={o.value: n for o, n in by_operation.items()},
            completed_last_24h=finished[TaskStatus.completed],
            failed_last_24h=finished[TaskStatus.failed],
            superseded_last_24h=superseded,
            average_processing_seconds=_mean_seconds(windows),
        )

    async def get_queue_health(self) -> QueueHealth:
        """Derive queue health from counts, ages and the 24h failure rate.

        The queue is unhealthy when any of these holds:
        - more pending tasks than health_max_pending
        - the oldest pending task is older than health_max_pending_age_hours
        - a task has been processing longer than the stuck-task timeout
        - at least health_min_failure_samples tasks finished in the last 24h
          and the failed share exceeds health_max_failure_rate

        A degraded but reachable queue is reported, never raised.
        """
        now = self._clock()
        since = now - timedelta(hours=24)
        stuck_cutoff = now - timedelta(minutes=self.config.stuck_task_timeout_minutes)

        async with self.session_factory() as session:
            counts = await task_queries.count_by_status(session)
            oldest_pending = ensure_utc(
                await task_queries.get_oldest_pending_created_at(session)
            )
            stuck = await task_queries.count_stuck_tasks(session, stuck_cutoff)
            finished = await task_queries.count_finished_since(session, since)
            superseded = await task_queries.count_superseded_since(session, since)
            windows = await task_queries.list_processing_windows(session, since)
            worker = await get_worker_status(session)

        issues: list[str] = []
        pending = counts[TaskStatus.pending]
        if pending > self.config.health_max_pending:
            issues.append(f"High number of pending tasks: {pending}")

        if oldest_pending is not None:
            age_hours = (now - oldest_pending).total_seconds() / 3600
            if age_hours > self.config.health_max_pending_age_hours:
                issues.append(
                    f"Old pending tasks: oldest task is {int(age_hours)} hours old"
                )

        if stuck > 0:
            issues.append(
                f"Possible stuck tasks: {stuck} task(s) processing for more than "
                f"{self.config.stuck_task_timeout_minutes} minutes"
            )

        completed_24h = finished[TaskStatus.completed]
        failed_24h = finished[TaskStatus.failed]
        finished_24h = completed_24h + failed_24h
        failure_rate = failed_24h / finished_24h if finished_24h else None
        if (
            failure_rate is not None
            and finished_24h >= self.config.health_min_failure_samples
            and failure_rate > self.config.health_max_failure_rate
        ):
            issues.append(
                f"High failure rate: {failed_24h} of {finished_24h} tasks failed "
                f"in the last 24 hours ({failure_rate:.0%})"
            )

        health = QueueHealth(
            is_healthy=not issues,
            issues=issues,
            total_tasks=sum(counts.values()),
            pending_tasks=pending,
            processing_tasks=counts[TaskStatus.processing],
            stuck_tasks=stuck,
            oldest_pending_task=oldest_pending,
            completed_last_24h=completed_24h,
            failed_last_24h=failed_24h,
            superseded_last_24h=superseded,
            failure_rate_last_24h=round(failure_rate, 4) if failure_rate is not None else None,
            average_processing_seconds=_mean_seconds(windows),
            worker_running=worker.is_running if worker is not None else None,
            worker_last_heartbeat=ensure_utc(worker.last_heartbeat) if worker else None,
        )

        if issues:
            logger.warning("embedding_queue_unhealthy", issues=issues)
        return health
