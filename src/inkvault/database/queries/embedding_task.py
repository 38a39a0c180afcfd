"""Embedding task query functions for Inkvault.

Provides async functions for inserting, claiming, completing, failing,
resetting and purging EmbeddingTask records. Every state change is a single
conditional UPDATE or DELETE so that concurrent callers cannot both win the
same transition; none of these functions reads a row and then writes it
back.

Write functions open their own transaction with ``session.begin()`` and
expect a fresh session. Read functions only execute SELECTs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import DateTime, case, delete, func, literal, null, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from inkvault.database.models.embedding_task import (
    EmbeddingTask,
    TaskOperation,
    TaskPriority,
    TaskStatus,
)

logger = structlog.get_logger(__name__)

STUCK_RESET_MESSAGE = "Task was stuck in processing state and has been reset"
SUPERSEDED_PREFIX = "Superseded: "

# high sorts first
PRIORITY_RANK = case(
    (EmbeddingTask.priority == TaskPriority.high, 0),
    (EmbeddingTask.priority == TaskPriority.normal, 1),
    else_=2,
)

ACTIVE_STATUSES = (TaskStatus.pending, TaskStatus.processing)


def _status(value: TaskStatus) -> Any:
    return literal(value, EmbeddingTask.__table__.c.status.type)


def _timestamp(value: datetime) -> Any:
    return literal(value, DateTime(timezone=True))


def _not_superseded() -> Any:
    return or_(
        EmbeddingTask.error_message.is_(None),
        EmbeddingTask.error_message.not_like(f"{SUPERSEDED_PREFIX}%"),
    )


async def create_task(
    session: AsyncSession,
    article_id: int,
    slug: str,
    operation: TaskOperation,
    priority: TaskPriority = TaskPriority.normal,
    max_attempts: int = 3,
    metadata: dict[str, Any] | None = None,
    scheduled_at: datetime | None = None,
    now: datetime | None = None,
) -> EmbeddingTask:
    """Insert a new pending embedding task.

    Args:
        session: Fresh async database session.
        article_id: Article the task belongs to.
        slug: Article slug at enqueue time.
        operation: create, update or delete.
        priority: Scheduling tier.
        max_attempts: Attempt budget.
        metadata: Optional JSON payload.
        scheduled_at: Earliest claim time (defaults to now).
        now: Creation time (defaults to the model default).

    Returns:
        The newly created EmbeddingTask instance.
    """
    task = EmbeddingTask(
        article_id=article_id,
        slug=slug,
        operation=operation,
        priority=priority,
        status=TaskStatus.pending,
        attempts=0,
        max_attempts=max_attempts,
        task_metadata=metadata,
    )
    if now is not None:
        task.created_at = now
        task.scheduled_at = scheduled_at or now
    elif scheduled_at is not None:
        task.scheduled_at = scheduled_at

    async with session.begin():
        session.add(task)
        await session.flush()
        await session.refresh(task)

    logger.info(
        "embedding_task_created",
        task_id=str(task.id),
        article_id=article_id,
        slug=slug,
        operation=operation.value,
        priority=priority.value,
    )

    return task


async def get_task(
    session: AsyncSession,
    task_id: UUID,
) -> EmbeddingTask | None:
    """Retrieve a task by ID."""
    stmt = select(EmbeddingTask).where(EmbeddingTask.id == task_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_tasks_by_status(
    session: AsyncSession,
    status: TaskStatus,
    limit: int = 50,
    offset: int = 0,
) -> list[EmbeddingTask]:
    """List tasks in one status in claim order.

    Args:
        session: Active async database session.
        status: Status to filter by.
        limit: Page size.
        offset: Rows to skip.

    Returns:
        Tasks ordered by priority (high first) then scheduled_at ascending.
    """
    stmt = (
        select(EmbeddingTask)
        .where(EmbeddingTask.status == status)
        .order_by(
            PRIORITY_RANK,
            EmbeddingTask.scheduled_at.asc(),
            EmbeddingTask.created_at.asc(),
        )
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_tasks_for_article(
    session: AsyncSession,
    article_id: int,
    limit: int | None = None,
) -> list[EmbeddingTask]:
    """List every task of an article, newest first."""
    stmt = (
        select(EmbeddingTask)
        .where(EmbeddingTask.article_id == article_id)
        .order_by(EmbeddingTask.created_at.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_duplicate_tasks(
    session: AsyncSession,
    task: EmbeddingTask,
) -> list[EmbeddingTask]:
    """Find other tasks with the same article and operation, newest first."""
    stmt = (
        select(EmbeddingTask)
        .where(
            EmbeddingTask.article_id == task.article_id,
            EmbeddingTask.operation == task.operation,
            EmbeddingTask.id != task.id,
        )
        .order_by(EmbeddingTask.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def claim_next_task(
    session: AsyncSession,
    now: datetime,
) -> EmbeddingTask | None:
    """Atomically claim the most urgent eligible pending task.

    The candidate is picked by a sub-select ordered by priority tier and
    scheduled_at, locked with FOR UPDATE SKIP LOCKED on PostgreSQL, and the
    outer UPDATE re-checks status = 'pending'. A concurrent claimer that
    loses the race updates zero rows and gets None.

    Args:
        session: Fresh async database session.
        now: Claim time; also the eligibility cutoff for scheduled_at.

    Returns:
        The claimed task (now processing), or None if nothing is eligible.
    """
    candidate = (
        select(EmbeddingTask.id)
        .where(
            EmbeddingTask.status == TaskStatus.pending,
            EmbeddingTask.scheduled_at <= now,
        )
        .order_by(
            PRIORITY_RANK,
            EmbeddingTask.scheduled_at.asc(),
            EmbeddingTask.created_at.asc(),
        )
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        update(EmbeddingTask)
        .where(
            EmbeddingTask.id == candidate,
            EmbeddingTask.status == TaskStatus.pending,
        )
        .values(status=TaskStatus.processing, processed_at=now)
        .returning(EmbeddingTask)
        .execution_options(synchronize_session=False)
    )

    async with session.begin():
        result = await session.execute(stmt)
        task = result.scalar_one_or_none()

    if task is not None:
        logger.info(
            "embedding_task_claimed",
            task_id=str(task.id),
            article_id=task.article_id,
            operation=task.operation.value,
            priority=task.priority.value,
            attempts=task.attempts,
        )

    return task


async def mark_completed(
    session: AsyncSession,
    task_id: UUID,
    now: datetime,
) -> EmbeddingTask | None:
    """Move a claimed task to completed and clear its error.

    Only a processing task completes. A task that was never claimed, or was
    reset by the stuck-task sweep while a slow worker still held it, is left
    alone and will be claimed again.

    Returns:
        The updated task, or None if no processing task has that ID.
    """
    stmt = (
        update(EmbeddingTask)
        .where(
            EmbeddingTask.id == task_id,
            EmbeddingTask.status == TaskStatus.processing,
        )
        .values(
            status=TaskStatus.completed,
            completed_at=now,
            error_message=None,
        )
        .returning(EmbeddingTask)
        .execution_options(synchronize_session=False)
    )

    async with session.begin():
        result = await session.execute(stmt)
        task = result.scalar_one_or_none()

    if task is not None:
        logger.info(
            "embedding_task_completed",
            task_id=str(task_id),
            article_id=task.article_id,
            attempts=task.attempts,
        )

    return task


async def mark_attempt_failed(
    session: AsyncSession,
    task_id: UUID,
    error: str,
    retry_at: datetime,
    now: datetime,
) -> EmbeddingTask | None:
    """Record a failed attempt in a single statement.

    attempts is incremented; when the incremented value is still below
    max_attempts the task returns to pending at retry_at, otherwise it
    becomes failed with completed_at = now. All right-hand expressions see
    the pre-update row, so the retry decision and the increment agree.

    Args:
        session: Fresh async database session.
        task_id: Task that failed.
        error: Failure reason to store.
        retry_at: scheduled_at for the retry path.
        now: Time of the failure.

    Returns:
        The updated task, or None if no processing task has that ID.
    """
    will_retry = EmbeddingTask.attempts + 1 < EmbeddingTask.max_attempts
    stmt = (
        update(EmbeddingTask)
        .where(
            EmbeddingTask.id == task_id,
            EmbeddingTask.status == TaskStatus.processing,
        )
        .values(
            attempts=EmbeddingTask.attempts + 1,
            status=case(
                (will_retry, _status(TaskStatus.pending)),
                else_=_status(TaskStatus.failed),
            ),
            scheduled_at=case(
                (will_retry, _timestamp(retry_at)),
                else_=EmbeddingTask.scheduled_at,
            ),
            processed_at=case(
                (will_retry, null()),
                else_=EmbeddingTask.processed_at,
            ),
            completed_at=case(
                (will_retry, null()),
                else_=_timestamp(now),
            ),
            error_message=error,
        )
        .returning(EmbeddingTask)
        .execution_options(synchronize_session=False)
    )

    async with session.begin():
        result = await session.execute(stmt)
        task = result.scalar_one_or_none()

    if task is not None:
        logger.info(
            "embedding_task_attempt_failed",
            task_id=str(task_id),
            article_id=task.article_id,
            attempts=task.attempts,
            max_attempts=task.max_attempts,
            status=task.status.value,
        )

    return task


async def reset_stuck_tasks(
    session: AsyncSession,
    cutoff: datetime,
) -> list[EmbeddingTask]:
    """Return processing tasks claimed before cutoff to pending.

    attempts is not touched; a hung attempt is not a recorded failure.
    Running this twice with the same cutoff resets nothing the second time.

    Returns:
        The tasks that were reset.
    """
    stmt = (
        update(EmbeddingTask)
        .where(
            EmbeddingTask.status == TaskStatus.processing,
            EmbeddingTask.processed_at < cutoff,
        )
        .values(
            status=TaskStatus.pending,
            processed_at=None,
            error_message=STUCK_RESET_MESSAGE,
        )
        .returning(EmbeddingTask)
        .execution_options(synchronize_session=False)
    )

    async with session.begin():
        result = await session.execute(stmt)
        tasks = list(result.scalars().all())

    if tasks:
        logger.warning(
            "embedding_tasks_stuck_reset",
            count=len(tasks),
            task_ids=[str(t.id) for t in tasks],
        )

    return tasks


async def delete_finished_tasks(
    session: AsyncSession,
    status: TaskStatus,
    cutoff: datetime,
) -> int:
    """Delete tasks in a terminal status that finished before cutoff.

    Args:
        session: Fresh async database session.
        status: completed or failed.
        cutoff: Rows with completed_at older than this are removed.

    Returns:
        Number of deleted rows.

    Raises:
        ValueError: If status is not terminal.
    """
    if status not in (TaskStatus.completed, TaskStatus.failed):
        raise ValueError(f"Cannot purge tasks in status {status.value}")

    stmt = (
        delete(EmbeddingTask)
        .where(
            EmbeddingTask.status == status,
            EmbeddingTask.completed_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )

    async with session.begin():
        result = await session.execute(stmt)

    deleted = result.rowcount or 0
    logger.info(
        "embedding_tasks_purged",
        status=status.value,
        cutoff=cutoff.isoformat(),
        deleted=deleted,
    )
    return deleted


def _requeue_values(now: datetime) -> dict[str, Any]:
    return {
        "status": TaskStatus.pending,
        "scheduled_at": now,
        "processed_at": None,
        "completed_at": None,
        "error_message": None,
    }


async def requeue_failed_task(
    session: AsyncSession,
    task_id: UUID,
    now: datetime,
) -> EmbeddingTask | None:
    """Manually send one failed task back to pending with one more attempt.

    Returns:
        The updated task, or None if the task is not in failed.
    """
    stmt = (
        update(EmbeddingTask)
        .where(
            EmbeddingTask.id == task_id,
            EmbeddingTask.status == TaskStatus.failed,
        )
        .values(
            max_attempts=case(
                (
                    EmbeddingTask.max_attempts <= EmbeddingTask.attempts,
                    EmbeddingTask.attempts + 1,
                ),
                else_=EmbeddingTask.max_attempts,
            ),
            **_requeue_values(now),
        )
        .returning(EmbeddingTask)
        .execution_options(synchronize_session=False)
    )

    async with session.begin():
        result = await session.execute(stmt)
        task = result.scalar_one_or_none()

    if task is not None:
        logger.info(
            "embedding_task_requeued",
            task_id=str(task_id),
            attempts=task.attempts,
            max_attempts=task.max_attempts,
        )

    return task


async def requeue_failed_tasks(
    session: AsyncSession,
    now: datetime,
    max_attempts: int | None = None,
) -> int:
    """Send failed tasks with remaining budget back to pending.

    Superseded tasks are never requeued, whatever the budget.

    Args:
        session: Fresh async database session.
        now: New scheduled_at.
        max_attempts: When given, tasks with attempts below this value are
            retried and their budget is raised to it. When None, each task's
            own max_attempts is the limit.

    Returns:
        Number of tasks requeued.
    """
    values = _requeue_values(now)
    stmt = update(EmbeddingTask).where(
        EmbeddingTask.status == TaskStatus.failed,
        _not_superseded(),
    )
    if max_attempts is None:
        stmt = stmt.where(EmbeddingTask.attempts < EmbeddingTask.max_attempts)
    else:
        stmt = stmt.where(EmbeddingTask.attempts < max_attempts)
        values["max_attempts"] = case(
            (EmbeddingTask.max_attempts < max_attempts, max_attempts),
            else_=EmbeddingTask.max_attempts,
        )
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    async with session.begin():
        result = await session.execute(stmt)

    count = result.rowcount or 0
    logger.info("embedding_failed_tasks_requeued", count=count, max_attempts=max_attempts)
    return count


async def supersede_pending_tasks(
    session: AsyncSession,
    article_id: int,
    reason: str,
    now: datetime,
    operation: TaskOperation | None = None,
) -> int:
    """Fail an article's pending tasks because newer work replaces them.

    Each row is updated with its own status = 'pending' guard, so a task the
    worker claims in the meantime is left alone. The retry budget is
    exhausted so bulk retry does not bring superseded work back.

    Args:
        session: Fresh async database session.
        article_id: Article whose pending tasks are superseded.
        reason: Stored as metadata["reason"].
        now: Time recorded as completed_at.
        operation: Only supersede tasks with this operation, if given.

    Returns:
        Number of tasks superseded.
    """
    async with session.begin():
        select_stmt = select(EmbeddingTask.id, EmbeddingTask.task_metadata).where(
            EmbeddingTask.article_id == article_id,
            EmbeddingTask.status == TaskStatus.pending,
        )
        if operation is not None:
            select_stmt = select_stmt.where(EmbeddingTask.operation == operation)
        rows = (await session.execute(select_stmt)).all()

        superseded = 0
        for task_id, existing in rows:
            metadata = dict(existing or {})
            metadata["reason"] = reason
            metadata["superseded_at"] = now.isoformat()
            stmt = (
                update(EmbeddingTask)
                .where(
                    EmbeddingTask.id == task_id,
                    EmbeddingTask.status == TaskStatus.pending,
                )
                .values(
                    status=TaskStatus.failed,
                    max_attempts=EmbeddingTask.attempts,
                    completed_at=now,
                    error_message=f"{SUPERSEDED_PREFIX}{reason}",
                    task_metadata=metadata,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            superseded += result.rowcount or 0

    if superseded:
        logger.info(
            "embedding_tasks_superseded",
            article_id=article_id,
            reason=reason,
            count=superseded,
        )

    return superseded


async def count_by_status(session: AsyncSession) -> dict[TaskStatus, int]:
    """Count tasks per status; every status is present in the result."""
    stmt = select(EmbeddingTask.status, func.count()).group_by(EmbeddingTask.status)
    result = await session.execute(stmt)
    counts = {status: 0 for status in TaskStatus}
    for status, count in result.all():
        counts[status] = count
    return counts


async def count_active_by_priority(session: AsyncSession) -> dict[TaskPriority, int]:
    """Count pending and processing tasks per priority."""
    stmt = (
        select(EmbeddingTask.priority, func.count())
        .where(EmbeddingTask.status.in_(ACTIVE_STATUSES))
        .group_by(EmbeddingTask.priority)
    )
    result = await session.execute(stmt)
    counts = {priority: 0 for priority in TaskPriority}
    for priority, count in result.all():
        counts[priority] = count
    return counts


async def count_active_by_operation(session: AsyncSession) -> dict[TaskOperation, int]:
    """Count pending and processing tasks per operation."""
    stmt = (
        select(EmbeddingTask.operation, func.count())
        .where(EmbeddingTask.status.in_(ACTIVE_STATUSES))
        .group_by(EmbeddingTask.operation)
    )
    result = await session.execute(stmt)
    counts = {operation: 0 for operation in TaskOperation}
    for operation, count in result.all():
        counts[operation] = count
    return counts


async def count_finished_since(
    session: AsyncSession,
    since: datetime,
) -> dict[TaskStatus, int]:
    """Count tasks that reached completed or failed at or after since.

    Superseded tasks are left out; see count_superseded_since.
    """
    stmt = (
        select(EmbeddingTask.status, func.count())
        .where(
            EmbeddingTask.status.in_([TaskStatus.completed, TaskStatus.failed]),
            EmbeddingTask.completed_at >= since,
            _not_superseded(),
        )
        .group_by(EmbeddingTask.status)
    )
    result = await session.execute(stmt)
    counts = {TaskStatus.completed: 0, TaskStatus.failed: 0}
    for status, count in result.all():
        counts[status] = count
    return counts


async def count_superseded_since(session: AsyncSession, since: datetime) -> int:
    """Count tasks superseded at or after since."""
    stmt = select(func.count()).where(
        EmbeddingTask.status == TaskStatus.failed,
        EmbeddingTask.completed_at >= since,
        EmbeddingTask.error_message.like(f"{SUPERSEDED_PREFIX}%"),
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def list_processing_windows(
    session: AsyncSession,
    since: datetime,
) -> list[tuple[datetime, datetime]]:
    """(processed_at, completed_at) pairs of tasks completed since a time."""
    stmt = select(EmbeddingTask.processed_at, EmbeddingTask.completed_at).where(
        EmbeddingTask.status == TaskStatus.completed,
        EmbeddingTask.completed_at >= since,
        EmbeddingTask.processed_at.is_not(None),
    )
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def get_oldest_pending_created_at(session: AsyncSession) -> datetime | None:
    """Creation time of the oldest pending task, if any."""
    stmt = select(func.min(EmbeddingTask.created_at)).where(
        EmbeddingTask.status == TaskStatus.pending
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_stuck_tasks(session: AsyncSession, cutoff: datetime) -> int:
    """Count processing tasks claimed before cutoff."""
    stmt = select(func.count()).where(
        EmbeddingTask.status == TaskStatus.processing,
        EmbeddingTask.processed_at < cutoff,
    )
    result = await session.execute(stmt)
    return result.scalar_one()
