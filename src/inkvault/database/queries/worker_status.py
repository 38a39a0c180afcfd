"""Worker status query functions for Inkvault.

The embedding_worker_status table holds a single row. ensure_worker_status
creates it when missing; every other writer is a plain UPDATE of id = 1.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inkvault.database.models.worker_status import WORKER_STATUS_ID, WorkerStatus

logger = structlog.get_logger(__name__)


async def get_worker_status(session: AsyncSession) -> WorkerStatus | None:
    """Retrieve the singleton worker status row."""
    stmt = select(WorkerStatus).where(WorkerStatus.id == WORKER_STATUS_ID)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def ensure_worker_status(session: AsyncSession) -> None:
    """Create the singleton row if it does not exist yet.

    A concurrent insert of the same row is tolerated; the primary key and
    the id = 1 check keep the table at one row either way.
    """
    existing = await get_worker_status(session)
    await session.rollback()
    if existing is not None:
        return

    try:
        async with session.begin():
            session.add(WorkerStatus(id=WORKER_STATUS_ID, is_running=False))
    except IntegrityError:
        logger.debug("worker_status_row_already_exists")
        return

    logger.info("worker_status_row_created")


async def mark_worker_started(session: AsyncSession, now: datetime) -> None:
    """Flag the worker as running and stamp start and heartbeat times."""
    stmt = (
        update(WorkerStatus)
        .where(WorkerStatus.id == WORKER_STATUS_ID)
        .values(is_running=True, started_at=now, last_heartbeat=now, updated_at=now)
    )
    async with session.begin():
        await session.execute(stmt)


async def mark_worker_stopped(session: AsyncSession, now: datetime) -> None:
    """Flag the worker as not running."""
    stmt = (
        update(WorkerStatus)
        .where(WorkerStatus.id == WORKER_STATUS_ID)
        .values(is_running=False, updated_at=now)
    )
    async with session.begin():
        await session.execute(stmt)


async def record_heartbeat(session: AsyncSession, now: datetime) -> None:
    """Refresh last_heartbeat."""
    stmt = (
        update(WorkerStatus)
        .where(WorkerStatus.id == WORKER_STATUS_ID)
        .values(last_heartbeat=now, updated_at=now)
    )
    async with session.begin():
        await session.execute(stmt)


async def increment_counters(
    session: AsyncSession,
    succeeded: bool,
    now: datetime,
) -> None:
    """Count one finished task and refresh the heartbeat.

    Args:
        session: Fresh async database session.
        succeeded: Whether the task completed successfully.
        now: Heartbeat time.
    """
    values = {
        "tasks_processed": WorkerStatus.tasks_processed + 1,
        "last_heartbeat": now,
        "updated_at": now,
    }
    if succeeded:
        values["tasks_succeeded"] = WorkerStatus.tasks_succeeded + 1
    else:
        values["tasks_failed"] = WorkerStatus.tasks_failed + 1

    stmt = update(WorkerStatus).where(WorkerStatus.id == WORKER_STATUS_ID).values(**values)
    async with session.begin():
        await session.execute(stmt)
