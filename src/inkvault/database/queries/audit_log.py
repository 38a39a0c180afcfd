"""Audit log query functions for Inkvault.

Insert, filtered listing, aggregate statistics and retention purge for
AuditLogEntry records.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from inkvault.database.models.audit_log import AuditLogEntry, LogCategory, LogLevel

logger = structlog.get_logger(__name__)


async def insert_log_entry(
    session: AsyncSession,
    level: LogLevel,
    category: LogCategory,
    message: str,
    timestamp: datetime,
    task_id: UUID | None = None,
    article_id: int | None = None,
    operation_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    duration_ms: float | None = None,
    error: str | None = None,
    stack_trace: str | None = None,
) -> None:
    """Insert one audit entry in its own transaction."""
    entry = AuditLogEntry(
        timestamp=timestamp,
        level=level,
        category=category,
        message=message,
        task_id=task_id,
        article_id=article_id,
        operation_id=operation_id,
        event_metadata=metadata,
        duration_ms=duration_ms,
        error=error,
        stack_trace=stack_trace,
    )
    async with session.begin():
        session.add(entry)


async def list_log_entries(
    session: AsyncSession,
    level: LogLevel | None = None,
    category: LogCategory | None = None,
    task_id: UUID | None = None,
    article_id: int | None = None,
    operation_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLogEntry]:
    """List audit entries matching every given filter, newest first.

    Args:
        session: Active async database session.
        level: Only entries of this level.
        category: Only entries of this category.
        task_id: Only entries about this task.
        article_id: Only entries about this article.
        operation_id: Only entries of this operation.
        start: Only entries at or after this time.
        end: Only entries at or before this time.
        limit: Page size.
        offset: Rows to skip.

    Returns:
        Matching AuditLogEntry instances.
    """
    stmt = select(AuditLogEntry)
    if level is not None:
        stmt = stmt.where(AuditLogEntry.level == level)
    if category is not None:
        stmt = stmt.where(AuditLogEntry.category == category)
    if task_id is not None:
        stmt = stmt.where(AuditLogEntry.task_id == task_id)
    if article_id is not None:
        stmt = stmt.where(AuditLogEntry.article_id == article_id)
    if operation_id is not None:
        stmt = stmt.where(AuditLogEntry.operation_id == operation_id)
    if start is not None:
        stmt = stmt.where(AuditLogEntry.timestamp >= start)
    if end is not None:
        stmt = stmt.where(AuditLogEntry.timestamp <= end)

    stmt = stmt.order_by(AuditLogEntry.timestamp.desc()).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_log_entries_by_level(
    session: AsyncSession,
    since: datetime,
) -> dict[LogLevel, int]:
    """Count entries per level since a time."""
    stmt = (
        select(AuditLogEntry.level, func.count())
        .where(AuditLogEntry.timestamp >= since)
        .group_by(AuditLogEntry.level)
    )
    result = await session.execute(stmt)
    return {level: count for level, count in result.all()}


async def count_log_entries_by_category(
    session: AsyncSession,
    since: datetime,
) -> dict[LogCategory, int]:
    """Count entries per category since a time."""
    stmt = (
        select(AuditLogEntry.category, func.count())
        .where(AuditLogEntry.timestamp >= since)
        .group_by(AuditLogEntry.category)
    )
    result = await session.execute(stmt)
    return {category: count for category, count in result.all()}


async def get_log_time_range(
    session: AsyncSession,
    since: datetime,
) -> tuple[datetime | None, datetime | None]:
    """Oldest and newest entry timestamps since a time."""
    stmt = select(
        func.min(AuditLogEntry.timestamp),
        func.max(AuditLogEntry.timestamp),
    ).where(AuditLogEntry.timestamp >= since)
    result = await session.execute(stmt)
    oldest, newest = result.one()
    return oldest, newest


async def delete_log_entries_before(
    session: AsyncSession,
    cutoff: datetime,
) -> int:
    """Delete audit entries older than cutoff.

    Returns:
        Number of deleted rows.
    """
    stmt = delete(AuditLogEntry).where(AuditLogEntry.timestamp < cutoff)
    async with session.begin():
        result = await session.execute(stmt)

    deleted = result.rowcount or 0
    logger.info("audit_log_entries_purged", cutoff=cutoff.isoformat(), deleted=deleted)
    return deleted
