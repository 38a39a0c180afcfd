"""SQLAlchemy declarative base and shared column helpers for Inkvault.

All models inherit from Base. Timestamps are always written from Python as
timezone-aware UTC values so that ordering and cutoff comparisons behave the
same on PostgreSQL and on the SQLite databases used in tests.

Example:
    >>> class MyModel(Base):
    ...     __tablename__ = "my_table"
    ...     created_at: Mapped[datetime] = mapped_column(
    ...         DateTime(timezone=True), default=utcnow
    ...     )
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy 2.0 declarative base for all Inkvault models."""

    pass


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite.

    Args:
        value: Datetime loaded from the database, or None.

    Returns:
        The same instant as an aware datetime, or None.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
