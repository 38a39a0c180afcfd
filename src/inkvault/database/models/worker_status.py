"""Singleton worker status model for Inkvault.

The embedding_worker_status table holds exactly one row (id = 1, enforced
by a CHECK constraint). It is written only by the background worker and
read by the CLI and the REST API.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from inkvault.database.models.base import Base

WORKER_STATUS_ID = 1


class WorkerStatus(Base):
    """Heartbeat and counters of the background embedding worker.

    Attributes:
        id: Always 1.
        is_running: Whether a worker loop is currently active.
        last_heartbeat: Last time the worker reported liveness.
        tasks_processed: Tasks finished since the counters were created.
        tasks_succeeded: Tasks completed successfully.
        tasks_failed: Failed processing attempts (retried or terminal).
        started_at: Time the current (or last) worker run started.
        updated_at: Last write to the row.
    """

    __tablename__ = "embedding_worker_status"
    __table_args__ = (
        CheckConstraint("id = 1", name="ck_embedding_worker_status_singleton"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=False,
        default=WORKER_STATUS_ID,
    )
    is_running: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_heartbeat: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    tasks_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tasks_succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tasks_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
