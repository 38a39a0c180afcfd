"""Embedding task model for Inkvault.

Defines the embedding_tasks table and the enums for task operation,
priority and status. A task asks the background worker to bring one
article's vector-index rows in line with the article (create/update) or to
remove them (delete).

Lifecycle:
    pending -> processing -> completed
    processing -> pending (failure with attempts remaining, or stuck reset)
    processing -> failed (attempts exhausted)
    pending -> failed (superseded by newer work)
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from inkvault.database.models.base import Base, JSONType, utcnow


class TaskOperation(str, enum.Enum):
    """What the worker should do for the article."""

    create = "create"
    update = "update"
    delete = "delete"


class TaskPriority(str, enum.Enum):
    """Scheduling tier. Higher tiers are always claimed first."""

    high = "high"
    normal = "normal"
    low = "low"


class TaskStatus(str, enum.Enum):
    """State machine for embedding task lifecycle.

    States:
        pending: Waiting to be claimed once scheduled_at has passed.
        processing: Claimed by the worker.
        completed: Embeddings written (or removed) successfully.
        failed: Attempts exhausted or superseded; kept for inspection.
    """

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=20,
        validate_strings=True,
    )


class EmbeddingTask(Base):
    """A unit of background embedding work for one article.

    Attributes:
        id: UUID primary key generated at enqueue time.
        article_id: Article the task belongs to (cascade-deleted with it).
        slug: Article slug at enqueue time.
        operation: create, update or delete.
        priority: high, normal or low.
        status: Current lifecycle state.
        attempts: Number of finished processing attempts; only increases.
        max_attempts: Attempt budget; attempts < max_attempts gates retry.
        created_at: Enqueue time.
        scheduled_at: Earliest time the task may be claimed.
        processed_at: Time of the current claim; NULL while pending.
        completed_at: Time the task entered completed or terminal failed.
        error_message: Last failure reason; cleared on success.
        task_metadata: Free-form JSON payload (stored in the "metadata" column).
    """

    __tablename__ = "embedding_tasks"
    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_embedding_tasks_attempts"),
        CheckConstraint("max_attempts >= 0", name="ck_embedding_tasks_max_attempts"),
        Index(
            "idx_embedding_tasks_status_priority",
            "status",
            "priority",
            "scheduled_at",
        ),
        Index("idx_embedding_tasks_article_id", "article_id"),
        Index("idx_embedding_tasks_created_at", "created_at"),
        Index("idx_embedding_tasks_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    article_id: Mapped[int] = mapped_column(
        ForeignKey("articles.id", ondelete="CASCADE"),
        nullable=False,
    )
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[TaskOperation] = mapped_column(
        _enum_column(TaskOperation, "embedding_task_operation"),
        nullable=False,
    )
    priority: Mapped[TaskPriority] = mapped_column(
        _enum_column(TaskPriority, "embedding_task_priority"),
        default=TaskPriority.normal,
        nullable=False,
    )
    status: Mapped[TaskStatus] = mapped_column(
        _enum_column(TaskStatus, "embedding_task_status"),
        default=TaskStatus.pending,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<EmbeddingTask {self.id} article={self.article_id} "
            f"{self.operation.value} {self.status.value}>"
        )
