"""Embedding audit log model for Inkvault.

Audit entries outlive the tasks they describe, so task_id and article_id
are plain columns without foreign keys.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Float, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from inkvault.database.models.base import Base, JSONType, utcnow


class LogLevel(str, enum.Enum):
    """Audit severity."""

    debug = "debug"
    info = "info"
    warn = "warn"
    error = "error"


class LogCategory(str, enum.Enum):
    """Audit event category."""

    task_lifecycle = "task_lifecycle"
    worker_status = "worker_status"
    queue_operations = "queue_operations"
    performance = "performance"
    error_handling = "error_handling"
    bulk_operations = "bulk_operations"


class AuditLogEntry(Base):
    """One structured audit event.

    Attributes:
        id: UUID primary key.
        timestamp: Time the event was emitted.
        level: Severity.
        category: Event category.
        message: Human-readable description.
        task_id: Related embedding task, if any.
        article_id: Related article, if any.
        operation_id: Correlates events of one bulk or admin operation.
        event_metadata: Extra JSON context (stored in the "metadata" column).
        duration_ms: Duration of the described work, if measured.
        error: Error text for failure events.
        stack_trace: Traceback captured with the error, if any.
    """

    __tablename__ = "embedding_audit_logs"
    __table_args__ = (
        Index("idx_embedding_audit_logs_timestamp", "timestamp"),
        Index("idx_embedding_audit_logs_level", "level"),
        Index("idx_embedding_audit_logs_category", "category"),
        Index("idx_embedding_audit_logs_task_id", "task_id"),
        Index("idx_embedding_audit_logs_article_id", "article_id"),
        Index("idx_embedding_audit_logs_operation_id", "operation_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    level: Mapped[LogLevel] = mapped_column(
        Enum(
            LogLevel,
            name="embedding_audit_level",
            native_enum=False,
            create_constraint=True,
            length=10,
        ),
        nullable=False,
    )
    category: Mapped[LogCategory] = mapped_column(
        Enum(
            LogCategory,
            name="embedding_audit_category",
            native_enum=False,
            create_constraint=True,
            length=50,
        ),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    task_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    article_id: Mapped[int | None] = mapped_column(nullable=True)
    operation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
