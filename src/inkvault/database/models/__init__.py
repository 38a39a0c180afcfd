"""SQLAlchemy ORM models for Inkvault.

This module defines the schema used by the background embedding queue:
articles, embedding tasks, the singleton worker status row, audit log
entries and the article embedding (vector index) table.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from inkvault.database.models.article import Article
from inkvault.database.models.article_embedding import EMBEDDING_DIMENSIONS, ArticleEmbedding
from inkvault.database.models.audit_log import AuditLogEntry, LogCategory, LogLevel
from inkvault.database.models.base import Base, ensure_utc, utcnow
from inkvault.database.models.embedding_task import (
    EmbeddingTask,
    TaskOperation,
    TaskPriority,
    TaskStatus,
)
from inkvault.database.models.worker_status import WORKER_STATUS_ID, WorkerStatus

__all__ = [
    "Base",
    "utcnow",
    "ensure_utc",
    "Article",
    "ArticleEmbedding",
    "EMBEDDING_DIMENSIONS",
    "EmbeddingTask",
    "TaskOperation",
    "TaskPriority",
    "TaskStatus",
    "WorkerStatus",
    "WORKER_STATUS_ID",
    "AuditLogEntry",
    "LogCategory",
    "LogLevel",
]
