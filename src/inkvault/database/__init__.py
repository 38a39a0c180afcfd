"""Database layer for Inkvault.

Handles database connections, session management and the SQLAlchemy
async engine configuration for PostgreSQL with pgvector.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from inkvault.database.connection import get_engine, get_session_factory
from inkvault.database.models import (
    Article,
    ArticleEmbedding,
    AuditLogEntry,
    Base,
    EmbeddingTask,
    LogCategory,
    LogLevel,
    TaskOperation,
    TaskPriority,
    TaskStatus,
    WorkerStatus,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "Article",
    "ArticleEmbedding",
    "AuditLogEntry",
    "EmbeddingTask",
    "LogCategory",
    "LogLevel",
    "TaskOperation",
    "TaskPriority",
    "TaskStatus",
    "WorkerStatus",
]
