"""Background embedding task queue.

- EmbeddingQueueService: enqueue, atomic claim, outcome recording, stuck
  reset, cleanup, statistics and health
- BackgroundWorker: the single processing loop
- AuditLogger: structured audit trail with best-effort persistence
- ArticleEmbeddingScheduler: producer helpers for article lifecycle events
"""

from inkvault.embedding_queue.audit import AuditLogger, LogQueryFilters, LogStatistics
from inkvault.embedding_queue.producer import ArticleEmbeddingScheduler
from inkvault.embedding_queue.service import (
    DetailedQueueStats,
    EmbeddingQueueService,
    QueueHealth,
    QueueStats,
)
from inkvault.embedding_queue.worker import (
    ArticleContent,
    ArticleNotFoundError,
    BackgroundWorker,
    WorkerState,
)

__all__ = [
    "ArticleContent",
    "ArticleEmbeddingScheduler",
    "ArticleNotFoundError",
    "AuditLogger",
    "BackgroundWorker",
    "DetailedQueueStats",
    "EmbeddingQueueService",
    "LogQueryFilters",
    "LogStatistics",
    "QueueHealth",
    "QueueStats",
    "WorkerState",
]
