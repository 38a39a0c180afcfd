"""Database query functions for Inkvault.

This module provides async query functions for:
- Embedding task insert, atomic claim, completion, failure and purge
- The singleton worker status row
- Audit log entries
- Article reads and article embedding (vector index) maintenance
"""

from inkvault.database.queries.article import get_article, get_article_by_slug
from inkvault.database.queries.article_embedding import (
    count_article_embeddings,
    delete_article_embeddings,
    replace_article_embeddings,
)
from inkvault.database.queries.audit_log import (
    delete_log_entries_before,
    insert_log_entry,
    list_log_entries,
)
from inkvault.database.queries.embedding_task import (
    claim_next_task,
    create_task,
    delete_finished_tasks,
    get_task,
    list_tasks_by_status,
    list_tasks_for_article,
    mark_attempt_failed,
    mark_completed,
    requeue_failed_task,
    requeue_failed_tasks,
    reset_stuck_tasks,
    supersede_pending_tasks,
)
from inkvault.database.queries.worker_status import (
    ensure_worker_status,
    get_worker_status,
    increment_counters,
    record_heartbeat,
)

__all__ = [
    # Article queries
    "get_article",
    "get_article_by_slug",
    # Article embedding queries
    "replace_article_embeddings",
    "delete_article_embeddings",
    "count_article_embeddings",
    # Embedding task queries
    "create_task",
    "get_task",
    "list_tasks_by_status",
    "list_tasks_for_article",
    "claim_next_task",
    "mark_completed",
    "mark_attempt_failed",
    "reset_stuck_tasks",
    "delete_finished_tasks",
    "requeue_failed_task",
    "requeue_failed_tasks",
    "supersede_pending_tasks",
    # Worker status queries
    "get_worker_status",
    "ensure_worker_status",
    "record_heartbeat",
    "increment_counters",
    # Audit log queries
    "insert_log_entry",
    "list_log_entries",
    "delete_log_entries_before",
]
