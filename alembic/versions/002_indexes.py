"""Database indexes for Inkvault.

Creates the queue claim and lookup indexes, the audit log filter indexes
and the HNSW index for vector similarity search over article chunks.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AUDIT_LOG_COLUMNS = ("timestamp", "level", "category", "task_id", "article_id", "operation_id")


def upgrade() -> None:
    # Claim query: eligible tasks by status, then priority and schedule
    op.create_index(
        "idx_embedding_tasks_status_priority",
        "embedding_tasks",
        ["status", "priority", "scheduled_at"],
    )
    op.create_index("idx_embedding_tasks_article_id", "embedding_tasks", ["article_id"])
    op.create_index("idx_embedding_tasks_created_at", "embedding_tasks", ["created_at"])
    op.create_index("idx_embedding_tasks_status", "embedding_tasks", ["status"])

    for column in AUDIT_LOG_COLUMNS:
        op.create_index(
            f"idx_embedding_audit_logs_{column}",
            "embedding_audit_logs",
            [column],
        )

    op.create_index("idx_article_embeddings_article_id", "article_embeddings", ["article_id"])
    op.execute(
        "CREATE INDEX idx_article_embeddings_embedding "
        "ON article_embeddings USING hnsw (embedding vector_cosine_ops)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_article_embeddings_embedding")
    op.drop_index("idx_article_embeddings_article_id", table_name="article_embeddings")
    for column in reversed(AUDIT_LOG_COLUMNS):
        op.drop_index(f"idx_embedding_audit_logs_{column}", table_name="embedding_audit_logs")
    op.drop_index("idx_embedding_tasks_status", table_name="embedding_tasks")
    op.drop_index("idx_embedding_tasks_created_at", table_name="embedding_tasks")
    op.drop_index("idx_embedding_tasks_article_id", table_name="embedding_tasks")
    op.drop_index("idx_embedding_tasks_status_priority", table_name="embedding_tasks")
