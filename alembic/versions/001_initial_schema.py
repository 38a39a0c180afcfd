"""Initial schema for Inkvault.

Creates the articles table, the embedding task queue, the singleton worker
status row, the embedding audit log and the article_embeddings vector
table. Enables the pgvector extension.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "articles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("no_rag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Enums are stored as constrained strings, matching the models
    op.create_table(
        "embedding_tasks",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column(
            "article_id",
            sa.Integer(),
            sa.ForeignKey("articles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(20), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.CheckConstraint(
            "operation IN ('create', 'update', 'delete')",
            name="embedding_task_operation",
        ),
        sa.CheckConstraint(
            "priority IN ('high', 'normal', 'low')",
            name="embedding_task_priority",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="embedding_task_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_embedding_tasks_attempts"),
        sa.CheckConstraint("max_attempts >= 0", name="ck_embedding_tasks_max_attempts"),
    )

    op.create_table(
        "embedding_worker_status",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("is_running", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tasks_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tasks_succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tasks_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("id = 1", name="ck_embedding_worker_status_singleton"),
    )
    op.execute(
        "INSERT INTO embedding_worker_status (id, is_running) VALUES (1, false) "
        "ON CONFLICT (id) DO NOTHING"
    )

    # No foreign keys: audit entries outlive the tasks and articles they describe
    op.create_table(
        "embedding_audit_logs",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("level", sa.String(10), nullable=False),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("task_id", sa.Uuid(), nullable=True),
        sa.Column("article_id", sa.Integer(), nullable=True),
        sa.Column("operation_id", sa.String(255), nullable=True),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("stack_trace", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "level IN ('debug', 'info', 'warn', 'error')",
            name="embedding_audit_level",
        ),
        sa.CheckConstraint(
            "category IN ('task_lifecycle', 'worker_status', 'queue_operations', "
            "'performance', 'error_handling', 'bulk_operations')",
            name="embedding_audit_category",
        ),
    )

    op.create_table(
        "article_embeddings",
        sa.Column("id", sa.String(512), primary_key=True),
        sa.Column(
            "article_id",
            sa.Integer(),
            sa.ForeignKey("articles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("heading_path", JSONB(), nullable=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    # vector type is not natively supported by sa.Column
    op.execute("ALTER TABLE article_embeddings ADD COLUMN embedding vector(768) NOT NULL")


def downgrade() -> None:
    op.drop_table("article_embeddings")
    op.drop_table("embedding_audit_logs")
    op.drop_table("embedding_worker_status")
    op.drop_table("embedding_tasks")
    op.drop_table("articles")
    op.execute("DROP EXTENSION IF EXISTS vector")
