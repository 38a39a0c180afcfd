"""Article embedding (vector index) model for Inkvault.

Each row is one heading-aware chunk of an article together with its
embedding. Rows are replaced wholesale per article by the worker.
"""

from __future__ import annotations

from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inkvault.database.models.base import Base, JSONType, utcnow

EMBEDDING_DIMENSIONS = 768


class ArticleEmbedding(Base):
    """A chunk of an article and its embedding vector.

    Attributes:
        id: Chunk identifier, "<slug>.md#<chunk_index>".
        article_id: Owning article (cascade-deleted with it).
        slug: Article slug the chunk was built from.
        chunk_index: Position of the chunk within the article.
        heading_path: Markdown headings enclosing the chunk.
        text: Chunk text.
        content_hash: Short hash of the chunk text for change detection.
        embedding: Normalized embedding vector.
        created_at: Time the chunk was indexed.
    """

    __tablename__ = "article_embeddings"
    __table_args__ = (
        Index("idx_article_embeddings_article_id", "article_id"),
    )

    id: Mapped[str] = mapped_column(String(512), primary_key=True)
    article_id: Mapped[int] = mapped_column(
        ForeignKey("articles.id", ondelete="CASCADE"),
        nullable=False,
    )
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    heading_path: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(16), nullable=False)
    embedding = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
