"""Article model for Inkvault.

The article table is owned by the article CRUD layer; the embedding queue
only reads it (content for chunking) and references it from task rows.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inkvault.database.models.base import Base, utcnow


class Article(Base):
    """A markdown article.

    Attributes:
        id: Integer primary key.
        slug: Unique URL slug (also the article's filename stem).
        title: Article title.
        content: Markdown body.
        no_rag: When true the article is excluded from the vector index.
        created_at: Creation timestamp.
        updated_at: Last modification timestamp.
    """

    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    no_rag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
