"""Database-backed article store and pgvector index used by the worker."""

from __future__ import annotations

from typing import TYPE_CHECKING

from inkvault.database.queries.article import get_article
from inkvault.database.queries.article_embedding import (
    delete_article_embeddings,
    replace_article_embeddings,
)
from inkvault.embedding_queue.worker import ArticleContent
from inkvault.intelligence.chunking import Chunk

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class SqlArticleStore:
    """Reads articles from the articles table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_article(self, article_id: int) -> ArticleContent | None:
        async with self.session_factory() as session:
            article = await get_article(session, article_id)
        if article is None:
            return None
        return ArticleContent(
            id=article.id,
            slug=article.slug,
            title=article.title,
            content=article.content,
            no_rag=article.no_rag,
        )


class PgVectorIndex:
    """Stores chunk embeddings in the article_embeddings table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def replace_article(
        self,
        article_id: int,
        slug: str,
        chunks: list[Chunk],
        embeddings: list[list[float]],
    ) -> int:
        """Replace the article's chunk rows with the given chunks.

        Raises:
            ValueError: If chunks and embeddings differ in length
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Got {len(embeddings)} embeddings for {len(chunks)} chunks"
            )
        rows = [
            {
                "id": chunk.id,
                "slug": slug,
                "chunk_index": chunk.chunk_index,
                "heading_path": chunk.heading_path,
                "text": chunk.text,
                "content_hash": chunk.content_hash,
                "embedding": embedding,
            }
            for chunk, embedding in zip(chunks, embeddings)
        ]
        async with self.session_factory() as session:
            return await replace_article_embeddings(session, article_id, rows)

    async def delete_article(self, article_id: int) -> int:
        async with self.session_factory() as session:
            return await delete_article_embeddings(session, article_id)
