"""Article embedding query functions for Inkvault.

The vector index is maintained per article: an update deletes every chunk
row of the article and inserts the new set in the same transaction.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from inkvault.database.models.article_embedding import ArticleEmbedding

logger = structlog.get_logger(__name__)


async def replace_article_embeddings(
    session: AsyncSession,
    article_id: int,
    rows: list[dict[str, Any]],
) -> int:
    """Replace all chunk rows of an article.

    Args:
        session: Fresh async database session.
        article_id: Article whose rows are replaced.
        rows: Column values for the new ArticleEmbedding rows.

    Returns:
        Number of rows inserted.
    """
    async with session.begin():
        await session.execute(
            delete(ArticleEmbedding).where(ArticleEmbedding.article_id == article_id)
        )
        session.add_all(ArticleEmbedding(article_id=article_id, **row) for row in rows)

    logger.info("article_embeddings_replaced", article_id=article_id, chunks=len(rows))
    return len(rows)


async def delete_article_embeddings(
    session: AsyncSession,
    article_id: int,
) -> int:
    """Delete all chunk rows of an article.

    Returns:
        Number of rows deleted.
    """
    stmt = delete(ArticleEmbedding).where(ArticleEmbedding.article_id == article_id)
    async with session.begin():
        result = await session.execute(stmt)

    deleted = result.rowcount or 0
    logger.info("article_embeddings_deleted", article_id=article_id, chunks=deleted)
    return deleted


async def count_article_embeddings(
    session: AsyncSession,
    article_id: int,
) -> int:
    """Count chunk rows of an article."""
    stmt = select(func.count()).where(ArticleEmbedding.article_id == article_id)
    result = await session.execute(stmt)
    return result.scalar_one()
