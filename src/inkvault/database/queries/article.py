"""Article read queries for Inkvault.

The embedding queue never writes articles; it only loads them for
chunking and embedding.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from inkvault.database.models.article import Article


async def get_article(
    session: AsyncSession,
    article_id: int,
) -> Article | None:
    """Retrieve an article by ID."""
    stmt = select(Article).where(Article.id == article_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_article_by_slug(
    session: AsyncSession,
    slug: str,
) -> Article | None:
    """Retrieve an article by slug."""
    stmt = select(Article).where(Article.slug == slug)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
