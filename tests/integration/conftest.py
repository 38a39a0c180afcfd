"""Pytest fixtures for integration tests.

Provides async database fixtures for testing the queue against SQLite.
The production system uses PostgreSQL with pgvector; SQLite ignores
FOR UPDATE SKIP LOCKED and does not enforce foreign keys, so tasks can be
enqueued for articles that do not exist.

Two databases are available:
- an in-memory database on a single shared connection (``session_factory``)
- a file database with one connection per session (``file_session_factory``)
  for tests that run sessions concurrently
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from inkvault.config import EmbeddingQueueConfig
from inkvault.database.connection import get_session_factory
from inkvault.database.models.article import Article
from inkvault.database.models.base import Base
from inkvault.embedding_queue.service import EmbeddingQueueService

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock passed to the queue service and the worker."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory SQLite async engine for testing.

    Yields:
        Configured AsyncEngine instance using in-memory SQLite.
    """
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the in-memory test engine."""
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def file_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine whose transactions take the write lock up front.

    Each session gets its own connection. BEGIN IMMEDIATE makes competing
    writers wait on the busy timeout instead of failing with a lock error.

    Yields:
        Configured AsyncEngine instance.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'inkvault.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(test_engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(file_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the file-backed test engine."""
    return get_session_factory(file_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_config() -> EmbeddingQueueConfig:
    return EmbeddingQueueConfig()


@pytest_asyncio.fixture
async def queue(
    session_factory: async_sessionmaker[AsyncSession],
    queue_config: EmbeddingQueueConfig,
    clock: FakeClock,
) -> EmbeddingQueueService:
    """Queue service on the in-memory database with a fake clock."""
    return EmbeddingQueueService(session_factory, queue_config, clock=clock)


@pytest_asyncio.fixture
async def make_article(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Article]]:
    """Factory inserting article rows."""

    async def _make(
        slug: str,
        content: str = "# Title\nBody text.",
        title: str | None = None,
        no_rag: bool = False,
    ) -> Article:
        article = Article(
            slug=slug,
            title=title or slug.replace("-", " ").title(),
            content=content,
            no_rag=no_rag,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(article)
        return article

    return _make
