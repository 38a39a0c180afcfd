"""FastAPI dependencies shared by the route modules."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from inkvault.embedding_queue.service import EmbeddingQueueService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session factory stored in app state by the lifespan handler."""
    return request.app.state.session_factory


def get_queue_service(request: Request) -> EmbeddingQueueService:
    """Queue service bound to the app's session factory and queue config.

    Args:
        request: Incoming FastAPI request

    Returns:
        EmbeddingQueueService for this request
    """
    return EmbeddingQueueService(
        request.app.state.session_factory,
        request.app.state.config.embedding_queue,
    )
