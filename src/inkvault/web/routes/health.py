"""Health check endpoints for Inkvault.

- /health/ for liveness probes
- /health/ready for readiness probes (database connectivity)
- /health/queue for embedding queue health, 503 when unhealthy so load
  balancers and monitors can alert on it directly
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inkvault.embedding_queue.diagnostics import health_recommendations
from inkvault.embedding_queue.service import EmbeddingQueueService
from inkvault.logging import get_logger
from inkvault.web.dependencies import get_queue_service, get_session_factory

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Liveness response."""

    status: str


class ReadinessResponse(BaseModel):
    """Readiness response.

    Attributes:
        status: "ok" or "unhealthy"
        database: "connected" or "disconnected"
    """

    status: str
    database: str


class QueueHealthResponse(BaseModel):
    """Embedding queue health with operator recommendations."""

    status: str
    is_healthy: bool
    issues: list[str]
    recommendations: list[str]
    total_tasks: int
    pending_tasks: int
    processing_tasks: int
    stuck_tasks: int
    oldest_pending_task: datetime | None = None
    completed_last_24h: int
    failed_last_24h: int
    superseded_last_24h: int = 0
    failure_rate_last_24h: float | None = None
    average_processing_seconds: float | None = None
    worker_running: bool | None = None
    worker_last_heartbeat: datetime | None = None


def create_health_router() -> APIRouter:
    """Create health check router.

    Routes:
        GET /health/ - Basic liveness check
        GET /health/ready - Readiness check with database verification
        GET /health/queue - Embedding queue health
    """
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        response: Response,
        session_factory: async_sessionmaker[AsyncSession] = Depends(  # noqa: B008
            get_session_factory
        ),
    ) -> dict[str, Any]:
        """Readiness check; 503 when the database does not answer."""
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning(
                "readiness_check_failed",
                database="disconnected",
                error=str(exc),
            )
            response.status_code = 503
            return {"status": "unhealthy", "database": "disconnected"}

        logger.debug("readiness_check_passed", database="connected")
        return {"status": "ok", "database": "connected"}

    @router.get("/queue", response_model=QueueHealthResponse)
    async def queue_health(
        response: Response,
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> QueueHealthResponse:
        """Embedding queue health.

        Returns:
            Health report; HTTP 503 when the queue is unhealthy.
        """
        report = await queue.get_queue_health()
        if not report.is_healthy:
            response.status_code = 503
        return QueueHealthResponse(
            status="ok" if report.is_healthy else "unhealthy",
            recommendations=health_recommendations(report),
            **report.model_dump(),
        )

    return router
