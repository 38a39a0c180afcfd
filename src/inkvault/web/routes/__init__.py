"""FastAPI route definitions for the Inkvault REST API."""

from __future__ import annotations

from inkvault.web.routes.health import (
    HealthResponse,
    QueueHealthResponse,
    ReadinessResponse,
    create_health_router,
)
from inkvault.web.routes.queue import (
    AuditLogResponse,
    EmbeddingTaskResponse,
    TaskDebugResponse,
    WorkerStatusResponse,
    create_queue_router,
)

__all__ = [
    # Health
    "HealthResponse",
    "QueueHealthResponse",
    "ReadinessResponse",
    "create_health_router",
    # Queue
    "AuditLogResponse",
    "EmbeddingTaskResponse",
    "TaskDebugResponse",
    "WorkerStatusResponse",
    "create_queue_router",
]
