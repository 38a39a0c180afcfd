"""Embedding queue REST API endpoints.

Read access to queue statistics, tasks, the worker status row and the
audit log, plus manual retry of failed tasks.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import AliasChoices, BaseModel, Field

from inkvault.database.models.audit_log import LogCategory, LogLevel
from inkvault.database.models.base import utcnow
from inkvault.database.models.embedding_task import (
    TaskOperation,
    TaskPriority,
    TaskStatus,
)
from inkvault.embedding_queue.audit import LogQueryFilters, LogStatistics
from inkvault.embedding_queue.diagnostics import TaskDiagnosis, diagnose_task
from inkvault.embedding_queue.service import (
    DetailedQueueStats,
    EmbeddingQueueService,
    QueueStats,
)
from inkvault.web.dependencies import get_queue_service

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class EmbeddingTaskResponse(BaseModel):
    """Response schema for an embedding task."""

    id: UUID
    article_id: int
    slug: str
    operation: TaskOperation
    priority: TaskPriority
    status: TaskStatus
    attempts: int
    max_attempts: int
    error_message: str | None
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("task_metadata", "metadata")
    )
    created_at: datetime
    scheduled_at: datetime
    processed_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class TaskDebugResponse(BaseModel):
    """A task together with its diagnosis and related tasks."""

    task: EmbeddingTaskResponse
    diagnosis: TaskDiagnosis
    duplicates: list[EmbeddingTaskResponse]


class WorkerStatusResponse(BaseModel):
    """Response schema for the worker status row."""

    is_running: bool
    last_heartbeat: datetime | None
    tasks_processed: int
    tasks_succeeded: int
    tasks_failed: int
    started_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class AuditLogResponse(BaseModel):
    """Response schema for an audit log entry."""

    id: UUID
    timestamp: datetime
    level: LogLevel
    category: LogCategory
    message: str
    task_id: UUID | None
    article_id: int | None
    operation_id: str | None
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("event_metadata", "metadata")
    )
    duration_ms: float | None
    error: str | None
    stack_trace: str | None = None

    model_config = {"from_attributes": True}


def _not_found(task_id: UUID) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Embedding task {task_id} not found")


# --- Route Handlers ---


def create_queue_router() -> APIRouter:
    """Create the embedding queue router.

    Routes:
        GET /queue/stats - Counts per status
        GET /queue/stats/detailed - Breakdowns and 24h activity
        GET /queue/tasks - Tasks in one status, most urgent first
        GET /queue/tasks/{task_id} - One task
        GET /queue/tasks/{task_id}/debug - Task diagnosis
        POST /queue/tasks/{task_id}/retry - Requeue a failed task
        GET /queue/articles/{article_id}/tasks - Tasks of one article
        GET /queue/worker - Worker status row
        GET /queue/logs - Audit log entries
        GET /queue/logs/stats - Audit log statistics
    """
    router = APIRouter(prefix="/queue", tags=["queue"])

    @router.get("/stats", response_model=QueueStats)
    async def queue_stats(
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> QueueStats:
        return await queue.get_queue_stats()

    @router.get("/stats/detailed", response_model=DetailedQueueStats)
    async def detailed_queue_stats(
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> DetailedQueueStats:
        return await queue.get_detailed_queue_stats()

    @router.get("/tasks", response_model=list[EmbeddingTaskResponse])
    async def list_tasks(
        status: TaskStatus = TaskStatus.pending,
        limit: int = Query(default=50, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> list[EmbeddingTaskResponse]:
        """List tasks in one status, high priority first then oldest schedule."""
        tasks = await queue.get_tasks_by_status(status, limit=limit, offset=offset)
        logger.debug("queue_tasks_listed", status=status.value, count=len(tasks))
        return [EmbeddingTaskResponse.model_validate(t) for t in tasks]

    @router.get("/tasks/{task_id}", response_model=EmbeddingTaskResponse)
    async def get_task(
        task_id: UUID,
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> EmbeddingTaskResponse:
        task = await queue.get_task_status(task_id)
        if task is None:
            raise _not_found(task_id)
        return EmbeddingTaskResponse.model_validate(task)

    @router.get("/tasks/{task_id}/debug", response_model=TaskDebugResponse)
    async def debug_task(
        task_id: UUID,
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> TaskDebugResponse:
        """Task with findings, recommendations and same-article duplicates."""
        task = await queue.get_task_status(task_id)
        if task is None:
            raise _not_found(task_id)
        duplicates = await queue.find_duplicate_tasks(task)
        diagnosis = diagnose_task(
            task,
            duplicates,
            utcnow(),
            timedelta(minutes=queue.config.stuck_task_timeout_minutes),
        )
        return TaskDebugResponse(
            task=EmbeddingTaskResponse.model_validate(task),
            diagnosis=diagnosis,
            duplicates=[EmbeddingTaskResponse.model_validate(d) for d in duplicates],
        )

    @router.post("/tasks/{task_id}/retry", response_model=EmbeddingTaskResponse)
    async def retry_task(
        task_id: UUID,
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> EmbeddingTaskResponse:
        """Requeue a failed task.

        Raises:
            HTTPException: 404 if the task does not exist, 409 if it is not failed.
        """
        task = await queue.retry_task(task_id)
        if task is None:
            existing = await queue.get_task_status(task_id)
            if existing is None:
                raise _not_found(task_id)
            raise HTTPException(
                status_code=409,
                detail=f"Only failed tasks can be retried; task is {existing.status.value}",
            )
        logger.info("embedding_task_retried_via_api", task_id=str(task_id))
        return EmbeddingTaskResponse.model_validate(task)

    @router.get(
        "/articles/{article_id}/tasks", response_model=list[EmbeddingTaskResponse]
    )
    async def article_tasks(
        article_id: int,
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> list[EmbeddingTaskResponse]:
        tasks = await queue.get_tasks_for_article(article_id)
        return [EmbeddingTaskResponse.model_validate(t) for t in tasks]

    @router.get("/worker", response_model=WorkerStatusResponse)
    async def worker_status(
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> WorkerStatusResponse:
        status = await queue.get_worker_status()
        if status is None:
            raise HTTPException(status_code=404, detail="Worker has never started")
        return WorkerStatusResponse.model_validate(status)

    @router.get("/logs", response_model=list[AuditLogResponse])
    async def audit_logs(
        level: LogLevel | None = None,
        category: LogCategory | None = None,
        task_id: UUID | None = None,
        article_id: int | None = None,
        operation_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> list[AuditLogResponse]:
        """Audit entries matching every given filter, newest first."""
        entries = await queue.audit.query_logs(
            LogQueryFilters(
                level=level,
                category=category,
                task_id=task_id,
                article_id=article_id,
                operation_id=operation_id,
                start=start,
                end=end,
                limit=limit,
                offset=offset,
            )
        )
        return [AuditLogResponse.model_validate(e) for e in entries]

    @router.get("/logs/stats", response_model=LogStatistics)
    async def audit_log_stats(
        days: int = Query(default=7, ge=1, le=365),
        queue: EmbeddingQueueService = Depends(get_queue_service),  # noqa: B008
    ) -> LogStatistics:
        return await queue.audit.get_log_statistics(days=days)

    return router
