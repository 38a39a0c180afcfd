"""Background worker for the embedding task queue.

The worker runs one cooperative asyncio loop: claim the most urgent
eligible task, chunk and embed the article (or drop its chunks for a
delete), record the outcome through the queue service and update the
singleton worker status row. Between claims it keeps a heartbeat, resets
tasks stuck in processing, and purges old completed tasks and audit
entries on coarser cadences.

Lifecycle states: stopped -> starting -> running -> stopping -> stopped.
stop() never interrupts a task mid-flight; the loop exits after the
current task and the idle sleep is woken early.

Example usage:
    >>> worker = BackgroundWorker(
    ...     queue=queue,
    ...     provider=embedding_service,
    ...     article_store=SqlArticleStore(session_factory),
    ...     vector_index=PgVectorIndex(session_factory),
    ...     config=config.embedding_queue,
    ... )
    >>> await worker.start()
    >>> ...
    >>> await worker.stop()
"""

from __future__ import annotations

import asyncio
import enum
import time
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

import structlog

from inkvault.config import ChunkingConfig, EmbeddingQueueConfig
from inkvault.database.models.audit_log import LogLevel
from inkvault.database.models.base import utcnow
from inkvault.database.models.embedding_task import EmbeddingTask, TaskOperation
from inkvault.database.queries import worker_status as status_queries
from inkvault.intelligence.chunking import chunk_markdown
from inkvault.logging import bind_task_context, clear_task_context

if TYPE_CHECKING:
    from inkvault.embedding_queue.audit import AuditLogger
    from inkvault.embedding_queue.service import EmbeddingQueueService
    from inkvault.intelligence.chunking import Chunk

logger = structlog.get_logger(__name__)


class WorkerState(str, enum.Enum):
    """Lifecycle of the background worker."""

    stopped = "stopped"
    starting = "starting"
    running = "running"
    stopping = "stopping"


@dataclass
class ArticleContent:
    """What the worker needs to know about an article.

    Attributes:
        id: Article ID
        slug: Current slug
        title: Article title
        content: Markdown body
        no_rag: Article is excluded from the vector index
    """

    id: int
    slug: str
    title: str
    content: str
    no_rag: bool = False


class EmbeddingProvider(Protocol):
    """Turns text into an embedding vector."""

    async def generate(self, text: str) -> list[float]:
        ...


class ArticleStore(Protocol):
    """Read access to articles."""

    async def get_article(self, article_id: int) -> ArticleContent | None:
        ...


class VectorIndex(Protocol):
    """Per-article chunk storage."""

    async def replace_article(
        self,
        article_id: int,
        slug: str,
        chunks: list[Chunk],
        embeddings: list[list[float]],
    ) -> int:
        ...

    async def delete_article(self, article_id: int) -> int:
        ...


class ArticleNotFoundError(Exception):
    """Raised when a create/update task refers to a missing article."""

    pass


class BackgroundWorker:
    """Single-loop processor of the embedding task queue.

    Attributes:
        queue: Queue service used for every task transition
        provider: Embedding provider
        article_store: Source of article content
        vector_index: Destination of chunk embeddings
        config: Queue configuration (intervals, backoff, retention)
        chunking: Chunking configuration
        audit: Audit logger (defaults to the queue's)
    """

    def __init__(
        self,
        queue: EmbeddingQueueService,
        provider: EmbeddingProvider,
        article_store: ArticleStore,
        vector_index: VectorIndex,
        config: EmbeddingQueueConfig | None = None,
        chunking: ChunkingConfig | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.provider = provider
        self.article_store = article_store
        self.vector_index = vector_index
        self.config = config or queue.config
        self.chunking = chunking or ChunkingConfig()
        self.audit = audit or queue.audit
        self._clock = clock

        self._state = WorkerState.stopped
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._current_task_id: UUID | None = None
        self._started_at: datetime | None = None
        self._last_heartbeat: float = 0.0
        self._last_stuck_check: float = 0.0
        self._last_cleanup: float = 0.0
        self.tasks_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == WorkerState.running

    @property
    def current_task_id(self) -> UUID | None:
        return self._current_task_id

    def status_snapshot(self) -> dict[str, Any]:
        """In-process view of the worker for status displays."""
        return {
            "state": self._state.value,
            "current_task_id": str(self._current_task_id) if self._current_task_id else None,
            "started_at": self._started_at,
            "tasks_processed": self.tasks_processed,
            "tasks_succeeded": self.tasks_succeeded,
            "tasks_failed": self.tasks_failed,
            "poll_interval_seconds": self.config.poll_interval_seconds,
        }

    # --- Lifecycle ---

    async def start(self) -> WorkerState:
        """Start the processing loop.

        Idempotent: calling start on a worker that is not stopped logs and
        returns the current state. Startup ensures the worker status row,
        marks it running and resets stuck tasks left by a previous run.

        Returns:
            The worker state after the call.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the store is unreachable at startup.
        """
        if self._state != WorkerState.stopped:
            logger.warning("embedding_worker_already_running", state=self._state.value)
            return self._state

        self._state = WorkerState.starting
        self._stop_event = asyncio.Event()
        now = self._clock()
        try:
            async with self.queue.session_factory() as session:
                await status_queries.ensure_worker_status(session)
            async with self.queue.session_factory() as session:
                await status_queries.mark_worker_started(session, now)
            if self.config.stuck_task_cleanup_enabled:
                await self.queue.reset_stuck_tasks()
        except Exception:
            self._state = WorkerState.stopped
            logger.error("embedding_worker_start_failed", exc_info=True)
            raise

        self._started_at = now
        started = time.monotonic()
        self._last_heartbeat = started
        self._last_stuck_check = started
        self._last_cleanup = started
        self._state = WorkerState.running
        self._loop_task = asyncio.create_task(self._run_loop())

        logger.info(
            "embedding_worker_started",
            poll_interval=self.config.poll_interval_seconds,
            heartbeat_interval=self.config.heartbeat_interval_seconds,
            stuck_timeout_minutes=self.config.stuck_task_timeout_minutes,
        )
        await self.audit.log_worker_event(
            "started",
            "Background embedding worker started",
            metadata={"poll_interval_seconds": self.config.poll_interval_seconds},
        )
        return self._state

    async def stop(self) -> WorkerState:
        """Stop the loop after the task in flight and mark the worker stopped.

        Idempotent: stopping a stopped worker logs and returns.

        Returns:
            The worker state after the call (stopped).
        """
        if self._state == WorkerState.stopped:
            logger.warning("embedding_worker_not_running")
            return self._state

        self._state = WorkerState.stopping
        self._stop_event.set()
        logger.info("embedding_worker_stop_requested")

        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        try:
            async with self.queue.session_factory() as session:
                await status_queries.mark_worker_stopped(session, self._clock())
        except Exception as e:
            logger.error(
                "embedding_worker_status_update_failed",
                error=str(e),
                error_type=type(e).__name__,
            )

        self._state = WorkerState.stopped
        logger.info(
            "embedding_worker_stopped",
            tasks_processed=self.tasks_processed,
            tasks_succeeded=self.tasks_succeeded,
            tasks_failed=self.tasks_failed,
        )
        await self.audit.log_worker_event(
            "stopped",
            "Background embedding worker stopped",
            metadata={
                "tasks_processed": self.tasks_processed,
                "tasks_succeeded": self.tasks_succeeded,
                "tasks_failed": self.tasks_failed,
            },
        )
        return self._state

    async def wait_stopped(self) -> None:
        """Block until the processing loop has exited."""
        if self._loop_task is not None:
            await asyncio.shield(self._loop_task)

    # --- Loop ---

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._run_maintenance()
                processed = await self.run_once()
            except Exception as e:
                logger.error(
                    "embedding_worker_store_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    backoff_seconds=self.config.store_error_backoff_seconds,
                )
                await self.audit.log_worker_event(
                    "store_error",
                    "Worker cycle failed, backing off",
                    level=LogLevel.error,
                    error=f"{type(e).__name__}: {e}",
                    stack_trace=traceback.format_exc(),
                )
                await self._sleep(self.config.store_error_backoff_seconds)
                continue

            if not processed:
                await self._sleep(self.config.poll_interval_seconds)

    async def _run_maintenance(self) -> None:
        now = time.monotonic()

        if now - self._last_heartbeat >= self.config.heartbeat_interval_seconds:
            async with self.queue.session_factory() as session:
                await status_queries.record_heartbeat(session, self._clock())
            self._last_heartbeat = now

        if (
            self.config.stuck_task_cleanup_enabled
            and now - self._last_stuck_check >= self.config.stuck_check_interval_seconds
        ):
            await self.queue.reset_stuck_tasks()
            self._last_stuck_check = now

        if now - self._last_cleanup >= self.config.cleanup_interval_hours * 3600:
            await self.queue.clear_completed_tasks()
            if self.audit.enabled:
                await self.audit.cleanup_old_logs(self.config.audit_log_retention_days)
            self._last_cleanup = now

    async def run_once(self) -> bool:
        """Claim and process at most one task.

        Returns:
            True if a task was claimed, False if the queue had nothing eligible.
        """
        task = await self.queue.claim_next_task()
        if task is None:
            return False
        await self._process_task(task)
        return True

    def _retry_delay(self, attempts: int) -> timedelta | None:
        base = self.config.retry_backoff_base_seconds
        if base <= 0:
            return None
        return timedelta(seconds=base * (2**attempts))

    async def _process_task(self, task: EmbeddingTask) -> None:
        self._current_task_id = task.id
        bind_task_context(task_id=str(task.id), article_id=task.article_id)
        start = time.perf_counter()
        try:
            try:
                chunk_count = await self._execute(task)
            except Exception as e:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                error_message = f"{type(e).__name__}: {e}"
                logger.warning(
                    "embedding_task_processing_failed",
                    operation=task.operation.value,
                    attempts=task.attempts + 1,
                    max_attempts=task.max_attempts,
                    error=error_message,
                )
                await self.queue.record_failure(
                    task.id,
                    error_message,
                    retry_delay=self._retry_delay(task.attempts),
                    duration_ms=duration_ms,
                    stack_trace=traceback.format_exc(),
                )
                await self._count_finished(succeeded=False)
                return

            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            await self.queue.record_success(task.id, duration_ms=duration_ms)
            await self._count_finished(succeeded=True)
            logger.info(
                "embedding_task_processed",
                operation=task.operation.value,
                chunks=chunk_count,
                duration_ms=duration_ms,
            )
            await self.audit.log_performance_metric(
                f"{task.operation.value}_embedding",
                duration_ms,
                task_id=task.id,
                article_id=task.article_id,
                metadata={"chunks": chunk_count},
            )
        finally:
            clear_task_context()
            self._current_task_id = None

    async def _execute(self, task: EmbeddingTask) -> int:
        if task.operation == TaskOperation.delete:
            return await self.vector_index.delete_article(task.article_id)

        article = await self.article_store.get_article(task.article_id)
        if article is None:
            raise ArticleNotFoundError(f"Article {task.article_id} not found")

        if article.no_rag:
            await self.vector_index.delete_article(article.id)
            logger.info("article_excluded_from_index", slug=article.slug)
            return 0

        chunks = chunk_markdown(
            f"{article.slug}.md",
            article.title,
            article.content,
            chunk_size=self.chunking.chunk_size,
            chunk_overlap=self.chunking.chunk_overlap,
        )
        embeddings = [await self.provider.generate(chunk.text) for chunk in chunks]
        return await self.vector_index.replace_article(
            article.id, article.slug, chunks, embeddings
        )

    async def _count_finished(self, succeeded: bool) -> None:
        self.tasks_processed += 1
        if succeeded:
            self.tasks_succeeded += 1
        else:
            self.tasks_failed += 1
        async with self.queue.session_factory() as session:
            await status_queries.increment_counters(session, succeeded, self._clock())
