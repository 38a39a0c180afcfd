"""Unit tests for the background embedding worker.

The queue, provider, article store and vector index are mocked; the worker
status queries are patched so no database is needed.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterator
from datetime import timedelta
from unittest.mock import ANY, AsyncMock, MagicMock, patch

import pytest

from inkvault.config import ChunkingConfig, EmbeddingQueueConfig
from inkvault.database.models.embedding_task import (
    EmbeddingTask,
    TaskOperation,
    TaskPriority,
    TaskStatus,
)
from inkvault.embedding_queue.worker import ArticleContent, BackgroundWorker, WorkerState

STATUS_QUERIES = (
    "ensure_worker_status",
    "mark_worker_started",
    "mark_worker_stopped",
    "record_heartbeat",
    "increment_counters",
)


def make_task(operation: TaskOperation = TaskOperation.update, attempts: int = 0) -> EmbeddingTask:
    return EmbeddingTask(
        id=uuid.uuid4(),
        article_id=1,
        slug="my-article",
        operation=operation,
        priority=TaskPriority.normal,
        status=TaskStatus.processing,
        attempts=attempts,
        max_attempts=3,
    )


@pytest.fixture(autouse=True)
def status_queries() -> Iterator[MagicMock]:
    with patch("inkvault.embedding_queue.worker.status_queries") as mock_queries:
        for name in STATUS_QUERIES:
            setattr(mock_queries, name, AsyncMock())
        yield mock_queries


@pytest.fixture
def config() -> EmbeddingQueueConfig:
    return EmbeddingQueueConfig(
        poll_interval_seconds=0.01,
        heartbeat_interval_seconds=60,
        store_error_backoff_seconds=0.01,
    )


@pytest.fixture
def queue(config: EmbeddingQueueConfig) -> MagicMock:
    queue = MagicMock()
    queue.config = config
    queue.claim_next_task = AsyncMock(return_value=None)
    queue.record_success = AsyncMock()
    queue.record_failure = AsyncMock()
    queue.reset_stuck_tasks = AsyncMock(return_value=0)
    queue.clear_completed_tasks = AsyncMock(return_value=0)
    return queue


@pytest.fixture
def audit() -> AsyncMock:
    audit = AsyncMock()
    audit.enabled = False
    return audit


@pytest.fixture
def provider() -> AsyncMock:
    provider = AsyncMock()
    provider.generate.return_value = [0.6, 0.8]
    return provider


@pytest.fixture
def article_store() -> AsyncMock:
    store = AsyncMock()
    store.get_article.return_value = ArticleContent(
        id=1,
        slug="my-article",
        title="My Article",
        content="# Intro\nFirst section.\n## Details\nSecond section.",
    )
    return store


@pytest.fixture
def vector_index() -> AsyncMock:
    index = AsyncMock()
    index.replace_article.return_value = 2
    index.delete_article.return_value = 2
    return index


@pytest.fixture
def worker(
    queue: MagicMock,
    provider: AsyncMock,
    article_store: AsyncMock,
    vector_index: AsyncMock,
    audit: AsyncMock,
) -> BackgroundWorker:
    return BackgroundWorker(
        queue=queue,
        provider=provider,
        article_store=article_store,
        vector_index=vector_index,
        chunking=ChunkingConfig(chunk_size=50, chunk_overlap=5),
        audit=audit,
    )


class TestRunOnce:
    """Test single-task processing."""

    async def test_empty_queue(self, worker: BackgroundWorker, queue: MagicMock) -> None:
        assert await worker.run_once() is False
        queue.record_success.assert_not_awaited()

    async def test_update_task_embeds_each_chunk(
        self,
        worker: BackgroundWorker,
        queue: MagicMock,
        provider: AsyncMock,
        vector_index: AsyncMock,
        status_queries: MagicMock,
    ) -> None:
        task = make_task()
        queue.claim_next_task.return_value = task

        assert await worker.run_once() is True

        assert provider.generate.await_count == 2
        article_id, slug, chunks, embeddings = vector_index.replace_article.await_args.args
        assert (article_id, slug) == (1, "my-article")
        assert [c.id for c in chunks] == ["my-article.md#0", "my-article.md#1"]
        assert embeddings == [[0.6, 0.8], [0.6, 0.8]]
        queue.record_success.assert_awaited_once_with(task.id, duration_ms=ANY)
        status_queries.increment_counters.assert_awaited_once_with(ANY, True, ANY)
        assert worker.tasks_succeeded == 1
        assert worker.current_task_id is None

    async def test_delete_task_skips_article_lookup(
        self,
        worker: BackgroundWorker,
        queue: MagicMock,
        article_store: AsyncMock,
        vector_index: AsyncMock,
    ) -> None:
        task = make_task(TaskOperation.delete)
        queue.claim_next_task.return_value = task

        await worker.run_once()

        vector_index.delete_article.assert_awaited_once_with(1)
        article_store.get_article.assert_not_awaited()
        queue.record_success.assert_awaited_once()

    async def test_excluded_article_drops_chunks(
        self,
        worker: BackgroundWorker,
        queue: MagicMock,
        provider: AsyncMock,
        article_store: AsyncMock,
        vector_index: AsyncMock,
    ) -> None:
        article_store.get_article.return_value = ArticleContent(
            id=1, slug="my-article", title="T", content="text", no_rag=True
        )
        queue.claim_next_task.return_value = make_task()

        await worker.run_once()

        vector_index.delete_article.assert_awaited_once_with(1)
        provider.generate.assert_not_awaited()
        queue.record_success.assert_awaited_once()

    async def test_missing_article_records_failure(
        self,
        worker: BackgroundWorker,
        queue: MagicMock,
        article_store: AsyncMock,
        status_queries: MagicMock,
    ) -> None:
        article_store.get_article.return_value = None
        task = make_task()
        queue.claim_next_task.return_value = task

        assert await worker.run_once() is True

        queue.record_success.assert_not_awaited()
        args = queue.record_failure.await_args
        assert args.args == (task.id, "ArticleNotFoundError: Article 1 not found")
        assert args.kwargs["retry_delay"] is None
        assert "ArticleNotFoundError" in args.kwargs["stack_trace"]
        status_queries.increment_counters.assert_awaited_once_with(ANY, False, ANY)
        assert worker.tasks_failed == 1

    async def test_provider_error_records_failure(
        self, worker: BackgroundWorker, queue: MagicMock, provider: AsyncMock
    ) -> None:
        provider.generate.side_effect = ConnectionError("provider unreachable")
        queue.claim_next_task.return_value = make_task()

        await worker.run_once()

        error = queue.record_failure.await_args.args[1]
        assert error == "ConnectionError: provider unreachable"


class TestRetryDelay:
    def test_immediate_retry_by_default(self, worker: BackgroundWorker) -> None:
        assert worker._retry_delay(0) is None
        assert worker._retry_delay(5) is None

    def test_exponential_backoff(
        self,
        queue: MagicMock,
        provider: AsyncMock,
        article_store: AsyncMock,
        vector_index: AsyncMock,
        audit: AsyncMock,
    ) -> None:
        worker = BackgroundWorker(
            queue,
            provider,
            article_store,
            vector_index,
            config=EmbeddingQueueConfig(retry_backoff_base_seconds=10),
            audit=audit,
        )

        assert worker._retry_delay(0) == timedelta(seconds=10)
        assert worker._retry_delay(2) == timedelta(seconds=40)


class TestLifecycle:
    """Test start/stop state transitions."""

    async def test_start_and_stop(
        self,
        worker: BackgroundWorker,
        queue: MagicMock,
        audit: AsyncMock,
        status_queries: MagicMock,
    ) -> None:
        assert worker.state == WorkerState.stopped

        assert await worker.start() == WorkerState.running
        assert worker.is_running
        status_queries.ensure_worker_status.assert_awaited_once()
        status_queries.mark_worker_started.assert_awaited_once()
        queue.reset_stuck_tasks.assert_awaited()

        assert await worker.stop() == WorkerState.stopped
        status_queries.mark_worker_stopped.assert_awaited_once()
        events = [c.args[0] for c in audit.log_worker_event.await_args_list]
        assert events == ["started", "stopped"]

    async def test_start_is_idempotent(
        self, worker: BackgroundWorker, status_queries: MagicMock
    ) -> None:
        await worker.start()
        assert await worker.start() == WorkerState.running
        status_queries.mark_worker_started.assert_awaited_once()
        await worker.stop()

    async def test_stop_when_stopped_is_a_noop(
        self, worker: BackgroundWorker, status_queries: MagicMock
    ) -> None:
        assert await worker.stop() == WorkerState.stopped
        status_queries.mark_worker_stopped.assert_not_awaited()

    async def test_start_failure_leaves_worker_stopped(
        self, worker: BackgroundWorker, status_queries: MagicMock
    ) -> None:
        status_queries.ensure_worker_status.side_effect = OSError("database unavailable")

        with pytest.raises(OSError):
            await worker.start()

        assert worker.state == WorkerState.stopped

    async def test_stop_waits_for_task_in_flight(
        self,
        worker: BackgroundWorker,
        queue: MagicMock,
        provider: AsyncMock,
    ) -> None:
        gate = asyncio.Event()
        task = make_task()
        queue.claim_next_task.side_effect = [task] + [None] * 1000

        async def slow_generate(text: str) -> list[float]:
            await gate.wait()
            return [1.0]

        provider.generate.side_effect = slow_generate

        await worker.start()
        while worker.current_task_id is None:
            await asyncio.sleep(0.005)

        stopping = asyncio.create_task(worker.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        assert worker.state == WorkerState.stopping

        gate.set()
        assert await stopping == WorkerState.stopped
        queue.record_success.assert_awaited_once_with(task.id, duration_ms=ANY)

    async def test_loop_survives_store_errors(
        self,
        worker: BackgroundWorker,
        queue: MagicMock,
        audit: AsyncMock,
    ) -> None:
        calls = 0

        async def claim() -> EmbeddingTask | None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OSError("database unavailable")
            return None

        queue.claim_next_task.side_effect = claim

        await worker.start()
        while calls < 3:
            await asyncio.sleep(0.005)
        await worker.stop()

        events = [c.args[0] for c in audit.log_worker_event.await_args_list]
        assert "store_error" in events
        assert worker.tasks_processed == 0

    def test_status_snapshot(self, worker: BackgroundWorker) -> None:
        snapshot = worker.status_snapshot()

        assert snapshot["state"] == "stopped"
        assert snapshot["current_task_id"] is None
        assert snapshot["tasks_processed"] == 0
        assert snapshot["poll_interval_seconds"] == 0.01


async def test_maintenance_runs_due_jobs(
    queue: MagicMock,
    provider: AsyncMock,
    article_store: AsyncMock,
    vector_index: AsyncMock,
    status_queries: MagicMock,
) -> None:
    audit = AsyncMock()
    audit.enabled = True
    worker = BackgroundWorker(
        queue,
        provider,
        article_store,
        vector_index,
        config=EmbeddingQueueConfig(
            poll_interval_seconds=0.5,
            heartbeat_interval_seconds=1,
            stuck_check_interval_seconds=1,
            cleanup_interval_hours=0.0001,
            audit_log_retention_days=14,
        ),
        audit=audit,
    )

    # Nothing has run yet, so every cadence is due
    await worker._run_maintenance()

    status_queries.record_heartbeat.assert_awaited_once()
    queue.reset_stuck_tasks.assert_awaited_once()
    queue.clear_completed_tasks.assert_awaited_once()
    audit.cleanup_old_logs.assert_awaited_once_with(14)
