"""Integration tests for queue statistics, health and producer flows."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inkvault.config import EmbeddingQueueConfig
from inkvault.database.models.audit_log import LogCategory, LogLevel
from inkvault.database.models.embedding_task import TaskOperation, TaskStatus
from inkvault.database.queries.worker_status import ensure_worker_status, mark_worker_started
from inkvault.embedding_queue.audit import LogQueryFilters
from inkvault.embedding_queue.producer import ArticleEmbeddingScheduler
from inkvault.embedding_queue.service import EmbeddingQueueService

async def _complete(queue: EmbeddingQueueService, clock, seconds: float = 0) -> None:
    task = await queue.claim_next_task()
    clock.advance(seconds=seconds)
    await queue.record_success(task.id)


async def _fail(queue: EmbeddingQueueService) -> None:
    task = await queue.claim_next_task()
    await queue.record_failure(task.id, "OllamaTimeoutError: Request timed out")


class TestQueueStats:
    async def test_empty_queue(self, queue: EmbeddingQueueService) -> None:
        stats = await queue.get_queue_stats()

        assert stats.model_dump() == {
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "total": 0,
        }

    async def test_counts_by_status(self, queue: EmbeddingQueueService, clock) -> None:
        await queue.enqueue_task(1, "done", "update")
        await _complete(queue, clock)
        await queue.enqueue_task(2, "broken", "update", max_attempts=1)
        await _fail(queue)
        await queue.enqueue_task(3, "busy", "update")
        await queue.claim_next_task()
        await queue.enqueue_task(4, "waiting", "update")

        stats = await queue.get_queue_stats()

        assert (stats.pending, stats.processing, stats.completed, stats.failed) == (1, 1, 1, 1)
        assert stats.total == 4

    async def test_detailed_stats(self, queue: EmbeddingQueueService, clock) -> None:
        await queue.enqueue_task(1, "a", "update")
        await _complete(queue, clock, seconds=10)
        await queue.enqueue_task(2, "b", "create")
        await _complete(queue, clock, seconds=20)
        await queue.enqueue_task(3, "c", "delete", priority="high")
        await queue.enqueue_task(4, "d", "update", priority="low")

        detailed = await queue.get_detailed_queue_stats()

        assert detailed.stats.completed == 2
        assert detailed.by_priority == {"high": 1, "normal": 0, "low": 1}
        assert detailed.by_operation == {"create": 0, "update": 1, "delete": 1}
        assert detailed.completed_last_24h == 2
        assert detailed.failed_last_24h == 0
        assert detailed.average_processing_seconds == pytest.approx(15.0)

    async def test_24h_window(self, queue: EmbeddingQueueService, clock) -> None:
        await queue.enqueue_task(1, "a", "update")
        await _complete(queue, clock)
        clock.advance(hours=25)

        detailed = await queue.get_detailed_queue_stats()

        assert detailed.completed_last_24h == 0
        assert detailed.average_processing_seconds is None


class TestQueueHealth:
    async def test_empty_queue_is_healthy(self, queue: EmbeddingQueueService) -> None:
        health = await queue.get_queue_health()

        assert health.is_healthy is True
        assert health.issues == []
        assert health.oldest_pending_task is None
        assert health.failure_rate_last_24h is None
        assert health.worker_running is None

    async def test_too_many_pending(self, session_factory, clock) -> None:
        queue = EmbeddingQueueService(
            session_factory, EmbeddingQueueConfig(health_max_pending=2), clock=clock
        )
        for article_id in range(3):
            await queue.enqueue_task(article_id, f"post-{article_id}", "update")

        health = await queue.get_queue_health()

        assert health.is_healthy is False
        assert health.issues == ["High number of pending tasks: 3"]

    async def test_old_pending_task(self, queue: EmbeddingQueueService, clock) -> None:
        await queue.enqueue_task(1, "post", "update")
        clock.advance(hours=25)

        health = await queue.get_queue_health()

        assert health.issues == ["Old pending tasks: oldest task is 25 hours old"]
        assert health.oldest_pending_task is not None

    async def test_stuck_task(self, queue: EmbeddingQueueService, clock) -> None:
        await queue.enqueue_task(1, "post", "update")
        await queue.claim_next_task()
        clock.advance(minutes=31)

        health = await queue.get_queue_health()

        assert health.stuck_tasks == 1
        assert health.issues == [
            "Possible stuck tasks: 1 task(s) processing for more than 30 minutes"
        ]

    async def test_high_failure_rate(self, session_factory, clock) -> None:
        config = EmbeddingQueueConfig(health_min_failure_samples=4, health_max_failure_rate=0.2)
        queue = EmbeddingQueueService(session_factory, config, clock=clock)
        for article_id in range(3):
            await queue.enqueue_task(article_id, f"ok-{article_id}", "update")
            await _complete(queue, clock)
        await queue.enqueue_task(9, "broken", "update", max_attempts=1)
        await _fail(queue)

        health = await queue.get_queue_health()

        assert health.failure_rate_last_24h == pytest.approx(0.25)
        assert health.issues == [
            "High failure rate: 1 of 4 tasks failed in the last 24 hours (25%)"
        ]

    async def test_failure_rate_needs_enough_samples(
        self, queue: EmbeddingQueueService
    ) -> None:
        await queue.enqueue_task(1, "broken", "update", max_attempts=1)
        await _fail(queue)

        health = await queue.get_queue_health()

        assert health.failure_rate_last_24h == 1.0
        assert health.is_healthy is True

    async def test_burst_of_edits_keeps_queue_healthy(
        self, queue: EmbeddingQueueService
    ) -> None:
        scheduler = ArticleEmbeddingScheduler(queue)
        for _ in range(12):
            await scheduler.article_updated(1, "a", "A", 10)
        task = await queue.claim_next_task()
        await queue.record_success(task.id)

        health = await queue.get_queue_health()
        detailed = await queue.get_detailed_queue_stats()

        assert health.is_healthy is True
        assert health.completed_last_24h == 1
        assert health.failed_last_24h == 0
        assert health.superseded_last_24h == 11
        assert health.failure_rate_last_24h == 0.0
        assert detailed.failed_last_24h == 0
        assert detailed.superseded_last_24h == 11

    async def test_reports_worker_heartbeat(
        self,
        queue: EmbeddingQueueService,
        session_factory: async_sessionmaker[AsyncSession],
        clock,
    ) -> None:
        async with session_factory() as session:
            await ensure_worker_status(session)
        async with session_factory() as session:
            await mark_worker_started(session, clock.now)

        health = await queue.get_queue_health()

        assert health.worker_running is True
        assert health.worker_last_heartbeat == clock.now


class TestAuditTrail:
    async def test_task_lifecycle_is_audited(
        self, queue: EmbeddingQueueService, clock
    ) -> None:
        task_id = await queue.enqueue_task(1, "post", "update", max_attempts=1)
        await queue.claim_next_task()
        await queue.record_failure(task_id, "boom", stack_trace="Traceback: boom")

        entries = await queue.audit.query_logs(LogQueryFilters(task_id=task_id))

        events = [e.event_metadata["event"] for e in reversed(entries)]
        assert events == ["enqueued", "claimed", "permanently_failed"]
        failure = entries[0]
        assert failure.level == LogLevel.error
        assert failure.category == LogCategory.task_lifecycle
        assert failure.error == "boom"
        assert failure.stack_trace == "Traceback: boom"

    async def test_bulk_operations_are_audited(
        self, queue: EmbeddingQueueService, clock
    ) -> None:
        await queue.enqueue_task(1, "post", "update")
        await queue.claim_next_task()
        clock.advance(hours=1)
        await queue.reset_stuck_tasks()

        entries = await queue.audit.query_logs(
            LogQueryFilters(category=LogCategory.bulk_operations)
        )

        assert len(entries) == 1
        assert entries[0].event_metadata["operation"] == "reset_stuck_tasks"
        assert entries[0].event_metadata["affected"] == 1


class TestProducerFlow:
    async def test_burst_of_edits_leaves_one_pending_update(
        self, queue: EmbeddingQueueService
    ) -> None:
        scheduler = ArticleEmbeddingScheduler(queue)
        await scheduler.article_created(1, "draft", "Draft", 10)
        await scheduler.article_updated(1, "draft", "Draft", 20)
        latest = await scheduler.article_updated(1, "draft", "Draft", 30)

        pending = await queue.get_tasks_by_status(TaskStatus.pending)

        assert [t.id for t in pending] == [latest]
        assert (await queue.get_queue_stats()).failed == 2

    async def test_slug_change_cleans_up_before_reindex(
        self, queue: EmbeddingQueueService
    ) -> None:
        scheduler = ArticleEmbeddingScheduler(queue)
        await scheduler.article_updated(1, "new-name", "Renamed", 10, previous_slug="old-name")

        first = await queue.claim_next_task()
        second = await queue.claim_next_task()

        assert (first.operation, first.slug) == (TaskOperation.delete, "old-name")
        assert (second.operation, second.slug) == (TaskOperation.update, "new-name")
