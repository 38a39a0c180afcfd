"""Integration tests for embedding task transitions.

Tests cover enqueue defaults, claim ordering and eligibility, concurrent
claims, the retry bound, stuck-task reset, cleanup scope, supersession
and manual requeue.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inkvault.database.models.base import ensure_utc
from inkvault.database.models.embedding_task import (
    TaskOperation,
    TaskPriority,
    TaskStatus,
)
from inkvault.database.queries.embedding_task import STUCK_RESET_MESSAGE
from inkvault.embedding_queue.audit import AuditLogger
from inkvault.embedding_queue.service import EmbeddingQueueService

async def test_enqueue_defaults(queue: EmbeddingQueueService, clock) -> None:
    created = clock.now
    task_id = await queue.enqueue_task(1, "first-post", "create", metadata={"title": "First"})

    task = await queue.get_task_status(task_id)

    assert isinstance(task_id, UUID)
    assert task.status == TaskStatus.pending
    assert task.operation == TaskOperation.create
    assert task.priority == TaskPriority.normal
    assert task.attempts == 0
    assert task.max_attempts == 3
    assert ensure_utc(task.created_at) == created
    assert ensure_utc(task.scheduled_at) == created
    assert task.processed_at is None
    assert task.completed_at is None
    assert task.task_metadata == {"title": "First"}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"operation": "reindex"},
        {"operation": "create", "priority": "urgent"},
        {"operation": "create", "max_attempts": 0},
    ],
)
async def test_enqueue_rejects_invalid_values(queue: EmbeddingQueueService, kwargs: dict) -> None:
    with pytest.raises(ValueError):
        await queue.enqueue_task(1, "post", **kwargs)


async def test_claim_follows_priority_then_schedule(
    queue: EmbeddingQueueService, clock
) -> None:
    low = await queue.enqueue_task(1, "a", "update", priority="low")
    clock.advance(seconds=1)
    normal_early = await queue.enqueue_task(2, "b", "update")
    clock.advance(seconds=1)
    high_early = await queue.enqueue_task(3, "c", "update", priority="high")
    clock.advance(seconds=1)
    normal_late = await queue.enqueue_task(4, "d", "update")
    clock.advance(seconds=1)
    high_late = await queue.enqueue_task(5, "e", "update", priority="high")

    claimed = []
    while (task := await queue.claim_next_task()) is not None:
        claimed.append(task.id)

    assert claimed == [high_early, high_late, normal_early, normal_late, low]


async def test_later_high_priority_task_is_claimed_first(
    queue: EmbeddingQueueService, clock
) -> None:
    await queue.enqueue_task(1, "article-one", "create", priority="normal")
    clock.advance(seconds=1)
    urgent = await queue.enqueue_task(2, "article-two", "create", priority="high")

    task = await queue.claim_next_task()

    assert task.id == urgent
    assert task.article_id == 2


async def test_claim_marks_processing_without_counting_attempt(
    queue: EmbeddingQueueService, clock
) -> None:
    task_id = await queue.enqueue_task(1, "post", "update")
    clock.advance(seconds=5)

    task = await queue.claim_next_task()

    assert task.id == task_id
    assert task.status == TaskStatus.processing
    assert ensure_utc(task.processed_at) == clock.now
    assert task.attempts == 0
    assert await queue.claim_next_task() is None


async def test_future_scheduled_task_is_not_eligible(
    queue: EmbeddingQueueService, clock
) -> None:
    task_id = await queue.enqueue_task(
        1, "post", "update", scheduled_at=clock.now + timedelta(hours=1)
    )

    assert await queue.claim_next_task() is None

    clock.advance(hours=1)
    task = await queue.claim_next_task()
    assert task.id == task_id


@pytest.mark.parametrize(("pending", "claimers"), [(1, 5), (3, 6)])
async def test_concurrent_claims_hand_out_each_task_once(
    file_session_factory: async_sessionmaker[AsyncSession],
    pending: int,
    claimers: int,
) -> None:
    queue = EmbeddingQueueService(file_session_factory, audit=AuditLogger(None))
    task_ids = {await queue.enqueue_task(i, f"post-{i}", "create") for i in range(pending)}

    results = await asyncio.gather(*(queue.claim_next_task() for _ in range(claimers)))

    claimed = [task.id for task in results if task is not None]
    assert len(claimed) == pending
    assert set(claimed) == task_ids


async def test_failures_retry_until_budget_is_spent(queue: EmbeddingQueueService) -> None:
    task_id = await queue.enqueue_task(1, "post", "update", max_attempts=3)

    for attempt in (1, 2):
        await queue.claim_next_task()
        task = await queue.record_failure(task_id, f"attempt {attempt} failed")
        assert task.status == TaskStatus.pending
        assert task.attempts == attempt
        assert task.processed_at is None
        assert task.completed_at is None
        assert task.error_message == f"attempt {attempt} failed"

    await queue.claim_next_task()
    task = await queue.record_failure(task_id, "attempt 3 failed")

    assert task.status == TaskStatus.failed
    assert task.attempts == 3
    assert task.completed_at is not None
    assert await queue.claim_next_task() is None


async def test_failure_on_terminal_task_changes_nothing(queue: EmbeddingQueueService) -> None:
    task_id = await queue.enqueue_task(1, "post", "update", max_attempts=1)
    await queue.claim_next_task()
    await queue.record_failure(task_id, "boom")

    task = await queue.record_failure(task_id, "boom again")

    assert task.status == TaskStatus.failed
    assert task.attempts == 1
    assert task.error_message == "boom"


async def test_retry_delay_defers_the_task(
    queue: EmbeddingQueueService, clock
) -> None:
    task_id = await queue.enqueue_task(1, "post", "update")
    await queue.claim_next_task()

    task = await queue.record_failure(task_id, "timeout", retry_delay=timedelta(seconds=60))

    assert ensure_utc(task.scheduled_at) == clock.now + timedelta(seconds=60)
    assert await queue.claim_next_task() is None
    clock.advance(seconds=61)
    assert (await queue.claim_next_task()).id == task_id


async def test_success_clears_previous_error(
    queue: EmbeddingQueueService, clock
) -> None:
    task_id = await queue.enqueue_task(1, "post", "update")
    await queue.claim_next_task()
    await queue.record_failure(task_id, "transient")
    await queue.claim_next_task()
    clock.advance(seconds=3)

    task = await queue.record_success(task_id, duration_ms=3000)

    assert task.status == TaskStatus.completed
    assert task.error_message is None
    assert ensure_utc(task.completed_at) == clock.now
    assert task.attempts == 1


async def test_success_for_unknown_task(queue: EmbeddingQueueService) -> None:
    with pytest.raises(ValueError, match="not found"):
        await queue.record_success(uuid4())


async def test_unclaimed_task_cannot_complete_or_fail(queue: EmbeddingQueueService) -> None:
    task_id = await queue.enqueue_task(1, "post", "update")

    completed = await queue.record_success(task_id)
    failed = await queue.record_failure(task_id, "boom")

    assert completed.status == TaskStatus.pending
    assert completed.completed_at is None
    assert failed.status == TaskStatus.pending
    assert failed.attempts == 0
    assert failed.error_message is None
    assert (await queue.claim_next_task()).id == task_id


async def test_late_success_after_stuck_reset_is_ignored(
    queue: EmbeddingQueueService, clock
) -> None:
    task_id = await queue.enqueue_task(1, "post", "update")
    await queue.claim_next_task()
    clock.advance(minutes=31)
    await queue.reset_stuck_tasks(timedelta(minutes=30))

    task = await queue.record_success(task_id)

    assert task.status == TaskStatus.pending
    assert task.completed_at is None
    assert task.error_message == STUCK_RESET_MESSAGE


async def test_stuck_task_is_reset_once(queue: EmbeddingQueueService, clock) -> None:
    task_id = await queue.enqueue_task(1, "post", "update")
    await queue.claim_next_task()
    clock.advance(minutes=31)

    assert await queue.reset_stuck_tasks(timedelta(minutes=30)) == 1
    assert await queue.reset_stuck_tasks(timedelta(minutes=30)) == 0

    task = await queue.get_task_status(task_id)
    assert task.status == TaskStatus.pending
    assert task.processed_at is None
    assert task.attempts == 0
    assert task.error_message == STUCK_RESET_MESSAGE


async def test_recent_claims_are_not_stuck(
    queue: EmbeddingQueueService, clock
) -> None:
    await queue.enqueue_task(1, "post", "update")
    await queue.claim_next_task()
    clock.advance(minutes=29)

    assert await queue.reset_stuck_tasks() == 0


async def test_clear_completed_touches_only_old_completed_tasks(
    queue: EmbeddingQueueService, clock
) -> None:
    old_done = await queue.enqueue_task(1, "old", "update")
    await queue.claim_next_task()
    await queue.record_success(old_done)

    failed = await queue.enqueue_task(2, "failed", "update", max_attempts=1)
    await queue.claim_next_task()
    await queue.record_failure(failed, "boom")

    clock.advance(days=10)
    recent_done = await queue.enqueue_task(3, "recent", "update")
    await queue.claim_next_task()
    await queue.record_success(recent_done)
    pending = await queue.enqueue_task(4, "pending", "update")

    deleted = await queue.clear_completed_tasks(clock.now - timedelta(days=5))

    assert deleted == 1
    assert await queue.get_task_status(old_done) is None
    for task_id in (failed, recent_done, pending):
        assert await queue.get_task_status(task_id) is not None


async def test_clear_completed_defaults_to_retention(
    queue: EmbeddingQueueService, clock
) -> None:
    task_id = await queue.enqueue_task(1, "post", "update")
    await queue.claim_next_task()
    await queue.record_success(task_id)

    clock.advance(days=29)
    assert await queue.clear_completed_tasks() == 0
    clock.advance(days=2)
    assert await queue.clear_completed_tasks() == 1


async def test_clear_failed_tasks(queue: EmbeddingQueueService, clock) -> None:
    task_id = await queue.enqueue_task(1, "post", "update", max_attempts=1)
    await queue.claim_next_task()
    await queue.record_failure(task_id, "boom")
    clock.advance(days=8)

    assert await queue.clear_failed_tasks(clock.now - timedelta(days=7)) == 1


async def test_supersede_pending_tasks(queue: EmbeddingQueueService) -> None:
    in_flight = await queue.enqueue_task(1, "post", "update")
    await queue.claim_next_task()
    create = await queue.enqueue_task(1, "post", "create")
    update = await queue.enqueue_task(1, "post", "update")
    other_article = await queue.enqueue_task(2, "other", "update")

    assert await queue.supersede_pending_tasks(1, "superseded", operation="update") == 1
    assert await queue.supersede_pending_tasks(1, "article_deletion") == 1

    superseded = await queue.get_task_status(update)
    assert superseded.status == TaskStatus.failed
    assert superseded.error_message == "Superseded: superseded"
    assert superseded.task_metadata["reason"] == "superseded"
    assert superseded.attempts >= superseded.max_attempts
    assert (await queue.get_task_status(create)).task_metadata["reason"] == "article_deletion"
    assert (await queue.get_task_status(in_flight)).status == TaskStatus.processing
    assert (await queue.get_task_status(other_article)).status == TaskStatus.pending

    # Superseded work is not brought back by bulk retry
    assert await queue.retry_failed_tasks() == 0


async def test_retry_task_grants_one_more_attempt(queue: EmbeddingQueueService) -> None:
    task_id = await queue.enqueue_task(1, "post", "update", max_attempts=1)
    await queue.claim_next_task()
    await queue.record_failure(task_id, "boom")

    task = await queue.retry_task(task_id)

    assert task.status == TaskStatus.pending
    assert task.attempts == 1
    assert task.max_attempts == 2
    assert task.error_message is None
    assert task.completed_at is None
    assert await queue.retry_task(task_id) is None


async def test_retry_failed_tasks_with_override(queue: EmbeddingQueueService) -> None:
    task_id = await queue.enqueue_task(1, "post", "update", max_attempts=1)
    await queue.claim_next_task()
    await queue.record_failure(task_id, "boom")
    replaced = await queue.enqueue_task(2, "other", "update")
    await queue.supersede_pending_tasks(2, "superseded")

    assert await queue.retry_failed_tasks() == 0
    assert await queue.retry_failed_tasks(max_attempts=3) == 1

    task = await queue.get_task_status(task_id)
    assert task.status == TaskStatus.pending
    assert task.max_attempts == 3
    still_replaced = await queue.get_task_status(replaced)
    assert still_replaced.status == TaskStatus.failed
    assert still_replaced.error_message == "Superseded: superseded"


async def test_task_listings(queue: EmbeddingQueueService, clock) -> None:
    first = await queue.enqueue_task(1, "post", "update")
    clock.advance(seconds=1)
    second = await queue.enqueue_task(1, "post", "update", priority="high")
    clock.advance(seconds=1)
    delete = await queue.enqueue_task(1, "post", "delete")
    await queue.enqueue_task(2, "other", "update")

    pending = await queue.get_tasks_by_status("pending")
    assert [t.id for t in pending][:2] == [second, first]

    history = await queue.get_tasks_for_article(1)
    assert [t.id for t in history] == [delete, second, first]

    task = await queue.get_task_status(first)
    duplicates = await queue.find_duplicate_tasks(task)
    assert [t.id for t in duplicates] == [second]

    with pytest.raises(ValueError, match="Invalid status"):
        await queue.get_tasks_by_status("done")
