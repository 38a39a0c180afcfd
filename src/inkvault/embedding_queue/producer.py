"""Producer-side helpers that translate article changes into queue tasks.

The article CRUD layer calls these after committing its own changes. Newer
work for an article supersedes its older pending work, so a burst of edits
leaves a single pending update behind.
"""

from __future__ import annotations

from uuid import UUID

import structlog

from inkvault.config import EmbeddingQueueConfig
from inkvault.database.models.embedding_task import TaskOperation, TaskPriority
from inkvault.embedding_queue.service import EmbeddingQueueService

logger = structlog.get_logger(__name__)


class ArticleEmbeddingScheduler:
    """Enqueue embedding work for article lifecycle events.

    When the queue is disabled in configuration every method is a no-op
    returning None.
    """

    def __init__(
        self,
        queue: EmbeddingQueueService,
        config: EmbeddingQueueConfig | None = None,
    ) -> None:
        self.queue = queue
        self.config = config or queue.config

    def _skip(self, event: str, article_id: int) -> bool:
        if not self.config.enabled:
            logger.debug("embedding_queue_disabled_skip", event=event, article_id=article_id)
            return True
        return False

    async def article_created(
        self,
        article_id: int,
        slug: str,
        title: str,
        content_length: int,
        priority: TaskPriority | str = TaskPriority.normal,
    ) -> UUID | None:
        """Schedule the first indexing of a new article."""
        if self._skip("article_created", article_id):
            return None
        return await self.queue.enqueue_task(
            article_id,
            slug,
            TaskOperation.create,
            priority=priority,
            metadata={
                "filename": f"{slug}.md",
                "title": title,
                "content_length": content_length,
            },
        )

    async def article_updated(
        self,
        article_id: int,
        slug: str,
        title: str,
        content_length: int,
        previous_slug: str | None = None,
        reason: str | None = None,
        priority: TaskPriority | str = TaskPriority.normal,
    ) -> UUID | None:
        """Schedule re-indexing of an edited article.

        Pending create/update work for the article is superseded. When the
        slug changed, a high-priority delete for the old slug is enqueued
        first so stale chunks are removed.

        Args:
            article_id: Edited article.
            slug: Current slug.
            title: Current title.
            content_length: Length of the new content.
            previous_slug: Slug before the edit, if it changed.
            reason: Why the update was requested (e.g. version_restore).
            priority: Priority of the update task.

        Returns:
            ID of the update task.
        """
        if self._skip("article_updated", article_id):
            return None

        await self.queue.supersede_pending_tasks(
            article_id, "superseded", operation=TaskOperation.create
        )
        await self.queue.supersede_pending_tasks(
            article_id, "superseded", operation=TaskOperation.update
        )

        if previous_slug is not None and previous_slug != slug:
            await self.queue.enqueue_task(
                article_id,
                previous_slug,
                TaskOperation.delete,
                priority=TaskPriority.high,
                metadata={
                    "filename": f"{previous_slug}.md",
                    "reason": "slug_change_cleanup",
                    "new_slug": slug,
                },
            )

        metadata = {
            "filename": f"{slug}.md",
            "title": title,
            "content_length": content_length,
        }
        if reason is not None:
            metadata["reason"] = reason
        return await self.queue.enqueue_task(
            article_id,
            slug,
            TaskOperation.update,
            priority=priority,
            metadata=metadata,
        )

    async def article_deleted(self, article_id: int, slug: str) -> UUID | None:
        """Schedule removal of a deleted article's chunks."""
        if self._skip("article_deleted", article_id):
            return None

        await self.queue.supersede_pending_tasks(article_id, "article_deletion")
        return await self.queue.enqueue_task(
            article_id,
            slug,
            TaskOperation.delete,
            priority=TaskPriority.high,
            metadata={"filename": f"{slug}.md", "reason": "article_deletion"},
        )

    async def article_rag_disabled(self, article_id: int, slug: str) -> UUID | None:
        """Schedule removal of chunks for an article excluded from RAG."""
        if self._skip("article_rag_disabled", article_id):
            return None

        await self.queue.supersede_pending_tasks(article_id, "no_rag_enabled")
        return await self.queue.enqueue_task(
            article_id,
            slug,
            TaskOperation.delete,
            priority=TaskPriority.high,
            metadata={"filename": f"{slug}.md", "reason": "no_rag_enabled"},
        )
