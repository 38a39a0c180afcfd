"""Operator diagnostics for queue health and individual tasks.

Pure functions turning health reports and task rows into findings and
recommendations for the admin CLI and the REST API.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta

from pydantic import BaseModel

from inkvault.database.models.base import ensure_utc
from inkvault.database.models.embedding_task import EmbeddingTask, TaskStatus
from inkvault.database.queries.embedding_task import SUPERSEDED_PREFIX
from inkvault.embedding_queue.service import QueueHealth


class ErrorCategory(str, enum.Enum):
    """Coarse classification of a task's last error."""

    timeout = "timeout"
    network = "network"
    authentication = "authentication"
    rate_limit = "rate_limit"
    validation = "validation"
    unknown = "unknown"


_ERROR_PATTERNS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.timeout, ("timeout", "timed out")),
    (ErrorCategory.network, ("connection", "network", "connect")),
    (ErrorCategory.authentication, ("authentication", "unauthorized", "http 401", "http 403")),
    (ErrorCategory.rate_limit, ("rate limit", "quota", "http 429")),
    (ErrorCategory.validation, ("invalid", "malformed", "not found", "empty")),
]

_ERROR_HINTS = {
    ErrorCategory.timeout: "Timeout - may indicate network or performance issues",
    ErrorCategory.network: "Network - check connectivity to the embedding service",
    ErrorCategory.authentication: "Authentication - check API keys and credentials",
    ErrorCategory.rate_limit: "Rate limiting - may need to reduce processing speed",
    ErrorCategory.validation: "Data validation - check article content and existence",
    ErrorCategory.unknown: "Unknown - manual investigation required",
}


def classify_error(message: str | None) -> ErrorCategory | None:
    """Classify an error message by its wording; None when there is no message."""
    if not message:
        return None
    lowered = message.lower()
    for category, needles in _ERROR_PATTERNS:
        if any(needle in lowered for needle in needles):
            return category
    return ErrorCategory.unknown


def health_recommendations(health: QueueHealth) -> list[str]:
    """Suggested operator actions for the issues in a health report."""
    recommendations: list[str] = []
    issues = " ".join(health.issues)
    if "High number of pending tasks" in issues:
        recommendations.append("Check that the background worker is running and keeping up")
    if "stuck tasks" in issues:
        recommendations.append("Run 'inkvault queue cleanup-stuck' to reset stuck processing tasks")
    if "High failure rate" in issues:
        recommendations.append(
            "Inspect failed tasks and audit logs, then run 'inkvault queue retry-failed'"
        )
    if "Old pending tasks" in issues:
        recommendations.append("Check the worker heartbeat with 'inkvault queue stats'")
    return recommendations


class TaskDiagnosis(BaseModel):
    """Findings about one task.

    Attributes:
        age_hours: Time since the task was enqueued.
        scheduled_in_seconds: Seconds until the task becomes eligible, if deferred.
        error_category: Classification of the last error.
        findings: Observations about the task.
        recommendations: Suggested operator actions.
        duplicate_count: Other tasks with the same article and operation.
    """

    age_hours: float
    scheduled_in_seconds: float | None = None
    error_category: ErrorCategory | None = None
    findings: list[str]
    recommendations: list[str]
    duplicate_count: int = 0


def diagnose_task(
    task: EmbeddingTask,
    duplicates: list[EmbeddingTask],
    now: datetime,
    stuck_timeout: timedelta,
) -> TaskDiagnosis:
    """Analyse a task the way an operator would when debugging it.

    Args:
        task: The task under inspection.
        duplicates: Other tasks with the same article and operation.
        now: Current time.
        stuck_timeout: Processing age considered stuck.

    Returns:
        The diagnosis.
    """
    findings: list[str] = []
    recommendations: list[str] = []

    age_hours = (now - ensure_utc(task.created_at)).total_seconds() / 3600
    if age_hours > 24:
        findings.append(f"Task is {age_hours:.1f} hours old")

    scheduled_in = None
    scheduled_at = ensure_utc(task.scheduled_at)
    if task.status == TaskStatus.pending and scheduled_at > now:
        scheduled_in = (scheduled_at - now).total_seconds()
        findings.append(f"Task is deferred for another {scheduled_in:.0f} seconds")

    category = classify_error(task.error_message)
    if task.status == TaskStatus.failed:
        if task.attempts >= task.max_attempts:
            findings.append("Task has exhausted all retry attempts")
        reason = (task.task_metadata or {}).get("reason")
        if reason and (task.error_message or "").startswith(SUPERSEDED_PREFIX):
            findings.append(f"Task was superseded: {reason}")
        elif category is not None:
            findings.append(f"Error type: {_ERROR_HINTS[category]}")
        recommendations.append(f"Retry the task: inkvault queue retry {task.id}")

    if task.status == TaskStatus.processing and task.processed_at is not None:
        processing_for = now - ensure_utc(task.processed_at)
        if processing_for > stuck_timeout:
            findings.append(
                f"Task has been processing for {processing_for.total_seconds() / 60:.0f} minutes"
            )
            recommendations.append("Task may be stuck - run 'inkvault queue cleanup-stuck'")

    active_duplicates = [
        d for d in duplicates if d.status in (TaskStatus.pending, TaskStatus.processing)
    ]
    if active_duplicates:
        findings.append(
            f"{len(active_duplicates)} other active task(s) for the same article and operation"
        )
        recommendations.append(
            "Multiple active tasks for the same article/operation - check producers"
        )

    return TaskDiagnosis(
        age_hours=round(age_hours, 2),
        scheduled_in_seconds=scheduled_in,
        error_category=category,
        findings=findings,
        recommendations=recommendations,
        duplicate_count=len(duplicates),
    )
