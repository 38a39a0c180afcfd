"""Inkvault - markdown article manager.

This package provides the background embedding task queue: a durable,
prioritized PostgreSQL-backed work queue that keeps article embeddings in
sync with article content, processed by a single long-running worker with
retry, stuck-task recovery, audit logging and health diagnostics.
"""

__version__ = "0.1.0"
