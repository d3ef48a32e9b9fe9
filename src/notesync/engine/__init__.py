# src/notesync/engine/__init__.py
"""Ingestion engine: feeds, partitioning, transform workers, and the merge.

This module provides:
- ExecutionCoordinator: Run lifecycle, locking and failure escalation
- Partitioner / WorkerPool: Partition-parallel transform into staging
- Reconciler: Staging-to-durable merge and cursor advance
- BoundaryFetcher: Gate-limited Overpass boundary downloads
- RetryManager: Retry logic with tenacity

Example:
    from notesync.core.config import load_settings
    from notesync.engine import ExecutionCoordinator

    settings = load_settings(Path("settings.yaml"))
    report = ExecutionCoordinator(settings).run(RunType.API)
"""

from notesync.engine.boundaries import BoundaryFetcher
from notesync.engine.coordinator import ExecutionCoordinator
from notesync.engine.feeds import BulkSnapshotFeed, FeedResult, IncrementalDeltaFeed
from notesync.engine.partitioner import Partitioner
from notesync.engine.reconciler import NullCountryResolver, Reconciler, SqlFunctionCountryResolver
from notesync.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from notesync.engine.staging import StagingArea
from notesync.engine.worker import TransformWorker, WorkerPool

__all__ = [
    "BoundaryFetcher",
    "BulkSnapshotFeed",
    "ExecutionCoordinator",
    "FeedResult",
    "IncrementalDeltaFeed",
    "MaxRetriesExceeded",
    "NullCountryResolver",
    "Partitioner",
    "Reconciler",
    "RetryConfig",
    "RetryManager",
    "SqlFunctionCountryResolver",
    "StagingArea",
    "TransformWorker",
    "WorkerPool",
]
