# src/notesync/engine/worker.py
"""TransformWorker and the worker pool.

A TransformWorker streams one chunk through the scanner, validates each
record, and bulk-appends accepted records to staging tagged with the
chunk's partition id. The pool submits every chunk to a
concurrent.futures executor up front; idle workers take the next queued
chunk, so uneven chunks balance out without static assignment.

Rejections are per record. A chunk that fails outright (unreadable file,
store error while flushing) has its partial output discarded and counts
as rejected. When the fraction of chunks with rejections exceeds the
configured threshold the whole run is failed.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, as_completed

from sqlalchemy.exc import SQLAlchemyError

from notesync.contracts.enums import ExecutorKind
from notesync.contracts.errors import GracefulShutdownError, RecordRejected, RejectionThresholdExceeded, StoreError
from notesync.contracts.records import Chunk, ChunkResult, NoteRecord, RejectedRecord
from notesync.core.logging import get_logger
from notesync.core.store.database import NotesDB
from notesync.engine.scanner import scan_chunk
from notesync.engine.staging import StagingArea

logger = get_logger(__name__)


class TransformWorker:
    """Parses one chunk at a time into staging."""

    def __init__(self, staging: StagingArea, *, validate: bool = True, flush_batch_size: int = 1000) -> None:
        self._staging = staging
        self._validate = validate
        self._flush_batch_size = flush_batch_size

    def process(self, chunk: Chunk) -> ChunkResult:
        """Transform a chunk, returning counts and rejections.

        Raises:
            StoreError: If staging rejected a flush
        """
        log = logger.bind(partition=chunk.partition_id, start=chunk.start, end=chunk.end)
        batch: list[NoteRecord] = []
        rejected: list[RejectedRecord] = []
        notes = comments = 0

        def flush() -> None:
            nonlocal notes, comments
            written_notes, written_comments = self._staging.append(batch, chunk.partition_id)
            notes += written_notes
            comments += written_comments
            batch.clear()

        try:
            for item in scan_chunk(chunk, validate=self._validate):
                if isinstance(item, RecordRejected):
                    log.warning("record_rejected", offset=item.offset, note_id=item.note_id, reason=item.reason)
                    rejected.append(
                        RejectedRecord(partition_id=chunk.partition_id, offset=item.offset, note_id=item.note_id, reason=item.reason)
                    )
                    continue
                batch.append(item)
                if len(batch) >= self._flush_batch_size:
                    flush()
            flush()
        except OSError as e:
            log.error("chunk_failed", error=str(e))
            self._staging.discard_partition(chunk.partition_id)
            return ChunkResult(partition_id=chunk.partition_id, notes=0, comments=0, rejected=tuple(rejected), failed=str(e))
        except SQLAlchemyError as e:
            raise StoreError(f"staging flush failed for partition {chunk.partition_id}: {e}") from e

        log.info("chunk_staged", notes=notes, comments=comments, rejected=len(rejected))
        return ChunkResult(partition_id=chunk.partition_id, notes=notes, comments=comments, rejected=tuple(rejected))


def transform_chunk_in_subprocess(chunk: Chunk, database_url: str, validate: bool, flush_batch_size: int) -> ChunkResult:
    """Process-pool entry point: opens its own engine, never the parent's."""
    db = NotesDB(database_url, create_tables=False)
    try:
        return TransformWorker(StagingArea(db), validate=validate, flush_batch_size=flush_batch_size).process(chunk)
    finally:
        db.close()


class WorkerPool:
    """Runs TransformWorkers over a list of chunks.

    Example:
        pool = WorkerPool(db, workers=4, executor_kind=ExecutorKind.PROCESS)
        results = pool.run(chunks, shutdown_event=event)
    """

    def __init__(
        self,
        db: NotesDB,
        *,
        workers: int,
        executor_kind: ExecutorKind = ExecutorKind.PROCESS,
        validate: bool = True,
        flush_batch_size: int = 1000,
        max_rejected_chunk_ratio: float = 0.5,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self._db = db
        self._workers = workers
        self._executor_kind = executor_kind
        self._validate = validate
        self._flush_batch_size = flush_batch_size
        self._max_rejected_chunk_ratio = max_rejected_chunk_ratio

    def _executor(self) -> Executor:
        if self._executor_kind is ExecutorKind.PROCESS:
            return ProcessPoolExecutor(max_workers=self._workers)
        return ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="transform")

    def _submit(self, executor: Executor, chunk: Chunk) -> Future[ChunkResult]:
        if self._executor_kind is ExecutorKind.PROCESS:
            return executor.submit(
                transform_chunk_in_subprocess, chunk, self._db.connection_string, self._validate, self._flush_batch_size
            )
        worker = TransformWorker(StagingArea(self._db), validate=self._validate, flush_batch_size=self._flush_batch_size)
        return executor.submit(worker.process, chunk)

    def run(self, chunks: Sequence[Chunk], *, shutdown_event: threading.Event | None = None) -> list[ChunkResult]:
        """Transform every chunk; results are returned in partition order.

        Raises:
            GracefulShutdownError: If shutdown was requested; in-flight chunks finish first
            RejectionThresholdExceeded: If too many chunks had rejections
            StoreError: If a worker could not write to staging
        """
        if not chunks:
            return []

        results: list[ChunkResult] = []
        interrupted = False
        with self._executor() as executor:
            futures = {self._submit(executor, chunk): chunk for chunk in chunks}
            for future in as_completed(futures):
                results.append(future.result())
                if shutdown_event is not None and shutdown_event.is_set() and not interrupted:
                    interrupted = True
                    cancelled = sum(1 for pending in futures if pending.cancel())
                    logger.warning("transform_interrupted", cancelled_chunks=cancelled)
                if interrupted:
                    # Remaining futures are either cancelled or still running
                    for pending in futures:
                        if not pending.cancelled() and not pending.done():
                            pending.result()
                    break

        if interrupted:
            raise GracefulShutdownError(f"shutdown requested after {len(results)} of {len(chunks)} chunks")

        results.sort(key=lambda result: result.partition_id)
        self._check_rejection_ratio(results)
        return results

    def _check_rejection_ratio(self, results: Sequence[ChunkResult]) -> None:
        rejected_chunks = sum(1 for result in results if result.has_rejections)
        if not rejected_chunks:
            return
        ratio = rejected_chunks / len(results)
        logger.warning("chunks_with_rejections", rejected_chunks=rejected_chunks, total_chunks=len(results), ratio=round(ratio, 3))
        if ratio > self._max_rejected_chunk_ratio:
            raise RejectionThresholdExceeded(rejected_chunks, len(results), self._max_rejected_chunk_ratio)
