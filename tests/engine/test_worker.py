# tests/engine/test_worker.py
"""Tests for TransformWorker and WorkerPool."""

import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from notesync.contracts.enums import ExecutorKind, FeedFormat
from notesync.contracts.errors import GracefulShutdownError, RejectionThresholdExceeded
from notesync.contracts.records import Chunk
from notesync.engine.partitioner import Partitioner
from notesync.engine.staging import StagingArea
from notesync.engine.worker import TransformWorker, WorkerPool


@pytest.fixture
def staging(db) -> Iterator[StagingArea]:  # type: ignore[no-untyped-def]
    area = StagingArea(db)
    area.recreate()
    yield area
    area.teardown()


def _whole_file(path: Path, feed_format: FeedFormat = FeedFormat.PLANET) -> Chunk:
    return Chunk(partition_id=0, path=path, start=0, end=path.stat().st_size, feed_format=feed_format)


class TestTransformWorker:
    """One chunk into staging."""

    def test_stages_accepted_records(self, staging: StagingArea, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(i, comments=[("opened", "2024-01-01T00:00:00Z", 1, "a", "t")]) for i in range(1, 6)])

        result = TransformWorker(staging, flush_batch_size=2).process(_whole_file(path))

        assert (result.notes, result.comments) == (5, 5)
        assert result.rejected == ()
        assert not result.has_rejections
        assert staging.counts() == (5, 5)

    def test_rejections_recorded_with_location(self, staging: StagingArea, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(1), planet_note(2, lon=500), planet_note(3)])

        result = TransformWorker(staging).process(_whole_file(path))

        assert result.notes == 2
        assert len(result.rejected) == 1
        rejected = result.rejected[0]
        assert rejected.note_id == 2
        assert rejected.offset is not None
        assert path.read_bytes()[rejected.offset :].startswith(b'<note id="2"')

    def test_unreadable_chunk_fails_and_discards_partial_output(self, staging: StagingArea, tmp_path: Path) -> None:
        chunk = Chunk(partition_id=4, path=tmp_path / "missing.xml", start=0, end=100, feed_format=FeedFormat.PLANET)

        result = TransformWorker(staging).process(chunk)

        assert result.failed is not None
        assert result.has_rejections
        assert staging.counts() == (0, 0)


class TestWorkerPool:
    """Parallel transform with rejection threshold."""

    def test_all_chunks_processed_in_partition_order(self, db, staging: StagingArea, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(i) for i in range(1, 31)])
        chunks = Partitioner(chunk_factor=2, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=3)

        results = WorkerPool(db, workers=3, executor_kind=ExecutorKind.THREAD).run(chunks)

        assert [r.partition_id for r in results] == [c.partition_id for c in chunks]
        assert sum(r.notes for r in results) == 30
        assert staging.counts()[0] == 30

    def test_process_executor(self, db, staging: StagingArea, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(i) for i in range(1, 11)])
        chunks = Partitioner(min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=2)

        results = WorkerPool(db, workers=2, executor_kind=ExecutorKind.PROCESS).run(chunks)

        assert sum(r.notes for r in results) == 10
        assert staging.counts()[0] == 10

    def test_empty_chunk_list(self, db) -> None:  # type: ignore[no-untyped-def]
        assert WorkerPool(db, workers=2, executor_kind=ExecutorKind.THREAD).run([]) == []

    def test_rejection_ratio_below_threshold_passes(self, db, staging: StagingArea, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(1, lat=99), *[planet_note(i) for i in range(2, 21)]])
        chunks = Partitioner(chunk_factor=2, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=2)

        results = WorkerPool(db, workers=2, executor_kind=ExecutorKind.THREAD, max_rejected_chunk_ratio=0.5).run(chunks)

        assert sum(len(r.rejected) for r in results) == 1

    def test_rejection_ratio_above_threshold_fails_run(self, db, staging: StagingArea, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(i, lat=99 if i % 2 else 10) for i in range(1, 21)])
        chunks = Partitioner(chunk_factor=2, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=2)

        with pytest.raises(RejectionThresholdExceeded) as exc_info:
            WorkerPool(db, workers=2, executor_kind=ExecutorKind.THREAD, max_rejected_chunk_ratio=0.5).run(chunks)

        assert exc_info.value.rejected_chunks == exc_info.value.total_chunks

    def test_shutdown_stops_after_in_flight_chunks(self, db, staging: StagingArea, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(i) for i in range(1, 21)])
        chunks = Partitioner(chunk_factor=4, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=1)
        shutdown = threading.Event()
        shutdown.set()

        with pytest.raises(GracefulShutdownError):
            WorkerPool(db, workers=1, executor_kind=ExecutorKind.THREAD).run(chunks, shutdown_event=shutdown)

        assert staging.counts()[0] < 20

    def test_invalid_worker_count(self, db) -> None:  # type: ignore[no-untyped-def]
        with pytest.raises(ValueError, match="workers"):
            WorkerPool(db, workers=0)
