# tests/property/test_partitioner_properties.py
"""Property-based tests for feed partitioning.

Properties tested:
1. Chunks are contiguous, ordered, and span first note start to last note end
2. Every note lands in exactly one chunk, in source order
3. Chunk count never exceeds notes or chunk_factor × workers
"""

from __future__ import annotations

import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from notesync.contracts.enums import FeedFormat
from notesync.contracts.records import NoteRecord
from notesync.engine.partitioner import Partitioner
from notesync.engine.scanner import scan_chunk

# Element builders are pure functions, safe to share across examples
_SHARED_FIXTURES = settings(suppress_health_check=[HealthCheck.function_scoped_fixture])

comment_counts = st.lists(st.integers(min_value=0, max_value=3), min_size=0, max_size=60)
workers = st.integers(min_value=1, max_value=8)
chunk_factors = st.integers(min_value=1, max_value=4)
formats = st.sampled_from([FeedFormat.PLANET, FeedFormat.API])


def _elements(counts: Sequence[int], feed_format: FeedFormat, planet_note: Callable[..., str], api_note: Callable[..., str]) -> list[str]:
    render = planet_note if feed_format is FeedFormat.PLANET else api_note
    return [
        render(
            note_id,
            comments=[("commented", f"2024-02-01T00:00:{i:02d}Z", i, f"user {i}", "x" * (note_id % 40)) for i in range(count)],
        )
        for note_id, count in enumerate(counts, start=1)
    ]


class TestPartitionProperties:
    """Structural properties of partition()."""

    @_SHARED_FIXTURES
    @given(counts=comment_counts, feed_format=formats, worker_count=workers, chunk_factor=chunk_factors)
    def test_chunks_are_contiguous_and_ordered(
        self, planet_note, api_note, feed_bytes, counts: list[int], feed_format: FeedFormat, worker_count: int, chunk_factor: int
    ) -> None:  # type: ignore[no-untyped-def]
        """Property: each chunk starts where the previous one ended."""
        data = feed_bytes(_elements(counts, feed_format, planet_note, api_note), feed_format)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "feed.xml"
            path.write_bytes(data)

            chunks = Partitioner(chunk_factor, min_notes_for_parallel=1).partition(path, feed_format, worker_count)

        if not counts:
            assert chunks == []
            return
        assert [c.partition_id for c in chunks] == list(range(len(chunks)))
        assert chunks[0].start == data.index(b"<note")
        assert chunks[-1].end == data.rindex(b"</note>") + len(b"</note>")
        for previous, current in zip(chunks, chunks[1:], strict=False):
            assert previous.end == current.start
        for chunk in chunks:
            assert chunk.start < chunk.end
            assert data[chunk.start :].startswith(b"<note")

    @_SHARED_FIXTURES
    @given(counts=comment_counts, feed_format=formats, worker_count=workers, chunk_factor=chunk_factors)
    def test_every_note_in_exactly_one_chunk(
        self, planet_note, api_note, feed_bytes, counts: list[int], feed_format: FeedFormat, worker_count: int, chunk_factor: int
    ) -> None:  # type: ignore[no-untyped-def]
        """Property: scanning all chunks yields each note once, in source order."""
        data = feed_bytes(_elements(counts, feed_format, planet_note, api_note), feed_format)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "feed.xml"
            path.write_bytes(data)

            chunks = Partitioner(chunk_factor, min_notes_for_parallel=1).partition(path, feed_format, worker_count)
            seen: list[int] = []
            comment_total = 0
            for chunk in chunks:
                for item in scan_chunk(chunk):
                    assert isinstance(item, NoteRecord)
                    seen.append(item.note.note_id)
                    comment_total += len(item.comments)

        assert seen == list(range(1, len(counts) + 1))
        assert comment_total == sum(counts)

    @_SHARED_FIXTURES
    @given(counts=comment_counts, worker_count=workers, chunk_factor=chunk_factors)
    def test_chunk_count_bounded(self, planet_note, api_note, feed_bytes, counts: list[int], worker_count: int, chunk_factor: int) -> None:  # type: ignore[no-untyped-def]
        """Property: never more chunks than notes or chunk_factor × workers."""
        data = feed_bytes(_elements(counts, FeedFormat.PLANET, planet_note, api_note), FeedFormat.PLANET)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "feed.xml"
            path.write_bytes(data)

            chunks = Partitioner(chunk_factor, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, worker_count)

        assert len(chunks) <= min(len(counts), chunk_factor * worker_count)

    @_SHARED_FIXTURES
    @given(counts=st.lists(st.integers(min_value=0, max_value=2), min_size=1, max_size=9), worker_count=workers)
    def test_below_parallel_threshold_is_single_chunk(self, planet_note, api_note, feed_bytes, counts: list[int], worker_count: int) -> None:  # type: ignore[no-untyped-def]
        """Property: feeds smaller than min_notes_for_parallel are not split."""
        data = feed_bytes(_elements(counts, FeedFormat.PLANET, planet_note, api_note), FeedFormat.PLANET)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "feed.xml"
            path.write_bytes(data)

            chunks = Partitioner(4, min_notes_for_parallel=10).partition(path, FeedFormat.PLANET, worker_count)

        assert len(chunks) == 1
