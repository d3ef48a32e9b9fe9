# tests/engine/test_partitioner.py
"""Tests for byte-range partitioning of feed files."""

import io

import pytest

from notesync.contracts.enums import FeedFormat
from notesync.engine.partitioner import Partitioner


class TestPartitioner:
    """Chunks cover every note exactly once, in source order."""

    def test_chunks_start_at_note_tags_and_cover_all_notes(self, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(i, comments=[("opened", "2024-01-01T00:00:00Z", i, f"u{i}", "x" * i)]) for i in range(1, 41)])
        data = path.read_bytes()

        chunks = Partitioner(chunk_factor=2, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=4)

        assert 1 < len(chunks) <= 8
        assert [c.partition_id for c in chunks] == list(range(len(chunks)))
        for chunk in chunks:
            assert data[chunk.start : chunk.start + 5] == b"<note"
        for left, right in zip(chunks, chunks[1:]):
            assert left.end == right.start
        assert data[: chunks[-1].end].endswith(b"</note>")
        assert b"<osm-notes>" not in b"".join(data[c.start : c.end] for c in chunks)

    def test_every_note_lands_in_exactly_one_chunk(self, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        from notesync.engine.scanner import iter_note_elements

        path = write_feed([planet_note(i) for i in range(1, 26)])
        chunks = Partitioner(chunk_factor=3, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=3)

        seen: list[bytes] = []
        with path.open("rb") as stream:
            for chunk in chunks:
                seen.extend(raw for _, raw in iter_note_elements(stream, chunk.start, chunk.end))

        assert len(seen) == 25
        assert [raw.split(b'"')[1] for raw in seen] == [str(i).encode() for i in range(1, 26)]

    def test_small_input_is_one_chunk(self, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(i) for i in range(1, 4)])

        chunks = Partitioner(chunk_factor=2, min_notes_for_parallel=10).partition(path, FeedFormat.PLANET, workers=8)

        assert len(chunks) == 1

    def test_never_more_chunks_than_notes(self, planet_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([planet_note(1), planet_note(2)])

        chunks = Partitioner(chunk_factor=4, min_notes_for_parallel=1).partition(path, FeedFormat.PLANET, workers=8)

        assert len(chunks) <= 2

    def test_empty_feed_has_no_chunks(self, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([])

        assert Partitioner().partition(path, FeedFormat.PLANET, workers=4) == []

    def test_api_format_is_carried_on_chunks(self, api_note, write_feed) -> None:  # type: ignore[no-untyped-def]
        path = write_feed([api_note(i) for i in range(1, 6)], FeedFormat.API)

        chunks = Partitioner(min_notes_for_parallel=1).partition(path, FeedFormat.API, workers=2)

        assert chunks
        assert all(c.feed_format is FeedFormat.API for c in chunks)

    def test_invalid_chunk_factor(self) -> None:
        with pytest.raises(ValueError, match="chunk_factor"):
            Partitioner(chunk_factor=0)


class TestTagSearch:
    """Block-boundary handling in the tag search helpers."""

    def test_next_note_start_across_block_boundary(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from notesync.engine import partitioner

        monkeypatch.setattr(partitioner, "_SEARCH_BLOCK", 4)
        data = b"xxxxxx<note id='1'></note>"

        assert partitioner._next_note_start(io.BytesIO(data), 0, len(data)) == 6

    def test_last_note_end_across_block_boundary(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from notesync.engine import partitioner

        monkeypatch.setattr(partitioner, "_SEARCH_BLOCK", 4)
        data = b"<note></note></osm-notes>"

        assert partitioner._last_note_end(io.BytesIO(data), len(data)) == len(b"<note></note>")
