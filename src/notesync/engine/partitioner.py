# src/notesync/engine/partitioner.py
"""Partitioner: split a feed file into contiguous, note-aligned byte ranges.

Chunks outnumber workers (chunk_factor per worker) so a worker that
finishes a light chunk pulls another instead of idling behind a heavy
one. Every chunk starts at a `<note` tag; the last one ends right after
the final `</note>`, so the root element's tags never appear inside a
chunk.
"""

from __future__ import annotations

from pathlib import Path
from typing import BinaryIO

from notesync.contracts.enums import FeedFormat
from notesync.contracts.records import Chunk
from notesync.core.logging import get_logger
from notesync.engine.scanner import NOTE_END, NOTE_START, count_notes

logger = get_logger(__name__)

_SEARCH_BLOCK = 64 * 1024


def _next_note_start(stream: BinaryIO, offset: int, limit: int) -> int | None:
    """Offset of the first `<note` tag at or after offset, None if none before limit."""
    position = offset
    overlap = b""
    while position < limit:
        stream.seek(position)
        block = stream.read(min(_SEARCH_BLOCK, limit - position))
        if not block:
            return None
        data = overlap + block
        match = NOTE_START.search(data)
        if match is not None:
            return position - len(overlap) + match.start()
        # A tag split across blocks is found on the next pass
        overlap = data[-len(b"<note") :]
        position += len(block)
    return None


def _last_note_end(stream: BinaryIO, size: int) -> int | None:
    """Offset just past the last `</note>`, None if there is none."""
    position = size
    tail = b""
    while position > 0:
        read_from = max(0, position - _SEARCH_BLOCK)
        stream.seek(read_from)
        data = stream.read(position - read_from) + tail
        found = data.rfind(NOTE_END)
        if found != -1:
            return read_from + found + len(NOTE_END)
        tail = data[: len(NOTE_END)]
        position = read_from
    return None


class Partitioner:
    """Computes chunk boundaries for one feed file.

    Example:
        chunks = Partitioner(chunk_factor=2).partition(path, FeedFormat.PLANET, workers=4)
        # up to 8 chunks, in source order
    """

    def __init__(self, chunk_factor: int = 2, *, min_notes_for_parallel: int = 10) -> None:
        if chunk_factor < 1:
            raise ValueError(f"chunk_factor must be >= 1, got {chunk_factor}")
        self._chunk_factor = chunk_factor
        self._min_notes_for_parallel = min_notes_for_parallel

    def partition(self, path: Path, feed_format: FeedFormat, workers: int) -> list[Chunk]:
        """Split the file into at most chunk_factor × workers chunks.

        Returns an empty list when the file contains no notes.
        """
        size = path.stat().st_size
        with path.open("rb") as stream:
            first = _next_note_start(stream, 0, size)
            last_end = _last_note_end(stream, size)
            if first is None or last_end is None or last_end <= first:
                logger.info("partition_empty", path=str(path))
                return []

            notes = count_notes(path)
            target = self._chunk_factor * max(1, workers)
            if notes < self._min_notes_for_parallel:
                target = 1
            target = max(1, min(target, notes))

            span = last_end - first
            boundaries = [first]
            for i in range(1, target):
                candidate = _next_note_start(stream, first + (span * i) // target, last_end)
                if candidate is None or candidate <= boundaries[-1]:
                    continue
                boundaries.append(candidate)

        ends = boundaries[1:] + [last_end]
        chunks = [
            Chunk(partition_id=i, path=path, start=start, end=end, feed_format=feed_format)
            for i, (start, end) in enumerate(zip(boundaries, ends, strict=True))
        ]
        logger.info("partition_complete", path=str(path), notes=notes, chunks=len(chunks), workers=workers)
        return chunks
