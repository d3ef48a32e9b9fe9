# src/notesync/engine/scanner.py
"""Streaming per-record scanner for note feeds.

Two layers:

- iter_note_elements() walks a byte range of a feed file and yields one
  raw `<note>...</note>` element at a time with its absolute offset. It
  reads fixed-size blocks and keeps at most one partial element buffered,
  so memory is bounded by the largest single note, never by the file.
- decode_planet_note() / decode_api_note() turn one element into a
  NoteRecord. Each element is parsed on its own, so a malformed record
  is rejected without affecting its neighbours.

scan_chunk() combines both and is restartable per chunk: it depends only
on the chunk's byte range.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

from notesync.contracts.enums import CommentEvent, FeedFormat, NoteStatus
from notesync.contracts.errors import RecordRejected
from notesync.contracts.records import Chunk, Comment, Note, NoteRecord

# `<note` followed by whitespace or `>`; never matches `<notes` or `<osm-notes`
NOTE_START = re.compile(rb"<note[\s>]")
NOTE_END = b"</note>"

_BLOCK_SIZE = 1 << 20
_START_TAG_LEN = len(b"<note")


def iter_note_elements(
    stream: BinaryIO,
    start: int,
    end: int,
    *,
    block_size: int = _BLOCK_SIZE,
) -> Iterator[tuple[int, bytes]]:
    """Yield (absolute_offset, element_bytes) for each note element in [start, end).

    An element that starts inside the range but has no closing tag before
    `end` is yielded truncated; decoding it fails and the record is rejected.
    """
    stream.seek(start)
    position = start
    buffer = b""
    buffer_offset = start
    eof = False

    while True:
        if not eof:
            want = min(block_size, end - position)
            block = stream.read(want) if want > 0 else b""
            position += len(block)
            buffer += block
            eof = not block or position >= end

        cursor = 0
        pending: int | None = None
        while True:
            match = NOTE_START.search(buffer, cursor)
            if match is None:
                break
            close = buffer.find(NOTE_END, match.start())
            if close == -1:
                pending = match.start()
                break
            element_end = close + len(NOTE_END)
            yield buffer_offset + match.start(), buffer[match.start() : element_end]
            cursor = element_end

        if eof:
            if pending is not None:
                yield buffer_offset + pending, buffer[pending:]
            return

        # Keep an unterminated element, or a tail that may hold a split `<note`
        keep_from = pending if pending is not None else max(cursor, len(buffer) - _START_TAG_LEN)
        buffer_offset += keep_from
        buffer = buffer[keep_from:]


def parse_timestamp(value: str | None) -> datetime:
    """Parse feed timestamps into aware UTC datetimes.

    Accepts the planet form `2013-04-24T08:07:02Z` and the API form
    `2013-04-24 08:07:02 UTC`.

    Raises:
        ValueError: If value is empty or not a timestamp
    """
    if value is None or not value.strip():
        raise ValueError("missing timestamp")
    text = value.strip()
    if text.endswith(" UTC"):
        text = text[: -len(" UTC")] + "+00:00"
    elif text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _optional_timestamp(value: str | None) -> datetime | None:
    if value is None or not value.strip():
        return None
    return parse_timestamp(value)


def _optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


def _required(value: str | None, name: str) -> str:
    if value is None or not value.strip():
        raise ValueError(f"missing {name}")
    return value.strip()


def decode_planet_note(element: ET.Element, offset: int) -> NoteRecord:
    """Decode a planet dump element.

    <note id="1" lat="51.5" lon="-0.1" created_at="..." closed_at="...">
      <comment action="opened" timestamp="..." uid="7" user="alice">text</comment>
    </note>
    """
    note_id = int(_required(element.get("id"), "id"))
    comments = tuple(
        Comment(
            note_id=note_id,
            ordinal=ordinal,
            event=CommentEvent(_required(comment.get("action"), "action")),
            created_at=parse_timestamp(comment.get("timestamp")),
            user_id=_optional_int(comment.get("uid")),
            username=comment.get("user"),
            body=_comment_body(comment),
        )
        for ordinal, comment in enumerate(element.findall("comment"), start=1)
    )
    closed_at = _optional_timestamp(element.get("closed_at"))
    if comments and comments[-1].event is CommentEvent.HIDDEN:
        status = NoteStatus.HIDDEN
    else:
        status = NoteStatus.CLOSED if closed_at is not None else NoteStatus.OPEN
    note = Note(
        note_id=note_id,
        latitude=float(_required(element.get("lat"), "lat")),
        longitude=float(_required(element.get("lon"), "lon")),
        created_at=parse_timestamp(element.get("created_at")),
        status=status,
        closed_at=closed_at,
    )
    return NoteRecord(note=note, comments=comments, offset=offset)


def _comment_body(comment: ET.Element) -> str | None:
    # Some dumps wrap the body in <text>; most carry it as element text
    text_child = comment.find("text")
    if text_child is not None:
        return text_child.text
    return comment.text


def decode_api_note(element: ET.Element, offset: int) -> NoteRecord:
    """Decode an API 0.6 search result element.

    <note lon="-0.1" lat="51.5">
      <id>1</id><date_created>2013-04-24 08:07:02 UTC</date_created>
      <status>closed</status><date_closed>...</date_closed>
      <comments><comment><date/><uid/><user/><action/><text/></comment></comments>
    </note>
    """
    note_id = int(_required(element.findtext("id"), "id"))
    comments = tuple(
        Comment(
            note_id=note_id,
            ordinal=ordinal,
            event=CommentEvent(_required(comment.findtext("action"), "action")),
            created_at=parse_timestamp(comment.findtext("date")),
            user_id=_optional_int(comment.findtext("uid")),
            username=comment.findtext("user"),
            body=comment.findtext("text"),
        )
        for ordinal, comment in enumerate(element.findall("comments/comment"), start=1)
    )
    note = Note(
        note_id=note_id,
        latitude=float(_required(element.get("lat"), "lat")),
        longitude=float(_required(element.get("lon"), "lon")),
        created_at=parse_timestamp(element.findtext("date_created")),
        status=NoteStatus(_required(element.findtext("status"), "status")),
        closed_at=_optional_timestamp(element.findtext("date_closed")),
    )
    return NoteRecord(note=note, comments=comments, offset=offset)


DECODERS: dict[FeedFormat, Callable[[ET.Element, int], NoteRecord]] = {
    FeedFormat.PLANET: decode_planet_note,
    FeedFormat.API: decode_api_note,
}


def validate_record(record: NoteRecord) -> None:
    """Value-domain checks beyond what decoding enforces.

    Raises:
        RecordRejected: On the first violation found
    """
    note = record.note
    if not -90.0 <= note.latitude <= 90.0:
        raise RecordRejected(f"latitude {note.latitude} out of range", note_id=note.note_id, offset=record.offset)
    if not -180.0 <= note.longitude <= 180.0:
        raise RecordRejected(f"longitude {note.longitude} out of range", note_id=note.note_id, offset=record.offset)
    if note.note_id <= 0:
        raise RecordRejected(f"non-positive note id {note.note_id}", note_id=note.note_id, offset=record.offset)
    if note.closed_at is not None and note.closed_at < note.created_at:
        raise RecordRejected("closed_at precedes created_at", note_id=note.note_id, offset=record.offset)
    for comment in record.comments:
        if comment.user_id is not None and comment.user_id < 0:
            raise RecordRejected(f"negative uid {comment.user_id}", note_id=note.note_id, offset=record.offset)


def decode_element(raw: bytes, offset: int, feed_format: FeedFormat, *, validate: bool) -> NoteRecord:
    """Parse and decode one raw element.

    Raises:
        RecordRejected: If the element is malformed or fails validation
    """
    try:
        element = ET.fromstring(raw)
    except ET.ParseError as e:
        raise RecordRejected(f"malformed XML: {e}", offset=offset) from None

    note_id: int | None = None
    raw_id = element.get("id") if feed_format is FeedFormat.PLANET else element.findtext("id")
    if raw_id is not None and raw_id.strip().isdigit():
        note_id = int(raw_id)

    try:
        record = DECODERS[feed_format](element, offset)
    except (ValueError, TypeError) as e:
        raise RecordRejected(str(e), note_id=note_id, offset=offset) from None

    if validate:
        validate_record(record)
    return record


def scan_chunk(chunk: Chunk, *, validate: bool = True) -> Iterator[NoteRecord | RecordRejected]:
    """Yield a NoteRecord or a RecordRejected for each note element in the chunk.

    Rejections are yielded rather than raised so the caller can count them
    and keep going.
    """
    with Path(chunk.path).open("rb") as stream:
        for offset, raw in iter_note_elements(stream, chunk.start, chunk.end):
            try:
                yield decode_element(raw, offset, chunk.feed_format, validate=validate)
            except RecordRejected as rejected:
                yield rejected


def count_notes(path: Path, *, block_size: int = _BLOCK_SIZE) -> int:
    """Count note elements in a feed file without parsing them."""
    size = path.stat().st_size
    with path.open("rb") as stream:
        return sum(1 for _ in iter_note_elements(stream, 0, size, block_size=block_size))
