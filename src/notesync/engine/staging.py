# src/notesync/engine/staging.py
"""StagingArea: per-run scratch tables between the workers and the Reconciler.

The coordinator recreates the staging tables at run start (never trusting a
previous run's leftovers) and drops them at run end whatever the outcome.
Workers only append; the Reconciler reads and prunes.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, insert, select

from notesync.contracts.records import NoteRecord
from notesync.core.logging import get_logger
from notesync.core.store.schema import staging_comments_table, staging_metadata, staging_notes_table

if TYPE_CHECKING:
    from notesync.core.store.database import NotesDB

logger = get_logger(__name__)


def _note_row(record: NoteRecord, partition_id: int) -> dict[str, Any]:
    note = record.note
    return {
        "partition_id": partition_id,
        "source_offset": record.offset,
        "note_id": note.note_id,
        "latitude": note.latitude,
        "longitude": note.longitude,
        "created_at": note.created_at,
        "status": note.status.value,
        "closed_at": note.closed_at,
        "source_timestamp": record.source_timestamp,
    }


def _comment_rows(record: NoteRecord, partition_id: int) -> list[dict[str, Any]]:
    return [
        {
            "partition_id": partition_id,
            "source_offset": record.offset,
            "ordinal": comment.ordinal,
            "note_id": comment.note_id,
            "event": comment.event.value,
            "created_at": comment.created_at,
            "user_id": comment.user_id,
            "username": comment.username,
            "body": comment.body,
        }
        for comment in record.comments
    ]


class StagingArea:
    """Transient tables holding one run's parsed records."""

    def __init__(self, db: NotesDB) -> None:
        self._db = db

    def recreate(self) -> None:
        """Drop and create the staging tables."""
        staging_metadata.drop_all(self._db.engine, checkfirst=True)
        staging_metadata.create_all(self._db.engine)
        logger.debug("staging_recreated")

    def teardown(self) -> None:
        staging_metadata.drop_all(self._db.engine, checkfirst=True)
        logger.debug("staging_dropped")

    def append(self, records: Sequence[NoteRecord], partition_id: int) -> tuple[int, int]:
        """Bulk-append records in one transaction.

        Returns:
            (notes, comments) rows written
        """
        if not records:
            return 0, 0
        note_rows = [_note_row(record, partition_id) for record in records]
        comment_rows = [row for record in records for row in _comment_rows(record, partition_id)]
        with self._db.connection() as conn:
            conn.execute(insert(staging_notes_table), note_rows)
            if comment_rows:
                conn.execute(insert(staging_comments_table), comment_rows)
        return len(note_rows), len(comment_rows)

    def discard_partition(self, partition_id: int) -> None:
        """Remove everything a failed chunk had already flushed."""
        with self._db.connection() as conn:
            conn.execute(delete(staging_comments_table).where(staging_comments_table.c.partition_id == partition_id))
            conn.execute(delete(staging_notes_table).where(staging_notes_table.c.partition_id == partition_id))

    def counts(self) -> tuple[int, int]:
        """(notes, comments) currently staged."""
        with self._db.engine.connect() as conn:
            notes = conn.execute(select(func.count()).select_from(staging_notes_table)).scalar_one()
            comments = conn.execute(select(func.count()).select_from(staging_comments_table)).scalar_one()
        return int(notes), int(comments)

    def watermark(self) -> datetime | None:
        """Highest source timestamp among staged records."""
        with self._db.engine.connect() as conn:
            note_max = conn.execute(select(func.max(staging_notes_table.c.source_timestamp))).scalar_one_or_none()
            comment_max = conn.execute(select(func.max(staging_comments_table.c.created_at))).scalar_one_or_none()
        stamps = [stamp for stamp in (note_max, comment_max) if stamp is not None]
        return max(stamps) if stamps else None
