# src/notesync/engine/reconciler.py
"""Reconciler: merges staged records into the durable tables.

Two entry points:

- merge() is the incremental path. In one transaction it upserts the
  staged notes (closing data is never erased by a delta that lacks it),
  inserts comments not already present, appends new comments after the
  note's existing ones, and removes the staged rows it consumed.
- replace_all() is the bulk path. In one transaction it empties the
  durable tables and loads the staged snapshot.

Neither touches the ingestion cursor. advance_cursor() runs as its own
transaction afterwards, so a crash between the two leaves the cursor
behind the data, never ahead of it.

Staged rows are processed in note-id key ranges so memory stays bounded
on a full planet load.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterator, Mapping, Sequence
from datetime import datetime
from itertools import groupby
from typing import Any, Protocol

from sqlalchemy import Connection, Row, bindparam, delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from notesync.contracts.enums import Stage
from notesync.contracts.errors import StoreError
from notesync.contracts.records import MergeResult
from notesync.core.logging import get_logger
from notesync.core.store.database import NotesDB
from notesync.core.store.schema import (
    note_comments_table,
    note_comments_text_table,
    notes_table,
    properties_table,
    staging_comments_table,
    staging_notes_table,
    users_table,
)
from notesync.engine.scanner import parse_timestamp

logger = get_logger(__name__)

CURSOR_KEY = "last_update"

# Keeps IN-lists under SQLite's bound-parameter limit
_KEY_BATCH = 500


class CountryResolver(Protocol):
    """Assigns country ids to new notes and to stored notes that have none."""

    def resolve(self, conn: Connection, notes: Sequence[Row[Any]]) -> dict[int, int | None]: ...


class NullCountryResolver:
    """Leaves country unset."""

    def resolve(self, conn: Connection, notes: Sequence[Row[Any]]) -> dict[int, int | None]:
        return {}


class SqlFunctionCountryResolver:
    """Calls a store-side function `name(lon, lat, note_id)` per note."""

    def __init__(self, function_name: str) -> None:
        self._function_name = function_name

    def resolve(self, conn: Connection, notes: Sequence[Row[Any]]) -> dict[int, int | None]:
        fn = getattr(func, self._function_name)
        resolved: dict[int, int | None] = {}
        for note in notes:
            resolved[note.note_id] = conn.execute(select(fn(note.longitude, note.latitude, note.note_id))).scalar()
        return resolved


def _iter_key_batches(conn: Connection) -> Iterator[list[int]]:
    """Distinct staged note ids in ascending key ranges."""
    last: int | None = None
    while True:
        query = select(staging_notes_table.c.note_id).distinct().order_by(staging_notes_table.c.note_id).limit(_KEY_BATCH)
        if last is not None:
            query = query.where(staging_notes_table.c.note_id > last)
        keys = list(conn.execute(query).scalars())
        if not keys:
            return
        yield keys
        last = keys[-1]


def _pick_winners(rows: Sequence[Row[Any]]) -> dict[int, Row[Any]]:
    """One staged row per note id: latest source timestamp, then latest source position."""
    winners: dict[int, Row[Any]] = {}
    for row in rows:
        current = winners.get(row.note_id)
        if current is None or (row.source_timestamp, row.source_offset) > (current.source_timestamp, current.source_offset):
            winners[row.note_id] = row
    return winners


def _unique_comments(rows: Sequence[Row[Any]]) -> dict[int, list[Row[Any]]]:
    """Staged comments grouped by note, deduplicated across elements, in source order.

    A note element carries the note's whole discussion, so two elements of
    the same note repeat each other. Comments are matched by (event,
    created_at) and by their position among the element's comments with
    that same pair: the n-th "commented at T" of one element is the n-th of
    another. Rows of a single element are never merged with each other,
    so two comments posted in the same second both survive.
    """
    by_note: dict[int, list[Row[Any]]] = defaultdict(list)
    kept: dict[int, Counter[tuple[str, datetime]]] = defaultdict(Counter)
    for (note_id, _), element in groupby(
        sorted(rows, key=lambda r: (r.note_id, r.source_offset, r.ordinal)),
        key=lambda r: (r.note_id, r.source_offset),
    ):
        position: Counter[tuple[str, datetime]] = Counter()
        for row in element:
            key = (row.event, row.created_at)
            if position[key] >= kept[note_id][key]:
                kept[note_id][key] += 1
                by_note[note_id].append(row)
            position[key] += 1
    return by_note


class Reconciler:
    """Moves staged records into the durable store.

    Example:
        reconciler = Reconciler(db)
        result = reconciler.merge()
        reconciler.advance_cursor(result)
    """

    def __init__(
        self,
        db: NotesDB,
        *,
        country_resolver: CountryResolver | None = None,
        gap_check_min_notes: int = 10,
        gap_ratio_threshold: float = 0.05,
    ) -> None:
        self._db = db
        self._country_resolver = country_resolver or NullCountryResolver()
        self._gap_check_min_notes = gap_check_min_notes
        self._gap_ratio_threshold = gap_ratio_threshold

    def merge(self) -> MergeResult:
        """Upsert all staged records in a single transaction.

        Running merge twice over identical staged content leaves the
        durable tables as after the first run.

        Raises:
            StoreError: If the transaction failed; nothing was committed
        """
        try:
            with self._db.connection() as conn:
                result = self._merge(conn, replace=False)
                self._consume_staging(conn)
        except SQLAlchemyError as e:
            raise StoreError(f"merge failed: {e}", stage=Stage.MERGE) from e
        logger.info(
            "merge_complete",
            inserted_notes=result.inserted_notes,
            updated_notes=result.updated_notes,
            inserted_comments=result.inserted_comments,
            watermark=result.watermark.isoformat() if result.watermark else None,
        )
        return result

    def replace_all(self) -> MergeResult:
        """Replace the durable note tables with the staged snapshot.

        Raises:
            StoreError: If the transaction failed; the previous contents remain
        """
        try:
            with self._db.connection() as conn:
                conn.execute(delete(note_comments_text_table))
                conn.execute(delete(note_comments_table))
                conn.execute(delete(notes_table))
                conn.execute(delete(users_table))
                result = self._merge(conn, replace=True)
                self._consume_staging(conn)
        except SQLAlchemyError as e:
            raise StoreError(f"bulk replace failed: {e}", stage=Stage.MERGE) from e
        logger.info("replace_complete", notes=result.inserted_notes, comments=result.inserted_comments)
        return result

    def _merge(self, conn: Connection, *, replace: bool) -> MergeResult:
        inserted_notes = updated_notes = inserted_comments = without_comments = 0
        watermark: datetime | None = None

        for keys in _iter_key_batches(conn):
            staged = conn.execute(
                select(staging_notes_table).where(staging_notes_table.c.note_id.in_(keys))
            ).all()
            winners = _pick_winners(staged)

            # note_id -> durable country_id
            existing: dict[int, int | None] = {}
            if not replace:
                existing = {
                    row.note_id: row.country_id
                    for row in conn.execute(
                        select(notes_table.c.note_id, notes_table.c.country_id)
                        .where(notes_table.c.note_id.between(keys[0], keys[-1]))
                        .where(notes_table.c.note_id.in_(keys))
                    )
                }

            new_notes = [row for note_id, row in winners.items() if note_id not in existing]
            changed_notes = [row for note_id, row in winners.items() if note_id in existing]
            without_country = [row for row in changed_notes if existing[row.note_id] is None]
            inserted_notes += self._insert_notes(conn, new_notes)
            updated_notes += self._update_notes(conn, changed_notes, without_country)

            staged_comments = conn.execute(
                select(staging_comments_table).where(staging_comments_table.c.note_id.in_(keys))
            ).all()
            self._upsert_users(conn, staged_comments)
            inserted_comments += self._insert_comments(conn, keys, _unique_comments(staged_comments))
            without_comments += self._count_without_comments(conn, keys)

            for row in winners.values():
                if watermark is None or row.source_timestamp > watermark:
                    watermark = row.source_timestamp
            for row in staged_comments:
                if watermark is None or row.created_at > watermark:
                    watermark = row.created_at

        return MergeResult(
            inserted_notes=inserted_notes,
            updated_notes=updated_notes,
            inserted_comments=inserted_comments,
            notes_without_comments=without_comments,
            watermark=watermark,
        )

    def _insert_notes(self, conn: Connection, rows: Sequence[Row[Any]]) -> int:
        if not rows:
            return 0
        countries = self._country_resolver.resolve(conn, rows)
        conn.execute(
            insert(notes_table),
            [
                {
                    "note_id": row.note_id,
                    "latitude": row.latitude,
                    "longitude": row.longitude,
                    "created_at": row.created_at,
                    "status": row.status,
                    "closed_at": row.closed_at,
                    "country_id": countries.get(row.note_id),
                }
                for row in rows
            ],
        )
        return len(rows)

    def _update_notes(self, conn: Connection, rows: Sequence[Row[Any]], without_country: Sequence[Row[Any]] = ()) -> int:
        """Refresh status and closing data of stored notes.

        Notes stored while no country could be resolved get another try;
        a known closing time or country is never replaced by NULL.
        """
        if not rows:
            return 0
        countries = self._country_resolver.resolve(conn, without_country) if without_country else {}
        statement = (
            update(notes_table)
            .where(notes_table.c.note_id == bindparam("b_note_id"))
            .values(
                status=bindparam("b_status"),
                closed_at=func.coalesce(bindparam("b_closed_at", type_=notes_table.c.closed_at.type), notes_table.c.closed_at),
                country_id=func.coalesce(bindparam("b_country_id", type_=notes_table.c.country_id.type), notes_table.c.country_id),
            )
        )
        conn.execute(
            statement,
            [
                {
                    "b_note_id": row.note_id,
                    "b_status": row.status,
                    "b_closed_at": row.closed_at,
                    "b_country_id": countries.get(row.note_id),
                }
                for row in rows
            ],
        )
        if countries:
            logger.debug("countries_backfilled", notes=sum(1 for value in countries.values() if value is not None))
        return len(rows)

    def _upsert_users(self, conn: Connection, comments: Sequence[Row[Any]]) -> None:
        latest: dict[int, Row[Any]] = {}
        for row in comments:
            if row.user_id is None or not row.username:
                continue
            current = latest.get(row.user_id)
            if current is None or row.created_at >= current.created_at:
                latest[row.user_id] = row
        if not latest:
            return

        known = {
            user.user_id: user.username
            for user in conn.execute(select(users_table).where(users_table.c.user_id.in_(list(latest))))
        }
        new_users = [{"user_id": uid, "username": row.username} for uid, row in latest.items() if uid not in known]
        renamed = [
            {"b_user_id": uid, "b_username": row.username}
            for uid, row in latest.items()
            if uid in known and known[uid] != row.username
        ]
        if new_users:
            conn.execute(insert(users_table), new_users)
        if renamed:
            conn.execute(
                update(users_table).where(users_table.c.user_id == bindparam("b_user_id")).values(username=bindparam("b_username")),
                renamed,
            )

    def _insert_comments(self, conn: Connection, keys: Sequence[int], staged: Mapping[int, list[Row[Any]]]) -> int:
        if not staged:
            return 0
        # Durable comments per note and (event, created_at); the first n
        # staged occurrences of a pair are the n already stored
        present: dict[int, Counter[tuple[str, datetime]]] = defaultdict(Counter)
        last_sequence: dict[int, int] = {}
        for row in conn.execute(
            select(
                note_comments_table.c.note_id,
                note_comments_table.c.event,
                note_comments_table.c.created_at,
                note_comments_table.c.sequence_action,
            ).where(note_comments_table.c.note_id.in_(keys))
        ):
            present[row.note_id][(row.event, row.created_at)] += 1
            last_sequence[row.note_id] = max(last_sequence.get(row.note_id, 0), row.sequence_action)

        comment_rows: list[dict[str, Any]] = []
        text_rows: list[dict[str, Any]] = []
        for note_id, rows in staged.items():
            sequence = last_sequence.get(note_id, 0)
            seen: Counter[tuple[str, datetime]] = Counter()
            for row in rows:
                key = (row.event, row.created_at)
                seen[key] += 1
                if seen[key] <= present[note_id][key]:
                    continue
                sequence += 1
                comment_rows.append(
                    {
                        "note_id": note_id,
                        "sequence_action": sequence,
                        "event": row.event,
                        "created_at": row.created_at,
                        "user_id": row.user_id,
                    }
                )
                text_rows.append({"note_id": note_id, "sequence_action": sequence, "body": row.body or ""})

        if comment_rows:
            conn.execute(insert(note_comments_table), comment_rows)
            conn.execute(insert(note_comments_text_table), text_rows)
        return len(comment_rows)

    @staticmethod
    def _count_without_comments(conn: Connection, keys: Sequence[int]) -> int:
        with_comments = select(note_comments_table.c.note_id).where(note_comments_table.c.note_id.in_(keys)).distinct()
        return len(keys) - len(list(conn.execute(with_comments).scalars()))

    @staticmethod
    def _consume_staging(conn: Connection) -> None:
        durable = select(notes_table.c.note_id)
        conn.execute(delete(staging_comments_table).where(staging_comments_table.c.note_id.in_(durable)))
        conn.execute(delete(staging_notes_table).where(staging_notes_table.c.note_id.in_(durable)))

    def read_cursor(self) -> datetime | None:
        """Timestamp of the newest record known to be durable."""
        value = self._db.read_property(CURSOR_KEY)
        return parse_timestamp(value) if value else None

    def gap_detected(self, result: MergeResult) -> bool:
        """True when too many merged notes arrived without a single comment.

        That pattern means the delta was cut off mid-note; the cursor must
        stay put so the next run re-reads the window.
        """
        merged = result.inserted_notes + result.updated_notes
        if merged < self._gap_check_min_notes:
            return False
        return result.notes_without_comments / merged > self._gap_ratio_threshold

    def advance_cursor(self, result: MergeResult, *, reset: bool = False) -> bool:
        """Move the cursor to the merge watermark, if it is safe to.

        The cursor never moves backwards, and it stays put when
        gap_detected() holds.

        After replace_all() pass reset=True: the durable tables now reflect
        the snapshot, so the cursor is set to its watermark in either
        direction and the gap check does not apply.

        Returns:
            True if the cursor moved
        """
        if result.watermark is None:
            return False

        if not reset and self.gap_detected(result):
            logger.warning(
                "cursor_held_back",
                reason="notes without comments",
                notes_without_comments=result.notes_without_comments,
                merged=result.inserted_notes + result.updated_notes,
            )
            return False

        current = self.read_cursor()
        if current is not None and (result.watermark == current or (not reset and result.watermark < current)):
            logger.debug("cursor_unchanged", cursor=current.isoformat())
            return False

        value = result.watermark.isoformat()
        try:
            with self._db.connection() as conn:
                if current is None:
                    conn.execute(insert(properties_table).values(key=CURSOR_KEY, value=value))
                else:
                    conn.execute(update(properties_table).where(properties_table.c.key == CURSOR_KEY).values(value=value))
        except SQLAlchemyError as e:
            raise StoreError(f"cursor update failed: {e}", stage=Stage.CURSOR) from e
        logger.info("cursor_advanced", cursor=value, previous=current.isoformat() if current else None)
        return True
