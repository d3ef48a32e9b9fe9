# src/notesync/core/store/schema.py
"""SQLAlchemy table definitions for the durable store and staging area.

Uses SQLAlchemy Core (not ORM) for explicit control over queries and
compatibility with SQLite and PostgreSQL. Staging tables live in their own
MetaData so they can be dropped and recreated per run without touching the
durable tables.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on round-trip; values are normalized to UTC on the
    way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime {value!r} cannot be stored; attach a timezone")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# Shared metadata for durable and coordination tables
metadata = MetaData()

# Staging tables only; recreated by StagingArea each run
staging_metadata = MetaData()

# === Durable note data ===

notes_table = Table(
    "notes",
    metadata,
    Column("note_id", BigInteger, primary_key=True, autoincrement=False),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("status", String(16), nullable=False),
    Column("closed_at", UTCDateTime),
    Column("country_id", Integer),
)

users_table = Table(
    "users",
    metadata,
    Column("user_id", BigInteger, primary_key=True, autoincrement=False),
    Column("username", String(256), nullable=False),
)

note_comments_table = Table(
    "note_comments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", BigInteger, ForeignKey("notes.note_id"), nullable=False),
    Column("sequence_action", Integer, nullable=False),
    Column("event", String(16), nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("user_id", BigInteger),
    UniqueConstraint("note_id", "sequence_action", name="uq_note_comments_sequence"),
)

note_comments_text_table = Table(
    "note_comments_text",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", BigInteger, nullable=False),
    Column("sequence_action", Integer, nullable=False),
    Column("body", Text, nullable=False),
    ForeignKeyConstraint(
        ["note_id", "sequence_action"],
        ["note_comments.note_id", "note_comments.sequence_action"],
    ),
    UniqueConstraint("note_id", "sequence_action", name="uq_note_comments_text_sequence"),
)

properties_table = Table(
    "properties",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),
)

# === Coordination ===

run_locks_table = Table(
    "run_locks",
    metadata,
    Column("lock_name", String(32), primary_key=True),
    Column("holder_host", String(255), nullable=False),
    Column("holder_pid", Integer, nullable=False),
    # psutil create_time() of the holder; tells a recycled pid apart
    Column("holder_started", Float),
    Column("holder_token", String(64), nullable=False),
    Column("started_at", UTCDateTime, nullable=False),
    Column("heartbeat_at", UTCDateTime, nullable=False),
)

gates_table = Table(
    "gates",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("capacity", Integer, nullable=False),
    # Bumped by every poll so pollers serialize on the row's write lock
    Column("version", BigInteger, nullable=False, default=0),
)

gate_tickets_table = Table(
    "gate_tickets",
    metadata,
    Column("ticket_id", Integer, primary_key=True, autoincrement=True),
    Column("gate_name", String(64), ForeignKey("gates.name"), nullable=False),
    Column("owner_host", String(255), nullable=False),
    Column("owner_pid", Integer, nullable=False),
    Column("owner_started", Float),
    Column("state", String(16), nullable=False),
    Column("enqueued_at", UTCDateTime, nullable=False),
    Column("acquired_at", UTCDateTime),
    # Refreshed by every poll while waiting and by the owner's heartbeat while active
    Column("heartbeat_at", UTCDateTime, nullable=False),
)

Index("ix_gate_tickets_queue", gate_tickets_table.c.gate_name, gate_tickets_table.c.state, gate_tickets_table.c.ticket_id)

# === Staging ===

staging_notes_table = Table(
    "staging_notes",
    staging_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("partition_id", Integer, nullable=False),
    Column("source_offset", BigInteger, nullable=False),
    Column("note_id", BigInteger, nullable=False),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("status", String(16), nullable=False),
    Column("closed_at", UTCDateTime),
    Column("source_timestamp", UTCDateTime, nullable=False),
)

staging_comments_table = Table(
    "staging_comments",
    staging_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("partition_id", Integer, nullable=False),
    Column("source_offset", BigInteger, nullable=False),
    Column("ordinal", Integer, nullable=False),
    Column("note_id", BigInteger, nullable=False),
    Column("event", String(16), nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("user_id", BigInteger),
    Column("username", String(256)),
    Column("body", Text),
)

Index("ix_staging_notes_note_id", staging_notes_table.c.note_id)
Index("ix_staging_comments_note_id", staging_comments_table.c.note_id)
