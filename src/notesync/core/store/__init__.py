"""Durable store: table definitions and connection management."""

from notesync.core.store.database import NotesDB, SchemaCompatibilityError
from notesync.core.store.schema import metadata, staging_metadata

__all__ = [
    "NotesDB",
    "SchemaCompatibilityError",
    "metadata",
    "staging_metadata",
]
