"""Data records passed between pipeline components.

Parsed records (Note, Comment, NoteRecord) flow from the scanner to the
workers; Chunk and ChunkResult describe units of parallel work; the report
types summarize a run for the coordinator, the CLI, and the failure marker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from notesync.contracts.enums import CommentEvent, ExitStatus, FeedFormat, NoteStatus, RunType


@dataclass(frozen=True, slots=True)
class Note:
    """A georeferenced report.

    status, closed_at, and country_id are the only fields that change after
    the note is first stored.
    """

    note_id: int
    latitude: float
    longitude: float
    created_at: datetime
    status: NoteStatus
    closed_at: datetime | None = None
    country_id: int | None = None


@dataclass(frozen=True, slots=True)
class Comment:
    """One event in a note thread, together with its text body.

    ordinal is the comment's position inside the note element it was read
    from. The durable sequence_action is assigned at merge time.
    """

    note_id: int
    ordinal: int
    event: CommentEvent
    created_at: datetime
    user_id: int | None = None
    username: str | None = None
    body: str | None = None


@dataclass(frozen=True, slots=True)
class NoteRecord:
    """One `<note>` element as read from a feed.

    Attributes:
        note: Note fields
        comments: Comments in document order
        offset: Absolute byte offset of the element start in the feed file
    """

    note: Note
    comments: tuple[Comment, ...]
    offset: int

    @property
    def source_timestamp(self) -> datetime:
        """Latest event time carried by this element."""
        stamps = [self.note.created_at]
        if self.note.closed_at is not None:
            stamps.append(self.note.closed_at)
        stamps.extend(c.created_at for c in self.comments)
        return max(stamps)


@dataclass(frozen=True, slots=True)
class Chunk:
    """Contiguous byte range of a feed file holding whole note elements."""

    partition_id: int
    path: Path
    start: int
    end: int
    feed_format: FeedFormat

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class RejectedRecord:
    """A record excluded by validation, with enough context to locate it."""

    partition_id: int
    offset: int | None
    note_id: int | None
    reason: str


@dataclass(frozen=True, slots=True)
class ChunkResult:
    """Outcome of transforming one chunk.

    Attributes:
        partition_id: Chunk that was processed
        notes: Note rows appended to staging
        comments: Comment rows appended to staging
        rejected: Records excluded by validation
        failed: Set when the chunk could not be parsed at all
    """

    partition_id: int
    notes: int
    comments: int
    rejected: tuple[RejectedRecord, ...] = ()
    failed: str | None = None

    @property
    def has_rejections(self) -> bool:
        return self.failed is not None or len(self.rejected) > 0


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Counts from one Reconciler pass.

    watermark is the highest source timestamp among the merged records,
    None when nothing was staged.
    """

    inserted_notes: int
    updated_notes: int
    inserted_comments: int
    notes_without_comments: int
    watermark: datetime | None


@dataclass
class BoundaryReport:
    """Which boundaries resolved and which were skipped after exhausting retries."""

    resolved: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def has_gaps(self) -> bool:
        return len(self.failed) > 0


@dataclass
class RunReport:
    """End-of-run summary returned by ExecutionCoordinator.run()."""

    run_type: RunType
    exit_status: ExitStatus = ExitStatus.SUCCESS
    fell_back_to_planet: bool = False
    chunks: list[ChunkResult] = field(default_factory=list)
    merge: MergeResult | None = None
    cursor_advanced: bool = False
    boundaries: BoundaryReport | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def rejected(self) -> list[RejectedRecord]:
        return [r for chunk in self.chunks for r in chunk.rejected]

    @property
    def notes_staged(self) -> int:
        return sum(chunk.notes for chunk in self.chunks)


@dataclass(frozen=True, slots=True)
class FailureRecord:
    """Contents of a failure marker.

    Written once per incident; blocks every later run until removed.
    """

    created_at: datetime
    run_type: str
    stage: str
    error_class: str
    message: str
    holder: str
    exit_status: int
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "run_type": self.run_type,
            "stage": self.stage,
            "error_class": self.error_class,
            "message": self.message,
            "holder": self.holder,
            "exit_status": self.exit_status,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureRecord:
        return cls(
            created_at=datetime.fromisoformat(data["created_at"]),
            run_type=data["run_type"],
            stage=data["stage"],
            error_class=data["error_class"],
            message=data["message"],
            holder=data["holder"],
            exit_status=int(data["exit_status"]),
            context=dict(data["context"]),
        )
