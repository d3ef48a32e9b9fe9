"""Shared contracts: enums, records, errors, and events.

Nothing in this package imports from core or engine, so every layer can
depend on it.
"""

from notesync.contracts.enums import (
    CommentEvent,
    ExecutorKind,
    ExitStatus,
    FeedFormat,
    NoteStatus,
    RunType,
    Stage,
    TicketState,
)
from notesync.contracts.errors import (
    AlreadyRunningError,
    AuthError,
    DiskExhaustedError,
    FetchError,
    GracefulShutdownError,
    IngestError,
    LockContentionError,
    LockStateError,
    PreviousFailurePresentError,
    RecordRejected,
    RejectionThresholdExceeded,
    StoreError,
    ThrottledError,
    TransientError,
)
from notesync.contracts.records import (
    BoundaryReport,
    Chunk,
    ChunkResult,
    Comment,
    FailureRecord,
    MergeResult,
    Note,
    NoteRecord,
    RejectedRecord,
    RunReport,
)

__all__ = [
    "AlreadyRunningError",
    "AuthError",
    "BoundaryReport",
    "Chunk",
    "ChunkResult",
    "Comment",
    "CommentEvent",
    "DiskExhaustedError",
    "ExecutorKind",
    "ExitStatus",
    "FailureRecord",
    "FeedFormat",
    "FetchError",
    "GracefulShutdownError",
    "IngestError",
    "LockContentionError",
    "LockStateError",
    "MergeResult",
    "Note",
    "NoteRecord",
    "NoteStatus",
    "PreviousFailurePresentError",
    "RecordRejected",
    "RejectedRecord",
    "RejectionThresholdExceeded",
    "RunReport",
    "RunType",
    "Stage",
    "StoreError",
    "ThrottledError",
    "TicketState",
    "TransientError",
]
