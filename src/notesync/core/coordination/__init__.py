"""Run coordination: run lock, failure marker, and process liveness."""

from notesync.core.coordination.liveness import ProcessIdentity, process_alive
from notesync.core.coordination.lock import LockHolder, RunLock
from notesync.core.coordination.marker import FailureMarker

__all__ = [
    "FailureMarker",
    "LockHolder",
    "ProcessIdentity",
    "RunLock",
    "process_alive",
]
