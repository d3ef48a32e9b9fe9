"""Observability events for ingestion runs.

Emitted by the ExecutionCoordinator and consumed by CLI formatters for
human-readable or structured output.
"""

from dataclasses import dataclass
from enum import StrEnum

from notesync.contracts.enums import RunType


class RunPhase(StrEnum):
    """Run lifecycle phases for observability events."""

    LOCK = "lock"
    FETCH = "fetch"
    PARTITION = "partition"
    TRANSFORM = "transform"
    MERGE = "merge"
    BOUNDARIES = "boundaries"


class RunCompletionStatus(StrEnum):
    """Final status for RunSummary events."""

    COMPLETED = "completed"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PhaseStarted:
    """Emitted when a run phase begins.

    Attributes:
        phase: The lifecycle phase starting
        target: Optional target (URL, file path, chunk count)
    """

    phase: RunPhase
    target: str | None = None


@dataclass(frozen=True, slots=True)
class PhaseCompleted:
    """Emitted when a run phase completes successfully."""

    phase: RunPhase
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class PhaseError:
    """Emitted when a run phase fails.

    Keeps the exception object so formatters can show its type and chain.
    """

    phase: RunPhase
    error: BaseException
    target: str | None = None

    @property
    def error_message(self) -> str:
        return str(self.error)


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Emitted once when a run finishes, whatever the outcome."""

    run_type: RunType
    status: RunCompletionStatus
    notes_staged: int
    rejected: int
    boundaries_failed: int
    duration_seconds: float
    exit_code: int
