"""Exception taxonomy for ingestion runs.

Every exception that can reach the ExecutionCoordinator derives from
IngestError and carries the exit status its category maps to, plus the
stage in which it was raised. Transient failures (TransientError and
subclasses) are consumed by RetryManager inside the owning component and
only surface once retries are exhausted.
"""

from typing import Any

from notesync.contracts.enums import ExitStatus, Stage


class IngestError(Exception):
    """Base class for all ingestion failures.

    Attributes:
        exit_status: Process exit code for this failure category
        stage: Pipeline stage in which the failure occurred
        context: Free-form diagnostic context for the failure marker
    """

    exit_status: ExitStatus = ExitStatus.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        stage: Stage | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.context = context if context is not None else {}


# =============================================================================
# Transient (retryable) failures
# =============================================================================


class TransientError(IngestError):
    """Momentary failure that is expected to clear on retry.

    Network timeouts, connection resets, 5xx answers, and database busy
    errors all map here.
    """

    exit_status = ExitStatus.FETCH_FAILURE
    retryable = True


class ThrottledError(TransientError):
    """Upstream service refused the request because of rate limiting.

    Attributes:
        status_code: HTTP status that signalled throttling (429 or 504)
        retry_after: Seconds the service asked us to wait, when it said so
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        retry_after: float | None = None,
        stage: Stage | None = None,
    ) -> None:
        super().__init__(message, stage=stage, context={"status_code": status_code})
        self.status_code = status_code
        self.retry_after = retry_after


# =============================================================================
# Validation failures
# =============================================================================


class RecordRejected(IngestError):
    """One record failed structural or value-domain validation.

    Never escalates on its own: the worker logs it, counts it, and moves on.

    Attributes:
        note_id: Note id when it could be read, else None
        offset: Absolute byte offset of the record in the feed file
        reason: Human-readable description of the violation
    """

    exit_status = ExitStatus.VALIDATION_FAILURE

    def __init__(self, reason: str, *, note_id: int | None = None, offset: int | None = None) -> None:
        super().__init__(f"record rejected (note_id={note_id}, offset={offset}): {reason}", stage=Stage.TRANSFORM)
        self.note_id = note_id
        self.offset = offset
        self.reason = reason


class RejectionThresholdExceeded(IngestError):
    """Too many chunks contained rejected records; input is systemically bad."""

    exit_status = ExitStatus.VALIDATION_FAILURE

    def __init__(self, rejected_chunks: int, total_chunks: int, threshold: float) -> None:
        super().__init__(
            f"{rejected_chunks} of {total_chunks} chunks had rejected records (threshold {threshold:.0%})",
            stage=Stage.TRANSFORM,
            context={"rejected_chunks": rejected_chunks, "total_chunks": total_chunks, "threshold": threshold},
        )
        self.rejected_chunks = rejected_chunks
        self.total_chunks = total_chunks
        self.threshold = threshold


# =============================================================================
# Fatal failures
# =============================================================================


class FetchError(IngestError):
    """A feed or boundary could not be retrieved or failed its integrity check."""

    exit_status = ExitStatus.FETCH_FAILURE


class AuthError(FetchError):
    """Upstream rejected our credentials. Never retried."""


class DiskExhaustedError(IngestError):
    """Not enough free disk space to continue. Never retried."""

    exit_status = ExitStatus.STORE_FAILURE


class StoreError(IngestError):
    """The durable store rejected a merge, load, or cursor update."""

    exit_status = ExitStatus.STORE_FAILURE


class LockStateError(IngestError):
    """The lock table is in a state the coordinator cannot interpret."""

    exit_status = ExitStatus.INTERNAL_ERROR


class GracefulShutdownError(IngestError):
    """Run stopped early after SIGINT/SIGTERM.

    The worker pool finishes in-flight chunks before this is raised, so the
    store is never left with a torn merge.
    """

    exit_status = ExitStatus.INTERNAL_ERROR


# =============================================================================
# Coordinator outcomes
# =============================================================================


class AlreadyRunningError(IngestError):
    """A live process already holds the lock for this run type.

    Benign: expected under frequent scheduling.
    """

    exit_status = ExitStatus.NO_OP

    def __init__(self, run_type: str, holder: str) -> None:
        super().__init__(f"{run_type} run already in progress (holder {holder})", stage=Stage.LOCK)
        self.run_type = run_type
        self.holder = holder


class LockContentionError(IngestError):
    """A live process holds the lock of a conflicting run type."""

    exit_status = ExitStatus.LOCK_CONTENTION

    def __init__(self, run_type: str, blocking_run_type: str, holder: str) -> None:
        super().__init__(
            f"cannot start {run_type} run while {blocking_run_type} run is active (holder {holder})",
            stage=Stage.LOCK,
        )
        self.run_type = run_type
        self.blocking_run_type = blocking_run_type
        self.holder = holder


class PreviousFailurePresentError(IngestError):
    """A failure marker from an earlier run blocks this one."""

    exit_status = ExitStatus.PREVIOUS_FAILURE_PRESENT

    def __init__(self, marker_path: str, error_class: str) -> None:
        super().__init__(
            f"previous run failed with {error_class}; clear {marker_path} once resolved",
            stage=Stage.STARTUP,
        )
        self.marker_path = marker_path
        self.error_class = error_class
