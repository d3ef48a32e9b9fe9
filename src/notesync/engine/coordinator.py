# src/notesync/engine/coordinator.py
"""ExecutionCoordinator: runs one ingestion pass end to end.

Order of business for every run:

1. A failure marker blocks the run outright (optionally auto-cleared when
   it records a network failure and the API answers again).
2. The run lock for the run type is taken without blocking.
3. SIGINT/SIGTERM handlers are installed; a signal lets in-flight chunks
   finish and then fails the run.
4. Staging is recreated, the pipeline runs, staging is dropped.

Any unrecovered error writes the failure marker, notifies once, releases
the lock and maps to the error category's exit status. Benign outcomes
(already running, nothing to do) never touch the marker.
"""

from __future__ import annotations

import signal
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import OperationalError

from notesync.contracts.enums import ExitStatus, RunType, Stage
from notesync.contracts.errors import (
    AlreadyRunningError,
    GracefulShutdownError,
    IngestError,
    LockContentionError,
    PreviousFailurePresentError,
)
from notesync.contracts.events import PhaseCompleted, PhaseError, PhaseStarted, RunCompletionStatus, RunPhase, RunSummary
from notesync.contracts.records import FailureRecord, MergeResult, RunReport
from notesync.core.config import NotesyncSettings
from notesync.core.coordination import FailureMarker, ProcessIdentity, RunLock
from notesync.core.events import EventBusProtocol, NullEventBus
from notesync.core.logging import get_logger, run_log_context
from notesync.core.notify import NotificationSink, create_notifier
from notesync.core.rate_limit.gate import ResourceGate
from notesync.core.store.database import NotesDB
from notesync.engine.boundaries import BoundaryFetcher
from notesync.engine.feeds import BulkSnapshotFeed, FeedResult, IncrementalDeltaFeed
from notesync.engine.partitioner import Partitioner
from notesync.engine.reconciler import CountryResolver, NullCountryResolver, Reconciler, SqlFunctionCountryResolver
from notesync.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from notesync.engine.staging import StagingArea
from notesync.engine.worker import WorkerPool

logger = get_logger(__name__)

_PHASE_STAGES: dict[RunPhase, Stage] = {
    RunPhase.LOCK: Stage.LOCK,
    RunPhase.FETCH: Stage.FETCH,
    RunPhase.PARTITION: Stage.PARTITION,
    RunPhase.TRANSFORM: Stage.TRANSFORM,
    RunPhase.MERGE: Stage.MERGE,
    RunPhase.BOUNDARIES: Stage.BOUNDARIES,
}


def _is_transient_store_error(error: BaseException) -> bool:
    return isinstance(error.__cause__, OperationalError)


class _NothingToDo(Exception):
    """Internal: the delta was empty."""


class ExecutionCoordinator:
    """Crash-safe, single-instance driver for api and planet runs.

    Example:
        coordinator = ExecutionCoordinator(settings, event_bus=bus)
        report = coordinator.run(RunType.API)
        raise SystemExit(int(report.exit_status))
    """

    def __init__(
        self,
        settings: NotesyncSettings,
        *,
        db: NotesDB | None = None,
        event_bus: EventBusProtocol | None = None,
        notifier: NotificationSink | None = None,
        delta_feed: IncrementalDeltaFeed | None = None,
        snapshot_feed: BulkSnapshotFeed | None = None,
        boundary_fetcher: BoundaryFetcher | None = None,
        country_resolver: CountryResolver | None = None,
        identity: ProcessIdentity | None = None,
        cpu_count: int | None = None,
        retry_sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Wire the coordinator.

        Every collaborator can be injected; those left out are built from
        settings on first use.

        Args:
            settings: Full configuration
            db: Shared store (created from settings.database when omitted)
            event_bus: Receives phase events (NullEventBus when omitted)
            notifier: Failure notification sink
            delta_feed: Incremental feed
            snapshot_feed: Bulk feed
            boundary_fetcher: Boundary fetcher for planet runs
            country_resolver: Country assignment for new notes
            identity: Lock and gate owner identity (testing)
            cpu_count: Override for worker sizing (testing)
            retry_sleep: Replacement for time.sleep in merge retries (testing)
        """
        self._settings = settings
        self._owns_db = db is None
        self._db = db if db is not None else NotesDB.from_settings(settings.database)
        self._events: EventBusProtocol = event_bus if event_bus is not None else NullEventBus()
        self._notifier = notifier if notifier is not None else create_notifier(settings.notification)
        self._retry_config = RetryConfig.from_settings(settings.retry)
        self._retry_sleep = retry_sleep
        self._delta_feed = delta_feed
        self._snapshot_feed = snapshot_feed
        self._boundary_fetcher = boundary_fetcher
        self._identity = identity if identity is not None else ProcessIdentity.current()
        self._cpu_count = cpu_count
        self._current_stage = Stage.STARTUP
        self._marker = FailureMarker(settings.coordination.marker_path)
        self._staging = StagingArea(self._db)

        if country_resolver is None:
            function_name = settings.database.country_function
            country_resolver = SqlFunctionCountryResolver(function_name) if function_name else NullCountryResolver()
        self._reconciler = Reconciler(
            self._db,
            country_resolver=country_resolver,
            gap_check_min_notes=settings.reconcile.gap_check_min_notes,
            gap_ratio_threshold=settings.reconcile.gap_ratio_threshold,
        )

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def marker(self) -> FailureMarker:
        return self._marker

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    def _retry_manager(self) -> RetryManager:
        return RetryManager(self._retry_config, sleep=self._retry_sleep)

    def _get_delta_feed(self) -> IncrementalDeltaFeed:
        if self._delta_feed is None:
            self._delta_feed = IncrementalDeltaFeed(self._settings.feeds, self._retry_manager())
        return self._delta_feed

    def _get_snapshot_feed(self) -> BulkSnapshotFeed:
        if self._snapshot_feed is None:
            self._snapshot_feed = BulkSnapshotFeed(self._settings.feeds, self._retry_manager())
        return self._snapshot_feed

    def _get_boundary_fetcher(self) -> BoundaryFetcher:
        if self._boundary_fetcher is None:
            boundaries = self._settings.boundaries
            gate = ResourceGate(
                self._db,
                boundaries.gate_name,
                boundaries.capacity,
                poll_interval_seconds=boundaries.poll_interval_seconds,
                heartbeat_interval_seconds=boundaries.ticket_heartbeat_seconds,
                stale_after_seconds=boundaries.ticket_stale_after_seconds,
                identity=self._identity,
            )
            self._boundary_fetcher = BoundaryFetcher(boundaries, gate)
        return self._boundary_fetcher

    def close(self) -> None:
        for closable in (self._delta_feed, self._snapshot_feed, self._boundary_fetcher):
            if closable is not None:
                closable.close()
        if self._owns_db:
            self._db.close()

    # ------------------------------------------------------------------
    # Signals and events
    # ------------------------------------------------------------------

    @contextmanager
    def _shutdown_handler_context(self) -> Iterator[threading.Event]:
        """Install SIGINT/SIGTERM handlers that set a shutdown event.

        On first signal: sets the event and restores the default SIGINT
        handler, so a second Ctrl-C force-kills via KeyboardInterrupt.

        Off the main thread signal registration is skipped (signal.signal()
        raises ValueError there); the event still works.
        """
        shutdown_event = threading.Event()

        if threading.current_thread() is not threading.main_thread():
            yield shutdown_event
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, frame: Any) -> None:
            logger.warning("shutdown_requested", signal=signal.Signals(signum).name)
            shutdown_event.set()
            signal.signal(signal.SIGINT, signal.default_int_handler)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield shutdown_event
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    @contextmanager
    def _phase(self, phase: RunPhase, target: str | None = None) -> Iterator[None]:
        self._current_stage = _PHASE_STAGES[phase]
        self._events.emit(PhaseStarted(phase=phase, target=target))
        started = time.perf_counter()
        try:
            yield
        except BaseException as e:
            self._events.emit(PhaseError(phase=phase, error=e, target=target))
            raise
        self._events.emit(PhaseCompleted(phase=phase, duration_seconds=time.perf_counter() - started))

    @staticmethod
    def _check_shutdown(shutdown_event: threading.Event, stage: Stage) -> None:
        if shutdown_event.is_set():
            raise GracefulShutdownError("shutdown requested", stage=stage)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, run_type: RunType, *, shutdown_event: threading.Event | None = None) -> RunReport:
        """Execute one run and report its outcome.

        Never raises for pipeline failures; the exit status in the report
        carries the category. KeyboardInterrupt on a second Ctrl-C does
        propagate, after the lock is released.

        Args:
            run_type: API (incremental) or PLANET (bulk)
            shutdown_event: Caller-owned event (testing); when given, no
                signal handlers are installed
        """
        with run_log_context(run_type=run_type.value, run_id=uuid.uuid4().hex[:12], holder=str(self._identity)):
            return self._run(run_type, shutdown_event)

    def _run(self, run_type: RunType, shutdown_event: threading.Event | None) -> RunReport:
        started = time.perf_counter()
        report = RunReport(run_type=run_type)
        self._current_stage = Stage.STARTUP

        try:
            self._check_marker()
        except PreviousFailurePresentError as e:
            logger.error("run_blocked_by_failure_marker", marker=e.marker_path, error_class=e.error_class)
            return self._finish(report, started, e.exit_status, error=str(e))

        lock = RunLock(
            self._db,
            run_type,
            heartbeat_interval_seconds=self._settings.coordination.heartbeat_interval_seconds,
            stale_after_seconds=self._settings.coordination.stale_after_seconds,
            identity=self._identity,
        )
        try:
            with self._phase(RunPhase.LOCK):
                lock.acquire()
        except AlreadyRunningError as e:
            logger.info("run_skipped_already_running", running_holder=e.holder)
            return self._finish(report, started, ExitStatus.NO_OP, error=str(e))
        except LockContentionError as e:
            logger.warning("run_skipped_lock_contention", blocking_run_type=e.blocking_run_type, blocking_holder=e.holder)
            return self._finish(report, started, ExitStatus.LOCK_CONTENTION, error=str(e))

        lock.start_heartbeat()
        try:
            status, error = self._execute(run_type, report, shutdown_event)
        finally:
            lock.release()
        return self._finish(report, started, status, error=error)

    def _execute(
        self, run_type: RunType, report: RunReport, shutdown_event: threading.Event | None
    ) -> tuple[ExitStatus, str | None]:
        """Run the pipeline under the lock. Returns exit status and error text."""
        try:
            shutdown_ctx = nullcontext(shutdown_event) if shutdown_event is not None else self._shutdown_handler_context()
            with shutdown_ctx as active_event:
                self._staging.recreate()
                try:
                    if run_type is RunType.API:
                        self._run_api(report, active_event)
                    else:
                        self._run_planet(report, active_event)
                finally:
                    self._staging.teardown()
        except _NothingToDo:
            logger.info("run_no_op", reason="delta returned no notes")
            return ExitStatus.NO_OP, None
        except Exception as e:
            return self._fail(report, run_type, e), str(e)

        return (ExitStatus.SUCCESS_WITH_WARNINGS if report.warnings else ExitStatus.SUCCESS), None

    # ------------------------------------------------------------------
    # Marker handling
    # ------------------------------------------------------------------

    def _check_marker(self) -> None:
        record = self._marker.read()
        if record is None:
            return
        if (
            self._settings.coordination.auto_clear_network_failures
            and record.exit_status == ExitStatus.FETCH_FAILURE
            and self._get_delta_feed().is_reachable()
        ):
            logger.warning(
                "failure_marker_auto_cleared",
                path=str(self._marker.path),
                error_class=record.error_class,
                failed_at=record.created_at.isoformat(),
            )
            self._marker.clear()
            return
        raise PreviousFailurePresentError(str(self._marker.path), record.error_class)

    def _fail(self, report: RunReport, run_type: RunType, error: Exception) -> ExitStatus:
        """Write the marker and notify. Returns the exit status for the error."""
        if isinstance(error, IngestError):
            status = error.exit_status
            stage = error.stage or self._current_stage
            context: dict[str, Any] = dict(error.context)
        else:
            status = ExitStatus.INTERNAL_ERROR
            stage = self._current_stage
            context = {}
        context["fell_back_to_planet"] = report.fell_back_to_planet

        record = FailureRecord(
            created_at=datetime.now(UTC),
            run_type=run_type.value,
            stage=stage.value,
            error_class=type(error).__name__,
            message=str(error),
            holder=str(self._identity),
            exit_status=int(status),
            context=context,
        )
        logger.error(
            "run_failed",
            run_type=run_type.value,
            stage=stage.value,
            error_class=record.error_class,
            error=record.message,
            exc_info=not isinstance(error, IngestError),
        )
        try:
            self._marker.write(record)
        except OSError as e:
            # Next run will not be blocked; the notification still goes out
            logger.critical(
                "failure_marker_write_failed",
                path=str(self._marker.path),
                error=str(e),
                error_type=type(e).__name__,
            )
            record.context["marker_write_failed"] = str(e)
        try:
            self._notifier.notify(record)
        except Exception as e:
            logger.warning("notifier_raised", error=str(e), error_type=type(e).__name__)
        return status

    def _finish(self, report: RunReport, started: float, status: ExitStatus, *, error: str | None = None) -> RunReport:
        report.exit_status = status
        report.error = error
        report.duration_seconds = time.perf_counter() - started

        if status is ExitStatus.SUCCESS:
            completion = RunCompletionStatus.COMPLETED
        elif status is ExitStatus.SUCCESS_WITH_WARNINGS:
            completion = RunCompletionStatus.PARTIAL
        elif status in (ExitStatus.NO_OP, ExitStatus.LOCK_CONTENTION):
            completion = RunCompletionStatus.SKIPPED
        else:
            completion = RunCompletionStatus.FAILED

        self._events.emit(
            RunSummary(
                run_type=report.run_type,
                status=completion,
                notes_staged=report.notes_staged,
                rejected=len(report.rejected),
                boundaries_failed=len(report.boundaries.failed) if report.boundaries else 0,
                duration_seconds=report.duration_seconds,
                exit_code=int(status),
            )
        )
        logger.info(
            "run_finished",
            run_type=report.run_type.value,
            exit_status=status.name,
            duration_seconds=round(report.duration_seconds, 3),
            warnings=len(report.warnings),
        )
        return report

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _run_api(self, report: RunReport, shutdown_event: threading.Event) -> None:
        cursor = self._reconciler.read_cursor()
        if cursor is None:
            logger.warning("no_cursor_falling_back_to_planet")
            report.fell_back_to_planet = True
            self._run_planet(report, shutdown_event)
            return

        feed = self._get_delta_feed()
        with self._phase(RunPhase.FETCH, target=feed.search_url):
            result = feed.fetch(cursor)
        self._check_shutdown(shutdown_event, Stage.FETCH)

        if result.high_water:
            logger.warning("delta_high_water_falling_back_to_planet", notes=result.note_count, limit=self._settings.feeds.max_notes)
            report.fell_back_to_planet = True
            self._run_planet(report, shutdown_event)
            return
        if result.note_count == 0:
            raise _NothingToDo()

        self._transform(report, result, shutdown_event)
        with self._phase(RunPhase.MERGE):
            merge = self._with_store_retry(self._reconciler.merge)
            report.merge = merge
            self._current_stage = Stage.CURSOR
            report.cursor_advanced = self._reconciler.advance_cursor(merge)
        if self._reconciler.gap_detected(merge):
            report.warnings.append(
                f"cursor held back: {merge.notes_without_comments} of "
                f"{merge.inserted_notes + merge.updated_notes} merged notes have no comments"
            )

    def _run_planet(self, report: RunReport, shutdown_event: threading.Event) -> None:
        feed = self._get_snapshot_feed()
        with self._phase(RunPhase.FETCH, target=self._settings.feeds.planet_url):
            result = feed.fetch()
        self._check_shutdown(shutdown_event, Stage.FETCH)

        self._transform(report, result, shutdown_event)
        with self._phase(RunPhase.MERGE):
            merge = self._with_store_retry(self._reconciler.replace_all)
            report.merge = merge
            self._current_stage = Stage.CURSOR
            report.cursor_advanced = self._reconciler.advance_cursor(merge, reset=True)

        boundaries = self._settings.boundaries
        if boundaries.enabled:
            self._check_shutdown(shutdown_event, Stage.BOUNDARIES)
            ids = boundaries.boundary_ids()
            with self._phase(RunPhase.BOUNDARIES, target=f"{len(ids)} relations"):
                report.boundaries = self._get_boundary_fetcher().fetch_all(ids, shutdown_event=shutdown_event)
            if report.boundaries.has_gaps:
                failed = sorted(report.boundaries.failed)
                report.warnings.append(f"{len(failed)} boundaries skipped: {failed}")

    def _transform(self, report: RunReport, feed: FeedResult, shutdown_event: threading.Event) -> None:
        concurrency = self._settings.concurrency
        workers = concurrency.resolve_workers(self._cpu_count)

        with self._phase(RunPhase.PARTITION, target=str(feed.path)):
            partitioner = Partitioner(concurrency.chunk_factor, min_notes_for_parallel=concurrency.min_notes_for_parallel)
            chunks = partitioner.partition(feed.path, feed.feed_format, workers)
        self._check_shutdown(shutdown_event, Stage.PARTITION)

        pool = WorkerPool(
            self._db,
            workers=workers,
            executor_kind=concurrency.executor,
            validate=self._settings.validation.enabled,
            flush_batch_size=concurrency.flush_batch_size,
            max_rejected_chunk_ratio=self._settings.validation.max_rejected_chunk_ratio,
        )
        with self._phase(RunPhase.TRANSFORM, target=f"{len(chunks)} chunks"):
            report.chunks = pool.run(chunks, shutdown_event=shutdown_event)
        self._check_shutdown(shutdown_event, Stage.TRANSFORM)

        if report.rejected:
            report.warnings.append(f"{len(report.rejected)} records rejected")
        failed_chunks = [chunk.partition_id for chunk in report.chunks if chunk.failed is not None]
        if failed_chunks:
            report.warnings.append(f"chunks discarded after read errors: {failed_chunks}")

    def _with_store_retry(self, operation: Callable[[], MergeResult]) -> MergeResult:
        """Retry a merge when the store reported a transient (busy/locked) error."""

        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("merge_retry", attempt=attempt, error=str(error))

        try:
            result: MergeResult = self._retry_manager().execute_with_retry(
                operation,
                is_retryable=_is_transient_store_error,
                on_retry=on_retry,
            )
        except MaxRetriesExceeded as e:
            if isinstance(e.last_error, Exception):
                raise e.last_error from e
            raise
        return result
