# src/notesync/core/coordination/lock.py
"""Run lock: one row per run type in the shared database.

The row records who holds the lock (host, pid, process start time, random
token), when the run started, and a heartbeat refreshed by a background
thread. Acquisition never blocks: a live holder means "already running"
(same run type) or "lock contention" (other run type). A dead holder's row
is reclaimed.

Mutual exclusion comes from the primary key on lock_name. Exclusion across
run types is checked after insert: if a live lock of another run type is
visible once our row exists, we withdraw, so two racing run types may both
back off but can never both proceed.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from notesync.contracts.enums import RunType
from notesync.contracts.errors import AlreadyRunningError, LockContentionError, LockStateError
from notesync.core.coordination.liveness import ProcessIdentity, process_alive
from notesync.core.logging import get_logger
from notesync.core.store.database import NotesDB
from notesync.core.store.schema import run_locks_table

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class LockHolder:
    """Snapshot of a lock row."""

    run_type: str
    holder: ProcessIdentity
    token: str
    started_at: datetime
    heartbeat_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> LockHolder:
        return cls(
            run_type=row.lock_name,
            holder=ProcessIdentity(host=row.holder_host, pid=row.holder_pid, started=row.holder_started),
            token=row.holder_token,
            started_at=row.started_at,
            heartbeat_at=row.heartbeat_at,
        )


class RunLock:
    """Exclusive, crash-reclaimable lock for one run type.

    Example:
        lock = RunLock(db, RunType.API)
        with lock:
            run_pipeline()
    """

    def __init__(
        self,
        db: NotesDB,
        run_type: RunType,
        *,
        heartbeat_interval_seconds: float = 30.0,
        stale_after_seconds: float = 300.0,
        identity: ProcessIdentity | None = None,
    ) -> None:
        self._db = db
        self._run_type = run_type
        self._heartbeat_interval = heartbeat_interval_seconds
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._identity = identity if identity is not None else ProcessIdentity.current()
        self._token: str | None = None
        self._stop_heartbeat = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None

    @property
    def identity(self) -> ProcessIdentity:
        return self._identity

    @property
    def held(self) -> bool:
        return self._token is not None

    def is_alive(self, holder: LockHolder, now: datetime | None = None) -> bool:
        """Liveness of a lock holder.

        Every holder needs a fresh heartbeat. Holders on this host must
        also still be running: same pid and same process start time.
        """
        now = now if now is not None else _utcnow()
        if now - holder.heartbeat_at >= self._stale_after:
            return False
        if holder.holder.is_local:
            return process_alive(holder.holder.pid, holder.holder.started)
        return True

    def acquire(self) -> None:
        """Take the lock or raise.

        Raises:
            AlreadyRunningError: A live holder has the lock for this run type
            LockContentionError: A live holder has the lock for another run type
            LockStateError: acquire() called twice on the same instance
        """
        if self._token is not None:
            raise LockStateError(f"{self._run_type} lock already held by this instance")

        for holder in self.holders(self._db):
            if self.is_alive(holder):
                self._raise_for_live_holder(holder)
            self._reclaim(holder)

        token = uuid.uuid4().hex
        now = _utcnow()
        try:
            with self._db.connection() as conn:
                conn.execute(
                    insert(run_locks_table).values(
                        lock_name=self._run_type.value,
                        holder_host=self._identity.host,
                        holder_pid=self._identity.pid,
                        holder_started=self._identity.started,
                        holder_token=token,
                        started_at=now,
                        heartbeat_at=now,
                    )
                )
        except IntegrityError:
            # Lost the insert race; the winner is live by definition
            current = self._current_holder(self._run_type.value)
            raise AlreadyRunningError(self._run_type, str(current.holder) if current else "unknown") from None

        self._token = token
        for holder in self.holders(self._db):
            if holder.run_type != self._run_type.value and self.is_alive(holder):
                self._delete_own_row()
                self._token = None
                self._raise_for_live_holder(holder)

        logger.info("lock_acquired", run_type=self._run_type.value, holder=str(self._identity))

    def release(self) -> None:
        """Stop the heartbeat and delete our row. Safe to call when not held."""
        self.stop_heartbeat()
        if self._token is None:
            return
        deleted = self._delete_own_row()
        self._token = None
        if deleted:
            logger.info("lock_released", run_type=self._run_type.value)
        else:
            logger.warning("lock_release_missing_row", run_type=self._run_type.value)

    def heartbeat(self) -> bool:
        """Refresh heartbeat_at. Returns False if our row is gone."""
        if self._token is None:
            return False
        with self._db.connection() as conn:
            result = conn.execute(
                update(run_locks_table)
                .where(run_locks_table.c.lock_name == self._run_type.value)
                .where(run_locks_table.c.holder_token == self._token)
                .values(heartbeat_at=_utcnow())
            )
        return result.rowcount == 1

    def start_heartbeat(self) -> None:
        if self._heartbeat_thread is not None:
            return
        self._stop_heartbeat.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            name=f"lock-heartbeat-{self._run_type.value}",
            daemon=True,
        )
        self._heartbeat_thread.start()

    def stop_heartbeat(self) -> None:
        if self._heartbeat_thread is None:
            return
        self._stop_heartbeat.set()
        self._heartbeat_thread.join()
        self._heartbeat_thread = None

    def _heartbeat_loop(self) -> None:
        while not self._stop_heartbeat.wait(self._heartbeat_interval):
            try:
                refreshed = self.heartbeat()
            except SQLAlchemyError as e:
                # Store busy; retried on the next beat
                logger.warning("lock_heartbeat_failed", run_type=self._run_type.value, error=str(e))
                continue
            if not refreshed:
                logger.error("lock_lost", run_type=self._run_type.value, holder=str(self._identity))
                return

    def _raise_for_live_holder(self, holder: LockHolder) -> None:
        if holder.run_type == self._run_type.value:
            raise AlreadyRunningError(self._run_type, str(holder.holder))
        raise LockContentionError(self._run_type, holder.run_type, str(holder.holder))

    def _reclaim(self, holder: LockHolder) -> None:
        # Conditional on the dead holder's token so a fresh lock taken by a
        # concurrent reclaimer is never removed
        with self._db.connection() as conn:
            result = conn.execute(
                delete(run_locks_table)
                .where(run_locks_table.c.lock_name == holder.run_type)
                .where(run_locks_table.c.holder_token == holder.token)
            )
        if result.rowcount:
            logger.warning(
                "lock_reclaimed",
                run_type=holder.run_type,
                dead_holder=str(holder.holder),
                started_at=holder.started_at.isoformat(),
                heartbeat_at=holder.heartbeat_at.isoformat(),
            )

    def _delete_own_row(self) -> bool:
        with self._db.connection() as conn:
            result = conn.execute(
                delete(run_locks_table)
                .where(run_locks_table.c.lock_name == self._run_type.value)
                .where(run_locks_table.c.holder_token == self._token)
            )
        return result.rowcount == 1

    def _current_holder(self, lock_name: str) -> LockHolder | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(select(run_locks_table).where(run_locks_table.c.lock_name == lock_name)).one_or_none()
        return LockHolder.from_row(row) if row is not None else None

    @staticmethod
    def holders(db: NotesDB) -> list[LockHolder]:
        """All lock rows, live or not."""
        with db.engine.connect() as conn:
            rows = conn.execute(select(run_locks_table).order_by(run_locks_table.c.lock_name)).all()
        return [LockHolder.from_row(row) for row in rows]

    def __enter__(self) -> RunLock:
        self.acquire()
        self.start_heartbeat()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.release()
