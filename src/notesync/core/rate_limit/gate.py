# src/notesync/core/rate_limit/gate.py
"""ResourceGate: FIFO counting semaphore shared across processes.

External services such as the Overpass API allow a small fixed number of
simultaneous requests per client address, not per process. The gate keeps
its state in the shared database so every process (and every thread)
draws from the same budget.

Protocol, per gate:

- acquire() inserts a ticket in state "waiting". Ticket ids increase
  monotonically, so ticket order is enqueue order.
- Each poll runs in one transaction whose first statement bumps the gate
  row's version. That write serializes pollers on SQLite and PostgreSQL.
  Inside it the caller refreshes its own ticket's heartbeat, tickets of
  dead owners are deleted, then the caller is promoted to "active" only if
  its ticket is the lowest waiting ticket and fewer than `capacity`
  tickets are active.
- While a slot is held a background thread keeps its heartbeat fresh.
- release() deletes the ticket.

An owner is dead when its heartbeat is older than `stale_after_seconds`,
or, on this host, as soon as its process (pid and start time) is gone.
Only the head of the queue can be promoted, so a waiter can never be
overtaken by a later one.
"""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, Row, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from notesync.contracts.enums import TicketState
from notesync.contracts.errors import GracefulShutdownError, TransientError
from notesync.core.coordination.liveness import ProcessIdentity, process_alive
from notesync.core.logging import get_logger
from notesync.core.store.schema import gate_tickets_table, gates_table

if TYPE_CHECKING:
    from notesync.core.store.database import NotesDB

logger = get_logger(__name__)

_VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_\-]*$")


class GateTimeout(TransientError):
    """No slot became available within the requested timeout."""


@dataclass(frozen=True, slots=True)
class GateSlot:
    """An active ticket. Pass it back to release()."""

    gate_name: str
    ticket_id: int
    acquired_at: datetime


class ResourceGate:
    """Cross-process FIFO counting semaphore.

    Example:
        gate = ResourceGate(db, "overpass", capacity=8)
        with gate.slot():
            response = client.post(url, data=query)
            body = response.content
        # slot released here, before the body is processed
    """

    def __init__(
        self,
        db: NotesDB,
        name: str,
        capacity: int,
        *,
        poll_interval_seconds: float = 0.5,
        heartbeat_interval_seconds: float = 30.0,
        stale_after_seconds: float = 300.0,
        identity: ProcessIdentity | None = None,
    ) -> None:
        """Initialize the gate, creating its row on first use.

        Args:
            db: Shared database holding the gate tables
            name: Gate name; letters, digits, underscore, hyphen
            capacity: Maximum simultaneously active tickets
            poll_interval_seconds: Sleep between polls while waiting
            heartbeat_interval_seconds: Heartbeat period of held slots
            stale_after_seconds: Tickets without a heartbeat for this long are reaped
            identity: Owner identity recorded on tickets (testing)

        Raises:
            ValueError: If name is invalid or capacity is not positive.
        """
        if not _VALID_NAME_PATTERN.match(name):
            raise ValueError(
                f"Invalid gate name: {name!r}. Name must start with a letter and contain only letters, digits, '_' or '-'."
            )
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self.name = name
        self.capacity = capacity
        self._db = db
        self._poll_interval = poll_interval_seconds
        self._heartbeat_interval = heartbeat_interval_seconds
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._identity = identity if identity is not None else ProcessIdentity.current()
        self._held: set[int] = set()
        self._held_lock = threading.Lock()
        self._heartbeat_stop: threading.Event | None = None
        self._heartbeat_thread: threading.Thread | None = None
        self._ensure_gate_row()

    def _ensure_gate_row(self) -> None:
        try:
            with self._db.connection() as conn:
                exists = conn.execute(select(gates_table.c.name).where(gates_table.c.name == self.name)).first()
                if exists is None:
                    conn.execute(insert(gates_table).values(name=self.name, capacity=self.capacity, version=0))
                else:
                    conn.execute(update(gates_table).where(gates_table.c.name == self.name).values(capacity=self.capacity))
        except IntegrityError:
            # Another process created the row first
            pass

    def enqueue(self) -> int:
        """Append a waiting ticket and return its id."""
        now = datetime.now(UTC)
        with self._db.connection() as conn:
            result = conn.execute(
                insert(gate_tickets_table).values(
                    gate_name=self.name,
                    owner_host=self._identity.host,
                    owner_pid=self._identity.pid,
                    owner_started=self._identity.started,
                    state=TicketState.WAITING.value,
                    enqueued_at=now,
                    heartbeat_at=now,
                )
            )
            ticket_id = result.inserted_primary_key[0]
        return int(ticket_id)

    def try_promote(self, ticket_id: int) -> bool:
        """One poll: promote the ticket if it is at the head and a slot is free."""
        with self._db.connection() as conn:
            conn.execute(update(gates_table).where(gates_table.c.name == self.name).values(version=gates_table.c.version + 1))
            conn.execute(
                update(gate_tickets_table)
                .where(gate_tickets_table.c.ticket_id == ticket_id)
                .values(heartbeat_at=datetime.now(UTC))
            )
            self._reap_dead_owners(conn)

            head = conn.execute(
                select(func.min(gate_tickets_table.c.ticket_id))
                .where(gate_tickets_table.c.gate_name == self.name)
                .where(gate_tickets_table.c.state == TicketState.WAITING.value)
            ).scalar_one_or_none()
            if head != ticket_id:
                if head is None or head > ticket_id:
                    still_queued = conn.execute(
                        select(gate_tickets_table.c.ticket_id).where(gate_tickets_table.c.ticket_id == ticket_id)
                    ).first()
                    if still_queued is None:
                        raise GateTimeout(f"ticket {ticket_id} on gate {self.name!r} was reaped while waiting")
                return False

            active = conn.execute(
                select(func.count())
                .select_from(gate_tickets_table)
                .where(gate_tickets_table.c.gate_name == self.name)
                .where(gate_tickets_table.c.state == TicketState.ACTIVE.value)
            ).scalar_one()
            if active >= self.capacity:
                return False

            conn.execute(
                update(gate_tickets_table)
                .where(gate_tickets_table.c.ticket_id == ticket_id)
                .values(state=TicketState.ACTIVE.value, acquired_at=datetime.now(UTC))
            )
        return True

    def _owner_alive(self, ticket: Row[Any], now: datetime) -> bool:
        if now - ticket.heartbeat_at >= self._stale_after:
            return False
        if ticket.owner_host == self._identity.host:
            return process_alive(ticket.owner_pid, ticket.owner_started)
        return True

    def _reap_dead_owners(self, conn: Connection) -> None:
        rows = conn.execute(
            select(
                gate_tickets_table.c.ticket_id,
                gate_tickets_table.c.owner_host,
                gate_tickets_table.c.owner_pid,
                gate_tickets_table.c.owner_started,
                gate_tickets_table.c.state,
                gate_tickets_table.c.heartbeat_at,
            ).where(gate_tickets_table.c.gate_name == self.name)
        ).all()
        now = datetime.now(UTC)
        dead = [row for row in rows if not self._owner_alive(row, now)]
        if not dead:
            return
        conn.execute(delete(gate_tickets_table).where(gate_tickets_table.c.ticket_id.in_([row.ticket_id for row in dead])))
        for row in dead:
            logger.warning(
                "gate_ticket_reaped",
                gate=self.name,
                ticket_id=row.ticket_id,
                owner=f"{row.owner_host}:{row.owner_pid}",
                state=row.state,
                heartbeat_at=row.heartbeat_at.isoformat(),
            )

    def acquire(
        self,
        *,
        timeout: float | None = None,
        shutdown_event: threading.Event | None = None,
    ) -> GateSlot:
        """Block until this caller's ticket is served.

        Args:
            timeout: Give up after this many seconds (None waits forever)
            shutdown_event: Give up when set

        Raises:
            GateTimeout: If the timeout elapsed first
            GracefulShutdownError: If shutdown_event was set first
        """
        ticket_id = self.enqueue()
        deadline = time.monotonic() + timeout if timeout is not None else None
        try:
            while True:
                if self.try_promote(ticket_id):
                    self._track(ticket_id)
                    logger.debug("gate_acquired", gate=self.name, ticket_id=ticket_id)
                    return GateSlot(gate_name=self.name, ticket_id=ticket_id, acquired_at=datetime.now(UTC))
                if shutdown_event is not None and shutdown_event.is_set():
                    raise GracefulShutdownError(f"shutdown requested while waiting on gate {self.name!r}")
                if deadline is not None and time.monotonic() >= deadline:
                    raise GateTimeout(f"no slot on gate {self.name!r} within {timeout}s")
                if shutdown_event is not None:
                    shutdown_event.wait(self._poll_interval)
                else:
                    time.sleep(self._poll_interval)
        except BaseException:
            self._delete_ticket(ticket_id)
            raise

    def release(self, slot: GateSlot) -> None:
        self._untrack(slot.ticket_id)
        self._delete_ticket(slot.ticket_id)
        logger.debug("gate_released", gate=self.name, ticket_id=slot.ticket_id)

    def heartbeat(self) -> int:
        """Refresh heartbeat_at of every slot this instance holds. Returns the number refreshed."""
        with self._held_lock:
            held = list(self._held)
        if not held:
            return 0
        with self._db.connection() as conn:
            result = conn.execute(
                update(gate_tickets_table)
                .where(gate_tickets_table.c.ticket_id.in_(held))
                .values(heartbeat_at=datetime.now(UTC))
            )
        if result.rowcount < len(held):
            logger.error("gate_slot_lost", gate=self.name, held=len(held), refreshed=result.rowcount)
        return int(result.rowcount)

    def _track(self, ticket_id: int) -> None:
        with self._held_lock:
            self._held.add(ticket_id)
            if self._heartbeat_thread is not None:
                return
            self._heartbeat_stop = threading.Event()
            self._heartbeat_thread = threading.Thread(
                target=self._heartbeat_loop,
                args=(self._heartbeat_stop,),
                name=f"gate-heartbeat-{self.name}",
                daemon=True,
            )
            self._heartbeat_thread.start()

    def _untrack(self, ticket_id: int) -> None:
        with self._held_lock:
            self._held.discard(ticket_id)
            if self._held or self._heartbeat_stop is None:
                return
            stop, thread = self._heartbeat_stop, self._heartbeat_thread
            self._heartbeat_stop = self._heartbeat_thread = None
        stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _heartbeat_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._heartbeat_interval):
            try:
                self.heartbeat()
            except SQLAlchemyError as e:
                logger.warning("gate_heartbeat_failed", gate=self.name, error=str(e))

    def _delete_ticket(self, ticket_id: int) -> None:
        with self._db.connection() as conn:
            conn.execute(delete(gate_tickets_table).where(gate_tickets_table.c.ticket_id == ticket_id))

    @contextmanager
    def slot(
        self,
        *,
        timeout: float | None = None,
        shutdown_event: threading.Event | None = None,
    ) -> Iterator[GateSlot]:
        """Hold a slot for the duration of the block."""
        acquired = self.acquire(timeout=timeout, shutdown_event=shutdown_event)
        try:
            yield acquired
        finally:
            self.release(acquired)

    def active_count(self) -> int:
        with self._db.engine.connect() as conn:
            return int(
                conn.execute(
                    select(func.count())
                    .select_from(gate_tickets_table)
                    .where(gate_tickets_table.c.gate_name == self.name)
                    .where(gate_tickets_table.c.state == TicketState.ACTIVE.value)
                ).scalar_one()
            )

    def waiting_count(self) -> int:
        with self._db.engine.connect() as conn:
            return int(
                conn.execute(
                    select(func.count())
                    .select_from(gate_tickets_table)
                    .where(gate_tickets_table.c.gate_name == self.name)
                    .where(gate_tickets_table.c.state == TicketState.WAITING.value)
                ).scalar_one()
            )

