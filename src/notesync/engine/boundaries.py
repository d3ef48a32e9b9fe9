# src/notesync/engine/boundaries.py
"""BoundaryFetcher: pulls relation geometry from Overpass under the shared gate.

Each attempt for a boundary id acquires its own gate slot, sends one
query, reads the whole body and releases the slot before anything is
written to disk. A throttled or failed attempt therefore goes back to the
tail of the queue, and the slot it held is free for the next waiter while
this thread backs off.

Ids that exhaust their attempts are recorded in BoundaryReport.failed and
the batch continues, unless continue_on_error is off.
"""

from __future__ import annotations

import itertools
import json
import os
import re
import tempfile
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import httpx

from notesync.contracts.enums import Stage
from notesync.contracts.errors import FetchError, GracefulShutdownError, ThrottledError, TransientError
from notesync.contracts.records import BoundaryReport
from notesync.core.config import BoundarySettings
from notesync.core.logging import get_logger
from notesync.core.rate_limit.gate import ResourceGate
from notesync.engine.feeds import retry_after_seconds
from notesync.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

logger = get_logger(__name__)

THROTTLE_STATUS_CODES = frozenset({429, 504})

_SLOTS_AVAILABLE = re.compile(r"(\d+) slots? available now")
_SLOT_WAIT = re.compile(r"in (-?\d+) seconds")


def build_query(relation_id: int, timeout_seconds: int) -> str:
    """Overpass QL for a relation with all its members, recursively."""
    return f"[out:json][timeout:{timeout_seconds}];rel({relation_id});(._;>;);out;"


def status_url(endpoint: str) -> str:
    """`.../api/interpreter` -> `.../api/status`."""
    base, _, last = endpoint.rstrip("/").rpartition("/")
    return f"{base}/status" if last == "interpreter" else f"{endpoint.rstrip('/')}/status"


def parse_status(text: str) -> tuple[int, float | None]:
    """(slots available now, shortest advertised wait in seconds).

    The wait is None when the page lists no pending slot.
    """
    available = sum(int(match) for match in _SLOTS_AVAILABLE.findall(text))
    waits = [max(0, int(match)) for match in _SLOT_WAIT.findall(text)]
    return available, (float(min(waits)) if waits else None)


def _write_payload(directory: Path, relation_id: int, body: bytes) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{relation_id}.json"
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{relation_id}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as out:
            out.write(body)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return target


class BoundaryFetcher:
    """Fetches boundary relations with a bounded, FIFO-fair share of Overpass.

    Example:
        gate = ResourceGate(db, settings.gate_name, settings.capacity)
        fetcher = BoundaryFetcher(settings, gate)
        report = fetcher.fetch_all(settings.boundary_ids())
    """

    def __init__(
        self,
        settings: BoundarySettings,
        gate: ResourceGate,
        *,
        client: httpx.Client | None = None,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._settings = settings
        self._gate = gate
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(settings.request_timeout_seconds))
        self._retry_config = retry_config or RetryConfig.for_boundaries(settings)
        self._sleep = sleep
        self._endpoints = itertools.cycle(settings.endpoints)
        self._endpoint_lock = threading.Lock()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _next_endpoint(self) -> str:
        with self._endpoint_lock:
            return next(self._endpoints)

    def _wait(self, seconds: float, shutdown_event: threading.Event | None) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif shutdown_event is not None:
            shutdown_event.wait(seconds)
        else:
            time.sleep(seconds)

    def _precheck(self, endpoint: str, shutdown_event: threading.Event | None) -> None:
        """Sleep out an advertised wait before joining the queue. Advisory only."""
        url = status_url(endpoint)
        try:
            response = self._client.get(url, timeout=self._settings.request_timeout_seconds)
        except httpx.HTTPError as e:
            logger.debug("boundary_precheck_failed", url=url, error=str(e))
            return
        if response.status_code != 200:
            return
        available, wait = parse_status(response.text)
        if available > 0 or wait is None:
            return
        wait = min(wait, self._settings.max_precheck_wait_seconds)
        logger.info("boundary_precheck_wait", url=url, wait_seconds=wait)
        self._wait(wait, shutdown_event)

    def _attempt(self, relation_id: int, shutdown_event: threading.Event | None) -> bytes:
        endpoint = self._next_endpoint()
        if self._settings.status_precheck:
            self._precheck(endpoint, shutdown_event)

        query = build_query(relation_id, self._settings.query_timeout_seconds)
        with self._gate.slot(shutdown_event=shutdown_event):
            response = self._client.post(endpoint, data={"data": query}, timeout=self._settings.request_timeout_seconds)
            body = response.content

        status = response.status_code
        context = {"relation_id": relation_id, "endpoint": endpoint, "status_code": status}
        if status in THROTTLE_STATUS_CODES:
            raise ThrottledError(
                f"boundary {relation_id}: throttled by {endpoint} (HTTP {status})",
                status_code=status,
                retry_after=retry_after_seconds(response),
                stage=Stage.BOUNDARIES,
            )
        if status >= 500:
            raise TransientError(f"boundary {relation_id}: HTTP {status} from {endpoint}", stage=Stage.BOUNDARIES, context=context)
        if status >= 400:
            raise FetchError(f"boundary {relation_id}: HTTP {status} from {endpoint}", stage=Stage.BOUNDARIES, context=context)

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise TransientError(f"boundary {relation_id}: unparseable payload from {endpoint}", stage=Stage.BOUNDARIES) from e
        remark = payload.get("remark", "") if isinstance(payload, dict) else ""
        if "runtime error" in remark:
            # Overpass answers 200 with a remark when the query itself timed out
            raise TransientError(f"boundary {relation_id}: {remark}", stage=Stage.BOUNDARIES, context=context)
        return body

    def fetch_one(self, relation_id: int, *, shutdown_event: threading.Event | None = None) -> Path:
        """Fetch one boundary and write it to output_dir/<id>.json.

        Raises:
            FetchError: If the service refused the query or attempts ran out
            GracefulShutdownError: If shutdown was requested while waiting
        """

        def sleep(seconds: float) -> None:
            self._wait(seconds, shutdown_event)
            if shutdown_event is not None and shutdown_event.is_set():
                raise GracefulShutdownError(f"shutdown requested while backing off boundary {relation_id}", stage=Stage.BOUNDARIES)

        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("boundary_retry", relation_id=relation_id, attempt=attempt, error=str(error))

        manager = RetryManager(self._retry_config, sleep=sleep)
        try:
            body = manager.execute_with_retry(lambda: self._attempt(relation_id, shutdown_event), on_retry=on_retry)
        except MaxRetriesExceeded as e:
            raise FetchError(
                f"boundary {relation_id}: gave up after {e.attempts} attempts: {e.last_error}",
                stage=Stage.BOUNDARIES,
                context={"relation_id": relation_id, "attempts": e.attempts},
            ) from e

        path = _write_payload(self._settings.output_dir, relation_id, body)
        logger.info("boundary_fetched", relation_id=relation_id, bytes=len(body), path=str(path))
        return path

    def fetch_all(self, relation_ids: Iterable[int], *, shutdown_event: threading.Event | None = None) -> BoundaryReport:
        """Fetch every id on a thread pool.

        Raises:
            FetchError: If an id failed and continue_on_error is off
            GracefulShutdownError: If shutdown was requested
        """
        ids = list(dict.fromkeys(relation_ids))
        report = BoundaryReport()
        if not ids:
            return report

        logger.info("boundaries_started", count=len(ids), workers=self._settings.workers, gate=self._gate.name)
        with ThreadPoolExecutor(max_workers=self._settings.workers, thread_name_prefix="boundary") as executor:
            futures = {executor.submit(self.fetch_one, relation_id, shutdown_event=shutdown_event): relation_id for relation_id in ids}
            try:
                for future in as_completed(futures):
                    relation_id = futures[future]
                    try:
                        future.result()
                    except FetchError as e:
                        if not self._settings.continue_on_error:
                            raise
                        logger.warning("boundary_skipped", relation_id=relation_id, error=str(e))
                        report.failed[relation_id] = str(e)
                    else:
                        report.resolved.append(relation_id)
            except BaseException:
                for pending in futures:
                    pending.cancel()
                raise

        report.resolved.sort()
        logger.info("boundaries_complete", resolved=len(report.resolved), failed=len(report.failed))
        return report
