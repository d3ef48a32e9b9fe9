# src/notesync/engine/feeds.py
"""Source feeds: the bulk planet snapshot and the incremental API delta.

Both feeds land a plain XML file in the work directory and hand it to the
Partitioner; neither parses records itself. Every HTTP exchange goes
through the RetryManager, and the status mapping is shared:

    401/403        -> AuthError (never retried)
    429            -> ThrottledError (retried)
    5xx, transport -> TransientError (retried)
    other 4xx      -> FetchError (never retried)

Retries that run out surface as FetchError so the coordinator can map them
to the fetch failure category.
"""

from __future__ import annotations

import bz2
import errno
import hashlib
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, NamedTuple

import httpx

from notesync.contracts.enums import FeedFormat, Stage
from notesync.contracts.errors import AuthError, DiskExhaustedError, FetchError, ThrottledError, TransientError
from notesync.core.config import FeedSettings
from notesync.core.logging import get_logger
from notesync.engine.retry import MaxRetriesExceeded, RetryManager
from notesync.engine.scanner import count_notes

logger = get_logger(__name__)

_STREAM_CHUNK = 1 << 20

DELTA_FILENAME = "delta.xml"
PLANET_XML_FILENAME = "planet-notes.xml"


class DiskUsage(NamedTuple):
    total: int
    used: int
    free: int


@dataclass(frozen=True, slots=True)
class FeedResult:
    """A feed file ready for partitioning.

    note_count is None when the feed did not count its notes (the planet
    dump is counted by the Partitioner instead).
    """

    path: Path
    feed_format: FeedFormat
    note_count: int | None = None
    high_water: bool = False


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Seconds from a numeric Retry-After header, if the service sent one."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def check_response(response: httpx.Response, *, what: str) -> None:
    """Raise the error class matching a non-success HTTP status."""
    status = response.status_code
    if status < 400:
        return
    message = f"{what}: HTTP {status}"
    if status in (401, 403):
        raise AuthError(message, stage=Stage.FETCH, context={"status_code": status})
    if status == 429:
        raise ThrottledError(message, status_code=status, retry_after=retry_after_seconds(response), stage=Stage.FETCH)
    if status >= 500:
        raise TransientError(message, stage=Stage.FETCH, context={"status_code": status})
    raise FetchError(message, stage=Stage.FETCH, context={"status_code": status})


def format_cursor(cursor: datetime) -> str:
    """Render a cursor the way the notes search API expects it."""
    return cursor.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class _HttpFeed:
    """Shared client and retry plumbing."""

    def __init__(
        self,
        settings: FeedSettings,
        retry_manager: RetryManager,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._retry = retry_manager
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(settings.request_timeout_seconds),
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _with_retry(self, operation: Callable[[], Any], *, what: str) -> Any:
        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("fetch_retry", what=what, attempt=attempt, error=str(error))

        try:
            return self._retry.execute_with_retry(operation, on_retry=on_retry)
        except MaxRetriesExceeded as e:
            raise FetchError(f"{what} failed after {e.attempts} attempts: {e.last_error}", stage=Stage.FETCH) from e

    def _download(self, url: str, target: Path, *, what: str, deadline_seconds: float) -> str:
        """Stream url into target; returns the hex MD5 of the body.

        Writes to a sibling temp file and renames, so target is either
        absent or complete.
        """
        partial = target.with_name(target.name + ".part")
        digest = hashlib.md5(usedforsecurity=False)
        started = time.monotonic()
        try:
            with self._client.stream("GET", url) as response:
                check_response(response, what=what)
                with partial.open("wb") as out:
                    for block in response.iter_bytes(_STREAM_CHUNK):
                        if time.monotonic() - started > deadline_seconds:
                            raise TransientError(f"{what}: exceeded {deadline_seconds}s", stage=Stage.FETCH)
                        digest.update(block)
                        out.write(block)
            partial.replace(target)
        finally:
            partial.unlink(missing_ok=True)
        return digest.hexdigest()


class IncrementalDeltaFeed(_HttpFeed):
    """Notes changed since the cursor, from the API search endpoint.

    Example:
        feed = IncrementalDeltaFeed(settings.feeds, retry_manager)
        result = feed.fetch(cursor)
        if result.high_water:
            ...  # too much changed; use the planet path instead
    """

    def delta_params(self, cursor: datetime) -> dict[str, str | int]:
        return {
            "limit": self._settings.max_notes,
            "closed": -1,
            "sort": "updated_at",
            "from": format_cursor(cursor),
        }

    @property
    def search_url(self) -> str:
        return f"{self._settings.api_url.rstrip('/')}/notes/search.xml"

    def fetch(self, cursor: datetime) -> FeedResult:
        """Download the delta and count its notes.

        Raises:
            AuthError: If the API refused our credentials
            FetchError: If the download failed or retries ran out
        """
        work_dir = self._settings.work_dir
        work_dir.mkdir(parents=True, exist_ok=True)
        target = work_dir / DELTA_FILENAME
        url = str(httpx.URL(self.search_url, params=self.delta_params(cursor)))

        logger.info("delta_fetch_started", url=url, cursor=format_cursor(cursor))
        self._with_retry(
            lambda: self._download(url, target, what="delta", deadline_seconds=self._settings.request_timeout_seconds),
            what="delta",
        )

        notes = count_notes(target)
        high_water = notes >= self._settings.max_notes
        logger.info("delta_fetch_complete", notes=notes, high_water=high_water, bytes=target.stat().st_size)
        return FeedResult(path=target, feed_format=FeedFormat.API, note_count=notes, high_water=high_water)

    def is_reachable(self) -> bool:
        """True when the API answers at all (used to decide whether a network failure has cleared)."""
        url = f"{self._settings.api_url.rstrip('/')}/capabilities"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            logger.info("api_reachability_check_failed", url=url, error=str(e))
            return False
        reachable = response.status_code < 500
        logger.info("api_reachability_checked", url=url, status_code=response.status_code, reachable=reachable)
        return reachable


class BulkSnapshotFeed(_HttpFeed):
    """The compressed planet notes dump.

    The download lands next to its decompressed XML in the work directory;
    both are overwritten on the next run.
    """

    def __init__(
        self,
        settings: FeedSettings,
        retry_manager: RetryManager,
        *,
        client: httpx.Client | None = None,
        disk_usage: Callable[[Path], DiskUsage] | None = None,
    ) -> None:
        super().__init__(settings, retry_manager, client=client)
        self._disk_usage = disk_usage or (lambda path: DiskUsage(*shutil.disk_usage(path)))

    def check_disk_space(self) -> None:
        """Raises DiskExhaustedError when the work directory is short of space."""
        usage = self._disk_usage(self._settings.work_dir)
        required = self._settings.min_free_disk_bytes
        if usage.free < required:
            raise DiskExhaustedError(
                f"{usage.free} bytes free in {self._settings.work_dir}, {required} required",
                stage=Stage.FETCH,
                context={"free_bytes": usage.free, "required_bytes": required},
            )

    def _expected_md5(self) -> str:
        response = self._client.get(self._settings.planet_url + ".md5")
        check_response(response, what="planet checksum")
        fields = response.text.split()
        if not fields:
            raise FetchError("planet checksum file is empty", stage=Stage.FETCH)
        return fields[0].lower()

    def fetch(self) -> FeedResult:
        """Download, verify and decompress the dump.

        Raises:
            DiskExhaustedError: If free space is below the configured minimum
            FetchError: If the download failed or did not pass its integrity checks
        """
        work_dir = self._settings.work_dir
        work_dir.mkdir(parents=True, exist_ok=True)
        self.check_disk_space()

        url = self._settings.planet_url
        archive = work_dir / url.rsplit("/", 1)[-1]
        logger.info("planet_download_started", url=url)
        actual_md5 = self._with_retry(
            lambda: self._download(url, archive, what="planet", deadline_seconds=self._settings.download_timeout_seconds),
            what="planet",
        )

        size = archive.stat().st_size
        if size == 0:
            raise FetchError("planet download is empty", stage=Stage.FETCH)

        if self._settings.verify_checksum:
            expected = self._with_retry(self._expected_md5, what="planet checksum")
            if expected != actual_md5:
                raise FetchError(
                    "planet checksum mismatch",
                    stage=Stage.FETCH,
                    context={"expected_md5": expected, "actual_md5": actual_md5},
                )

        xml_path = work_dir / PLANET_XML_FILENAME
        try:
            with bz2.open(archive, "rb") as source, xml_path.open("wb") as out:
                shutil.copyfileobj(source, out, _STREAM_CHUNK)
        except (OSError, EOFError) as e:
            xml_path.unlink(missing_ok=True)
            if isinstance(e, OSError) and e.errno == errno.ENOSPC:
                raise DiskExhaustedError(f"disk full while decompressing planet: {e}", stage=Stage.FETCH) from e
            raise FetchError(f"planet archive could not be decompressed: {e}", stage=Stage.FETCH) from e

        logger.info("planet_download_complete", compressed_bytes=size, xml_bytes=xml_path.stat().st_size)
        return FeedResult(path=xml_path, feed_format=FeedFormat.PLANET)
