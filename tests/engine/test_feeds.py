# tests/engine/test_feeds.py
"""Tests for the planet snapshot and API delta feeds."""

import bz2
import hashlib
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest
import respx

from notesync.contracts.enums import FeedFormat, Stage
from notesync.contracts.errors import AuthError, DiskExhaustedError, FetchError, ThrottledError, TransientError
from notesync.engine.feeds import BulkSnapshotFeed, DiskUsage, IncrementalDeltaFeed, check_response, format_cursor
from notesync.engine.retry import RetryConfig, RetryManager

SEARCH_URL = "https://api.test/api/0.6/notes/search.xml"
PLANET_URL = "https://planet.test/notes/planet-notes-latest.osn.bz2"
CURSOR = datetime(2024, 3, 1, 12, 30, tzinfo=UTC)


def _retry_manager(settings: Any) -> RetryManager:
    return RetryManager(RetryConfig.from_settings(settings.retry), sleep=lambda seconds: None)


class TestCheckResponse:
    """Status-code to error-class mapping."""

    def _response(self, status: int, headers: dict[str, str] | None = None) -> httpx.Response:
        return httpx.Response(status, headers=headers, request=httpx.Request("GET", SEARCH_URL))

    def test_success_passes(self) -> None:
        check_response(self._response(200), what="delta")

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth(self, status: int) -> None:
        with pytest.raises(AuthError):
            check_response(self._response(status), what="delta")

    def test_throttled_with_retry_after(self) -> None:
        with pytest.raises(ThrottledError) as exc_info:
            check_response(self._response(429, {"Retry-After": "30"}), what="delta")

        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.retryable

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_transient(self, status: int) -> None:
        with pytest.raises(TransientError):
            check_response(self._response(status), what="delta")

    def test_other_client_errors_are_fatal(self) -> None:
        with pytest.raises(FetchError) as exc_info:
            check_response(self._response(404), what="delta")

        assert not isinstance(exc_info.value, TransientError)
        assert exc_info.value.context == {"status_code": 404}


class TestIncrementalDeltaFeed:
    """Delta download with retries and high-water detection."""

    def test_params_use_cursor_and_limit(self, make_settings) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        feed = IncrementalDeltaFeed(settings.feeds, _retry_manager(settings))

        params = feed.delta_params(CURSOR)

        assert params == {"limit": 100, "closed": -1, "sort": "updated_at", "from": "2024-03-01T12:30:00Z"}
        feed.close()

    @respx.mock
    def test_fetch_writes_delta_and_counts(self, make_settings, api_note, feed_bytes) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        route = respx.get(url__startswith=SEARCH_URL).mock(
            return_value=httpx.Response(200, content=feed_bytes([api_note(1), api_note(2)], FeedFormat.API))
        )
        feed = IncrementalDeltaFeed(settings.feeds, _retry_manager(settings))

        result = feed.fetch(CURSOR)

        assert result.feed_format is FeedFormat.API
        assert result.note_count == 2
        assert result.high_water is False
        assert result.path.read_bytes().count(b"<note ") == 2
        request = route.calls.last.request
        assert request.url.params["from"] == "2024-03-01T12:30:00Z"
        assert request.url.params["limit"] == "100"
        assert request.headers["User-Agent"].startswith("notesync")

    @respx.mock
    def test_high_water_when_page_is_full(self, make_settings, api_note, feed_bytes) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings(feeds={"max_notes": 3})
        respx.get(url__startswith=SEARCH_URL).mock(
            return_value=httpx.Response(200, content=feed_bytes([api_note(i) for i in range(1, 4)], FeedFormat.API))
        )

        result = IncrementalDeltaFeed(settings.feeds, _retry_manager(settings)).fetch(CURSOR)

        assert result.high_water is True

    @respx.mock
    def test_transient_failure_retried(self, make_settings, api_note, feed_bytes) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        route = respx.get(url__startswith=SEARCH_URL)
        route.side_effect = [
            httpx.Response(503),
            httpx.ConnectError("reset"),
            httpx.Response(200, content=feed_bytes([api_note(1)], FeedFormat.API)),
        ]

        result = IncrementalDeltaFeed(settings.feeds, _retry_manager(settings)).fetch(CURSOR)

        assert route.call_count == 3
        assert result.note_count == 1

    @respx.mock
    def test_retries_exhausted_is_fetch_error(self, make_settings) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        route = respx.get(url__startswith=SEARCH_URL).mock(return_value=httpx.Response(502))

        with pytest.raises(FetchError) as exc_info:
            IncrementalDeltaFeed(settings.feeds, _retry_manager(settings)).fetch(CURSOR)

        assert route.call_count == 3
        assert exc_info.value.stage is Stage.FETCH
        assert not (settings.feeds.work_dir / "delta.xml.part").exists()

    @respx.mock
    def test_auth_failure_not_retried(self, make_settings) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        route = respx.get(url__startswith=SEARCH_URL).mock(return_value=httpx.Response(401))

        with pytest.raises(AuthError):
            IncrementalDeltaFeed(settings.feeds, _retry_manager(settings)).fetch(CURSOR)

        assert route.call_count == 1

    @respx.mock
    def test_is_reachable(self, make_settings) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        route = respx.get("https://api.test/api/0.6/capabilities")
        feed = IncrementalDeltaFeed(settings.feeds, _retry_manager(settings))

        route.mock(return_value=httpx.Response(200))
        assert feed.is_reachable() is True
        route.mock(return_value=httpx.Response(503))
        assert feed.is_reachable() is False
        route.mock(side_effect=httpx.ConnectError("down"))
        assert feed.is_reachable() is False


class TestBulkSnapshotFeed:
    """Planet download, checksum, and decompression."""

    @respx.mock
    def test_download_verify_decompress(self, make_settings, planet_note, feed_bytes) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        xml = feed_bytes([planet_note(1), planet_note(2)], FeedFormat.PLANET)
        archive = bz2.compress(xml)
        respx.get(PLANET_URL).mock(return_value=httpx.Response(200, content=archive))
        respx.get(PLANET_URL + ".md5").mock(
            return_value=httpx.Response(200, text=f"{hashlib.md5(archive).hexdigest()}  planet-notes-latest.osn.bz2\n")
        )

        result = BulkSnapshotFeed(settings.feeds, _retry_manager(settings)).fetch()

        assert result.feed_format is FeedFormat.PLANET
        assert result.path.read_bytes() == xml

    @respx.mock
    def test_checksum_mismatch(self, make_settings, planet_note, feed_bytes) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings()
        respx.get(PLANET_URL).mock(return_value=httpx.Response(200, content=bz2.compress(feed_bytes([planet_note(1)], FeedFormat.PLANET))))
        respx.get(PLANET_URL + ".md5").mock(return_value=httpx.Response(200, text="0" * 32 + "  x.bz2\n"))

        with pytest.raises(FetchError, match="checksum mismatch"):
            BulkSnapshotFeed(settings.feeds, _retry_manager(settings)).fetch()

    @respx.mock
    def test_checksum_skipped_when_disabled(self, make_settings, planet_note, feed_bytes) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings(feeds={"verify_checksum": False})
        respx.get(PLANET_URL).mock(return_value=httpx.Response(200, content=bz2.compress(feed_bytes([planet_note(1)], FeedFormat.PLANET))))

        result = BulkSnapshotFeed(settings.feeds, _retry_manager(settings)).fetch()

        assert result.path.exists()

    @respx.mock
    def test_empty_download(self, make_settings) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings(feeds={"verify_checksum": False})
        respx.get(PLANET_URL).mock(return_value=httpx.Response(200, content=b""))

        with pytest.raises(FetchError, match="empty"):
            BulkSnapshotFeed(settings.feeds, _retry_manager(settings)).fetch()

    @respx.mock
    def test_corrupt_archive(self, make_settings) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings(feeds={"verify_checksum": False})
        respx.get(PLANET_URL).mock(return_value=httpx.Response(200, content=b"definitely not bzip2"))

        with pytest.raises(FetchError, match="decompressed"):
            BulkSnapshotFeed(settings.feeds, _retry_manager(settings)).fetch()

        assert not (settings.feeds.work_dir / "planet-notes.xml").exists()

    def test_insufficient_disk_space(self, make_settings) -> None:  # type: ignore[no-untyped-def]
        settings = make_settings(feeds={"min_free_disk_bytes": 1000})
        feed = BulkSnapshotFeed(settings.feeds, _retry_manager(settings), disk_usage=lambda path: DiskUsage(2000, 1990, 10))

        with pytest.raises(DiskExhaustedError) as exc_info:
            feed.fetch()

        assert exc_info.value.context == {"free_bytes": 10, "required_bytes": 1000}


def test_format_cursor_converts_to_utc() -> None:
    from datetime import timedelta, timezone

    local = datetime(2024, 3, 1, 14, 30, tzinfo=timezone(timedelta(hours=2)))

    assert format_cursor(local) == "2024-03-01T12:30:00Z"
