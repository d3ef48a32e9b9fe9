# tests/conftest.py
"""Shared test fixtures.

Feed builders:
- planet_note / api_note: render one <note> element in the planet dump
  or the API search format
- write_feed: wrap elements in the matching root element and write a file

Store fixtures use file-backed SQLite under tmp_path so that worker
threads and processes share one database.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any
from xml.sax.saxutils import escape, quoteattr

import pytest
from hypothesis import Phase, Verbosity, settings

from notesync.contracts.enums import FeedFormat

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Feed builders
# =============================================================================

# (action, timestamp, uid, user, text)
CommentSpec = tuple[str, str, int | None, str | None, str]


def render_planet_note(
    note_id: int | str,
    *,
    lat: float | str = 51.5,
    lon: float | str = -0.1,
    created_at: str = "2024-01-01T00:00:00Z",
    closed_at: str | None = None,
    comments: Sequence[CommentSpec] = (),
) -> str:
    attrs = f'id="{note_id}" lat="{lat}" lon="{lon}" created_at="{created_at}"'
    if closed_at is not None:
        attrs += f' closed_at="{closed_at}"'
    parts = [f"<note {attrs}>"]
    for action, timestamp, uid, user, text in comments:
        comment_attrs = f'action="{action}" timestamp="{timestamp}"'
        if uid is not None:
            comment_attrs += f' uid="{uid}"'
        if user is not None:
            comment_attrs += f" user={quoteattr(user)}"
        parts.append(f"<comment {comment_attrs}>{escape(text)}</comment>")
    parts.append("</note>")
    return "\n".join(parts)


def _api_timestamp(iso: str) -> str:
    # 2024-01-01T00:00:00Z -> 2024-01-01 00:00:00 UTC
    return iso.replace("T", " ").replace("Z", " UTC")


def render_api_note(
    note_id: int | str,
    *,
    lat: float | str = 51.5,
    lon: float | str = -0.1,
    created_at: str = "2024-01-01T00:00:00Z",
    status: str = "open",
    closed_at: str | None = None,
    comments: Sequence[CommentSpec] = (),
) -> str:
    parts = [
        f'<note lon="{lon}" lat="{lat}">',
        f"<id>{note_id}</id>",
        f"<url>https://api.openstreetmap.org/api/0.6/notes/{note_id}</url>",
        f"<date_created>{_api_timestamp(created_at)}</date_created>",
        f"<status>{status}</status>",
    ]
    if closed_at is not None:
        parts.append(f"<date_closed>{_api_timestamp(closed_at)}</date_closed>")
    parts.append("<comments>")
    for action, timestamp, uid, user, text in comments:
        parts.append("<comment>")
        parts.append(f"<date>{_api_timestamp(timestamp)}</date>")
        if uid is not None:
            parts.append(f"<uid>{uid}</uid>")
        if user is not None:
            parts.append(f"<user>{escape(user)}</user>")
        parts.append(f"<action>{action}</action>")
        parts.append(f"<text>{escape(text)}</text>")
        parts.append(f"<html>&lt;p&gt;{escape(escape(text))}&lt;/p&gt;</html>")
        parts.append("</comment>")
    parts.append("</comments>")
    parts.append("</note>")
    return "\n".join(parts)


def render_feed(elements: Sequence[str], feed_format: FeedFormat) -> str:
    if feed_format is FeedFormat.PLANET:
        head, tail = "<osm-notes>", "</osm-notes>"
    else:
        head, tail = '<osm version="0.6" generator="OpenStreetMap server">', "</osm>"
    body = "\n".join(elements)
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{head}\n{body}\n{tail}\n'


@pytest.fixture
def planet_note() -> Callable[..., str]:
    return render_planet_note


@pytest.fixture
def api_note() -> Callable[..., str]:
    return render_api_note


@pytest.fixture
def feed_bytes() -> Callable[[Sequence[str], FeedFormat], bytes]:
    """Render elements as a complete feed document, encoded."""

    def _render(elements: Sequence[str], feed_format: FeedFormat) -> bytes:
        return render_feed(elements, feed_format).encode("utf-8")

    return _render


@pytest.fixture
def write_feed(tmp_path: Path) -> Callable[..., Path]:
    """Write elements as a feed file under tmp_path and return its path."""

    def _write(elements: Sequence[str], feed_format: FeedFormat = FeedFormat.PLANET, name: str | None = None) -> Path:
        path = tmp_path / (name or f"{feed_format.value}-feed.xml")
        path.write_text(render_feed(elements, feed_format), encoding="utf-8")
        return path

    return _write


# =============================================================================
# Store and settings
# =============================================================================


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'state' / 'notes.db'}"


@pytest.fixture
def db(db_url: str) -> Iterator[Any]:
    """File-backed NotesDB with all durable tables created."""
    from notesync.core.store import NotesDB

    database = NotesDB(db_url)
    yield database
    database.close()


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def make_settings(tmp_path: Path, db_url: str) -> Callable[..., Any]:
    """Build NotesyncSettings rooted in tmp_path, with nested overrides.

    Defaults favour fast tests: thread executor, two workers, no retry delay.
    """
    from notesync.core.config import NotesyncSettings

    base: dict[str, Any] = {
        "database": {"url": db_url},
        "feeds": {
            "api_url": "https://api.test/api/0.6",
            "planet_url": "https://planet.test/notes/planet-notes-latest.osn.bz2",
            "work_dir": str(tmp_path / "work"),
            "min_free_disk_bytes": 0,
            "max_notes": 100,
        },
        "concurrency": {"workers": 2, "executor": "thread", "min_notes_for_parallel": 1},
        "retry": {"max_attempts": 3, "initial_delay_seconds": 0.01, "max_delay_seconds": 0.01, "jitter_seconds": 0},
        "boundaries": {
            "endpoints": ["https://overpass.test/api/interpreter"],
            "output_dir": str(tmp_path / "boundaries"),
            "poll_interval_seconds": 0.01,
            "base_delay_seconds": 0.01,
            "max_delay_seconds": 0.01,
            "jitter_seconds": 0,
        },
        "coordination": {"state_dir": str(tmp_path / "state")},
    }

    def _make(**overrides: Any) -> NotesyncSettings:
        return NotesyncSettings.model_validate(_deep_merge(base, overrides))

    return _make
