# tests/core/test_config.py
"""Tests for configuration schema and loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError


class TestSettingsDefaults:
    """Defaults must form a valid configuration on their own."""

    def test_empty_settings_are_valid(self) -> None:
        from notesync.core.config import NotesyncSettings

        settings = NotesyncSettings()

        assert settings.feeds.max_notes == 10000
        assert settings.concurrency.reserved_cpus == 2
        assert settings.validation.enabled is True
        assert settings.boundaries.enabled is False
        assert settings.coordination.marker_path == Path("./state") / "failed_execution.json"

    def test_settings_are_frozen(self) -> None:
        from notesync.core.config import NotesyncSettings

        settings = NotesyncSettings()

        with pytest.raises(ValidationError):
            settings.feeds.max_notes = 5  # type: ignore[misc]


class TestConcurrencySettings:
    """Worker count derivation."""

    def test_explicit_worker_count_wins(self) -> None:
        from notesync.core.config import ConcurrencySettings

        assert ConcurrencySettings(workers=3).resolve_workers(cpu_count=64) == 3

    def test_derived_count_reserves_cpus(self) -> None:
        from notesync.core.config import ConcurrencySettings

        assert ConcurrencySettings().resolve_workers(cpu_count=8) == 6

    def test_derived_count_never_below_one(self) -> None:
        from notesync.core.config import ConcurrencySettings

        assert ConcurrencySettings().resolve_workers(cpu_count=1) == 1

    def test_derived_count_capped(self) -> None:
        from notesync.core.config import ConcurrencySettings

        assert ConcurrencySettings(max_workers=4).resolve_workers(cpu_count=64) == 4

    def test_zero_workers_rejected(self) -> None:
        from notesync.core.config import ConcurrencySettings

        with pytest.raises(ValidationError):
            ConcurrencySettings(workers=0)


class TestBoundarySettings:
    """Endpoint validation and id loading."""

    def test_endpoints_must_be_http(self) -> None:
        from notesync.core.config import BoundarySettings

        with pytest.raises(ValidationError, match="http"):
            BoundarySettings(endpoints=["ftp://overpass.example/api/interpreter"])

    def test_endpoint_trailing_slash_stripped(self) -> None:
        from notesync.core.config import BoundarySettings

        settings = BoundarySettings(endpoints=["https://overpass.example/api/interpreter/"])

        assert settings.endpoints == ["https://overpass.example/api/interpreter"]

    def test_boundary_ids_merges_file_and_inline(self, tmp_path: Path) -> None:
        from notesync.core.config import BoundarySettings

        ids_file = tmp_path / "ids.yaml"
        ids_file.write_text("- 16239\n- 51477\n- 1428125\n")
        settings = BoundarySettings(ids=[1428125, 62422], ids_file=ids_file)

        assert settings.boundary_ids() == [1428125, 62422, 16239, 51477]

    def test_boundary_ids_file_must_be_int_list(self, tmp_path: Path) -> None:
        from notesync.core.config import BoundarySettings

        ids_file = tmp_path / "ids.yaml"
        ids_file.write_text("countries: [1, 2]\n")
        settings = BoundarySettings(ids_file=ids_file)

        with pytest.raises(ValueError, match="list of integer"):
            settings.boundary_ids()

    def test_ticket_stale_window_must_exceed_heartbeat(self) -> None:
        from notesync.core.config import BoundarySettings

        with pytest.raises(ValidationError, match="ticket_stale_after_seconds"):
            BoundarySettings(ticket_heartbeat_seconds=60, ticket_stale_after_seconds=60)

    def test_ticket_stale_window_must_exceed_poll_interval(self) -> None:
        from notesync.core.config import BoundarySettings

        with pytest.raises(ValidationError, match="ticket_stale_after_seconds"):
            BoundarySettings(ticket_heartbeat_seconds=1, ticket_stale_after_seconds=5, poll_interval_seconds=10)


class TestCoordinationSettings:
    """Heartbeat and stale window."""

    def test_stale_window_must_exceed_heartbeat(self) -> None:
        from notesync.core.config import CoordinationSettings

        with pytest.raises(ValidationError, match="stale_after_seconds"):
            CoordinationSettings(heartbeat_interval_seconds=60, stale_after_seconds=30)


class TestLoadSettings:
    """YAML loading with environment overrides."""

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        from notesync.core.config import load_settings

        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")

    def test_loads_nested_sections(self, tmp_path: Path) -> None:
        from notesync.contracts.enums import ExecutorKind
        from notesync.core.config import load_settings

        config = tmp_path / "settings.yaml"
        config.write_text(
            """
database:
  url: sqlite:///./notes.db
concurrency:
  workers: 3
  executor: thread
boundaries:
  enabled: true
  ids: [16239]
"""
        )

        settings = load_settings(config)

        assert settings.database.url == "sqlite:///./notes.db"
        assert settings.concurrency.workers == 3
        assert settings.concurrency.executor is ExecutorKind.THREAD
        assert settings.boundaries.enabled is True
        assert settings.boundaries.ids == [16239]

    def test_expands_environment_variables(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from notesync.core.config import load_settings

        monkeypatch.setenv("NOTES_HOOK", "https://hooks.example.org/notes")
        config = tmp_path / "settings.yaml"
        config.write_text(
            """
notification:
  webhook_url: ${NOTES_HOOK}
feeds:
  user_agent: ${NOTES_AGENT:-notesync-test}
"""
        )

        settings = load_settings(config)

        assert settings.notification.webhook_url == "https://hooks.example.org/notes"
        assert settings.feeds.user_agent == "notesync-test"

    def test_environment_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from notesync.core.config import load_settings

        config = tmp_path / "settings.yaml"
        config.write_text("feeds:\n  max_notes: 500\n")
        monkeypatch.setenv("NOTESYNC_FEEDS__MAX_NOTES", "2000")

        settings = load_settings(config)

        assert settings.feeds.max_notes == 2000

    def test_invalid_values_raise_validation_error(self, tmp_path: Path) -> None:
        from notesync.core.config import load_settings

        config = tmp_path / "settings.yaml"
        config.write_text("validation:\n  max_rejected_chunk_ratio: 1.5\n")

        with pytest.raises(ValidationError):
            load_settings(config)
