# src/notesync/core/config.py
"""
Configuration schema and loading for notesync.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from notesync.contracts.enums import ExecutorKind


class DatabaseSettings(BaseModel):
    """Durable store connection configuration.

    The same database hosts the run locks and the resource gate tables, so
    every process that shares a gate must point at the same URL.
    """

    model_config = {"frozen": True}

    url: str = Field(default="sqlite:///./state/notes.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Echo SQL statements")
    statement_timeout_seconds: int = Field(
        default=300,
        gt=0,
        description="Upper bound on a single merge statement (PostgreSQL only)",
    )
    country_function: str | None = Field(
        default=None,
        pattern=r"^[a-zA-Z_][a-zA-Z0-9_]*$",
        description="Store-side function (lon, lat, note_id) -> country id; None leaves country unset",
    )


class FeedSettings(BaseModel):
    """Where the planet snapshot and the API delta feed come from."""

    model_config = {"frozen": True}

    api_url: str = Field(default="https://api.openstreetmap.org/api/0.6", description="OSM API base URL")
    planet_url: str = Field(
        default="https://planet.openstreetmap.org/notes/planet-notes-latest.osn.bz2",
        description="Compressed planet notes dump",
    )
    max_notes: int = Field(
        default=10000,
        gt=0,
        description="Delta page size; a delta this large triggers the planet path",
    )
    request_timeout_seconds: float = Field(default=60.0, gt=0, description="Delta request timeout")
    download_timeout_seconds: float = Field(default=3600.0, gt=0, description="Planet download timeout")
    work_dir: Path = Field(default=Path("./state/work"), description="Scratch directory for feed files")
    verify_checksum: bool = Field(default=True, description="Compare the planet dump against its .md5 file")
    min_free_disk_bytes: int = Field(
        default=20 * 1024**3,
        ge=0,
        description="Refuse to download the planet dump with less free space than this",
    )
    user_agent: str = Field(default="notesync/0.1", description="User-Agent sent to upstream services")


class ConcurrencySettings(BaseModel):
    """Worker pool sizing."""

    model_config = {"frozen": True}

    workers: int | None = Field(
        default=None,
        gt=0,
        description="Fixed worker count; None derives it from the CPU count",
    )
    reserved_cpus: int = Field(
        default=2,
        ge=0,
        description="CPUs left for the coordinator and store I/O when deriving the worker count",
    )
    max_workers: int = Field(default=16, gt=0, description="Upper bound on derived worker count")
    chunk_factor: int = Field(default=2, gt=0, description="Chunks per worker")
    executor: ExecutorKind = Field(default=ExecutorKind.PROCESS, description="Worker pool implementation")
    min_notes_for_parallel: int = Field(
        default=10,
        ge=1,
        description="Inputs with fewer notes are processed as a single chunk",
    )
    flush_batch_size: int = Field(default=1000, gt=0, description="Rows per bulk append to staging")

    def resolve_workers(self, cpu_count: int | None = None) -> int:
        """Worker count for this host.

        Args:
            cpu_count: Override for os.cpu_count() (testing)
        """
        if self.workers is not None:
            return self.workers
        cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
        return max(1, min(self.max_workers, cpus - self.reserved_cpus))


class ValidationSettings(BaseModel):
    """Record validation gate applied before staging."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Check coordinates, enums, and timestamps")
    max_rejected_chunk_ratio: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Fraction of chunks with rejections above which the run fails",
    )


class ReconcileSettings(BaseModel):
    """Merge and cursor-advance behaviour."""

    model_config = {"frozen": True}

    gap_check_min_notes: int = Field(
        default=10,
        ge=1,
        description="Minimum merged notes before the comment gap check applies",
    )
    gap_ratio_threshold: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Fraction of merged notes without comments that holds the cursor back",
    )


class RetrySettings(BaseModel):
    """Retry behavior for feed fetches and store merges."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum attempts, including the first")
    initial_delay_seconds: float = Field(default=1.0, gt=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=60.0, gt=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")
    jitter_seconds: float = Field(default=1.0, ge=0, description="Random jitter added to each delay")


class BoundarySettings(BaseModel):
    """Boundary geometry fetching through the Overpass API.

    Example YAML:
        boundaries:
          enabled: true
          endpoints:
            - https://overpass-api.de/api/interpreter
            - https://overpass.private.coffee/api/interpreter
          capacity: 8
          ids: [1428125, 16239]
          ids_file: ./boundaries.yaml
    """

    model_config = {"frozen": True}

    enabled: bool = Field(default=False, description="Fetch boundaries during planet runs")
    endpoints: list[str] = Field(
        default_factory=lambda: ["https://overpass-api.de/api/interpreter"],
        min_length=1,
        description="Overpass interpreter URLs, rotated per attempt",
    )
    gate_name: str = Field(default="overpass", description="Resource gate shared by all fetchers")
    capacity: int = Field(default=8, gt=0, description="Simultaneous requests allowed platform-wide")
    workers: int = Field(default=4, gt=0, description="Fetcher threads in this process")
    max_attempts: int = Field(default=7, gt=0, description="Attempts per boundary before it is skipped")
    base_delay_seconds: float = Field(default=20.0, gt=0, description="Initial backoff after throttling")
    max_delay_seconds: float = Field(default=600.0, gt=0, description="Maximum backoff after throttling")
    jitter_seconds: float = Field(default=5.0, ge=0, description="Random jitter added to each backoff")
    request_timeout_seconds: float = Field(default=300.0, gt=0, description="HTTP timeout per request")
    query_timeout_seconds: int = Field(default=250, gt=0, description="Server-side Overpass [timeout:N]")
    poll_interval_seconds: float = Field(default=0.5, gt=0, description="Gate polling interval")
    ticket_heartbeat_seconds: float = Field(default=30.0, gt=0, description="Heartbeat period of an active gate ticket")
    ticket_stale_after_seconds: float = Field(
        default=300.0,
        gt=0,
        description="A gate ticket is reclaimed after this long without a heartbeat",
    )
    output_dir: Path = Field(default=Path("./state/boundaries"), description="Where payloads are written")
    continue_on_error: bool = Field(default=True, description="Skip boundaries that exhaust retries")
    status_precheck: bool = Field(default=False, description="Consult /status before enqueueing")
    max_precheck_wait_seconds: float = Field(default=60.0, ge=0, description="Cap on the pre-check wait")
    ids: list[int] = Field(default_factory=list, description="Relation ids to fetch")
    ids_file: Path | None = Field(default=None, description="YAML list of additional relation ids")

    @field_validator("endpoints")
    @classmethod
    def validate_endpoints(cls, v: list[str]) -> list[str]:
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"endpoint must be an http(s) URL, got {url!r}")
        return [url.rstrip("/") for url in v]

    @model_validator(mode="after")
    def validate_ticket_heartbeat_window(self) -> "BoundarySettings":
        if self.ticket_stale_after_seconds <= max(self.ticket_heartbeat_seconds, self.poll_interval_seconds):
            raise ValueError("ticket_stale_after_seconds must be greater than ticket_heartbeat_seconds and poll_interval_seconds")
        return self

    def boundary_ids(self) -> list[int]:
        """Configured ids plus those listed in ids_file, deduplicated in order.

        Raises:
            FileNotFoundError: If ids_file is set but missing
            ValueError: If ids_file does not hold a YAML list of integers
        """
        ids = list(self.ids)
        if self.ids_file is not None:
            loaded = yaml.safe_load(self.ids_file.read_text(encoding="utf-8"))
            if loaded is None:
                loaded = []
            if not isinstance(loaded, list) or not all(isinstance(item, int) for item in loaded):
                raise ValueError(f"{self.ids_file} must contain a YAML list of integer relation ids")
            ids.extend(loaded)
        return list(dict.fromkeys(ids))


class CoordinationSettings(BaseModel):
    """Run lock and failure marker configuration."""

    model_config = {"frozen": True}

    state_dir: Path = Field(default=Path("./state"), description="Directory for the failure marker")
    marker_filename: str = Field(default="failed_execution.json", description="Failure marker file name")
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0, description="Lock heartbeat period")
    stale_after_seconds: float = Field(
        default=300.0,
        gt=0,
        description="A lock is reclaimed after this long without a heartbeat",
    )
    auto_clear_network_failures: bool = Field(
        default=False,
        description="Clear a fetch-stage failure marker when the API answers again",
    )

    @model_validator(mode="after")
    def validate_heartbeat_window(self) -> "CoordinationSettings":
        if self.stale_after_seconds <= self.heartbeat_interval_seconds:
            raise ValueError("stale_after_seconds must be greater than heartbeat_interval_seconds")
        return self

    @property
    def marker_path(self) -> Path:
        return self.state_dir / self.marker_filename


class NotificationSettings(BaseModel):
    """Where fatal-failure diagnostics are delivered."""

    model_config = {"frozen": True}

    webhook_url: str | None = Field(default=None, description="POST target; None logs instead")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Delivery timeout")


class NotesyncSettings(BaseModel):
    """Top-level notesync configuration.

    Every section has defaults, so an empty settings file is valid.
    """

    model_config = {"frozen": True}

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    feeds: FeedSettings = Field(default_factory=FeedSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    boundaries: BoundarySettings = Field(default_factory=BoundarySettings)
    coordination: CoordinationSettings = Field(default_factory=CoordinationSettings)
    notification: NotificationSettings = Field(default_factory=NotificationSettings)


# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Unset variables without a default are left as-is so validation reports them.
    """

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lowercase_keys(value: Any) -> Any:
    """Dynaconf upper-cases keys at every level; pydantic fields are lowercase."""
    if isinstance(value, dict):
        return {str(k).lower(): _lowercase_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lowercase_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> NotesyncSettings:
    """Load settings from YAML file with environment variable overrides.

    Precedence, highest first:
    1. Environment variables (NOTESYNC_*), e.g. NOTESYNC_DATABASE__URL
    2. Config file
    3. Defaults from the Pydantic schema

    Args:
        config_path: Path to YAML configuration file

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="NOTESYNC",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lowercase_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return NotesyncSettings(**raw_config)
