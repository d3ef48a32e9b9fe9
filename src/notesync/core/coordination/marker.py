# src/notesync/core/coordination/marker.py
"""Failure marker: a JSON file that blocks runs after a fatal error.

The marker is written once per incident and only removed by an operator
(`notesync clear-failure`), so a broken pipeline produces one notification
instead of one per scheduled retry.
"""

import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from notesync.contracts.records import FailureRecord
from notesync.core.logging import get_logger

logger = get_logger(__name__)


class FailureMarker:
    """Read, write, and clear the failure marker file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def read(self) -> FailureRecord | None:
        """Parsed marker, or None if there is none.

        A marker that cannot be parsed still blocks runs; it is reported
        with error_class "UnreadableMarker" rather than ignored.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return FailureRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error("failure_marker_unreadable", path=str(self._path), error=str(e))
            stat = self._path.stat()
            return FailureRecord(
                created_at=datetime.fromtimestamp(stat.st_mtime, UTC),
                run_type="unknown",
                stage="unknown",
                error_class="UnreadableMarker",
                message=raw[:500],
                holder="unknown",
                exit_status=1,
            )

    def write(self, record: FailureRecord) -> None:
        """Atomically write the marker (temp file in the same directory, then rename)."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".marker-", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2, sort_keys=True, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.error(
            "failure_marker_written",
            path=str(self._path),
            stage=record.stage,
            error_class=record.error_class,
        )

    def clear(self) -> bool:
        """Remove the marker. Returns False if there was none."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        logger.info("failure_marker_cleared", path=str(self._path))
        return True
