"""
Health file writer for the telemetry daemon.

Writes a JSON health file at a configurable path with five fields:
- last_reading_ts: ISO timestamp of the most recent accepted reading.
- last_save_ts: ISO timestamp of the most recent successful history save.
- recent_count: Number of readings in the recent window.
- hourly_count: Number of hourly aggregates.
- reconnect_state: Current auto-reconnect state (idle/pending/verifying).

The file is rewritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-11: Adapt fields to the telemetry engine (STORY-017)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes daemon health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_reading_ts: str | None = None
        self._last_save_ts: str | None = None
        self._recent_count: int = 0
        self._hourly_count: int = 0
        self._reconnect_state: str = "idle"

    def record_reading(self, timestamp_ms: int, *, recent_count: int, hourly_count: int) -> None:
        """Record an accepted reading and the collection sizes."""
        self._last_reading_ts = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).isoformat()
        self._recent_count = recent_count
        self._hourly_count = hourly_count
        self._write()

    def record_save(self) -> None:
        """Record a successful save and write health file."""
        self._last_save_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_reconnect_state(self, state: str) -> None:
        """Update the reconnect state; writes only when it changed."""
        if state == self._reconnect_state:
            return
        self._reconnect_state = state
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_reading_ts": self._last_reading_ts,
            "last_save_ts": self._last_save_ts,
            "recent_count": self._recent_count,
            "hourly_count": self._hourly_count,
            "reconnect_state": self._reconnect_state,
        }
        self.path.write_text(json.dumps(data))
