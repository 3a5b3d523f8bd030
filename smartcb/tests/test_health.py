"""
Unit tests for the health writer module.

Tests verify:
- record_reading() writes health.json with last_reading_ts and counts.
- record_save() updates last_save_ts.
- set_reconnect_state() writes only when the state changes.
- The health file always contains all five fields.

CHANGELOG:
- 2026-10-11: Adapt to telemetry engine fields (STORY-017)

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path

from smartcb.src.health import HealthWriter

_TS_MS = 1_790_812_800_000  # 2026-10-01T00:00:00Z

_FIELDS = {"last_reading_ts", "last_save_ts", "recent_count", "hourly_count", "reconnect_state"}


class TestRecordReading:
    def test_writes_timestamp_and_counts(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.record_reading(_TS_MS, recent_count=12, hourly_count=3)

        data = json.loads(health_path.read_text())
        assert data["last_reading_ts"].startswith("2026-10-01T00:00:00")
        assert data["recent_count"] == 12
        assert data["hourly_count"] == 3
        assert data["last_save_ts"] is None

    def test_all_fields_present(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        HealthWriter(health_path).record_save()

        assert set(json.loads(health_path.read_text())) == _FIELDS


class TestRecordSave:
    def test_sets_last_save_ts(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.record_save()

        data = json.loads(health_path.read_text())
        assert data["last_save_ts"] is not None
        assert "T" in data["last_save_ts"]


class TestReconnectState:
    def test_change_is_written(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.set_reconnect_state("pending")

        assert json.loads(health_path.read_text())["reconnect_state"] == "pending"

    def test_unchanged_state_does_not_write(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.set_reconnect_state("idle")

        assert not health_path.exists()
