"""
Shared test fixtures for the telemetry engine tests.

Provides:
- ManualClock: a Clock whose time only moves when a test advances it, with
  sleepers that wake once the clock passes their deadline.
- MemoryBlobStore: an in-memory BlobStore with optional failure injection.
- make_reading: a Reading factory with healthy defaults.
- Environment variable fixtures for MonitorSettings configuration tests.
  All daemon env vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-12: Add ManualClock and MemoryBlobStore (STORY-013)
- 2026-10-05: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import asyncio

import pytest
from smartcb.src.models import Reading

BASE_MS: int = 1_790_812_800_000
"""2026-10-01T00:00:00Z, aligned to an hour (and a day) boundary."""

HOUR_MS: int = 60 * 60 * 1000

# All MonitorSettings environment variable names, used for cleanup.
_ALL_MONITOR_ENV_VARS = (
    "DEVICE_BASE_URL",
    "DEVICE_POLL_INTERVAL_S",
    "STORE_PATH",
    "THRESHOLDS_PATH",
    "ALERT_WEBHOOK_URL",
    "ALERT_WEBHOOK_TOKEN",
    "ROLLUP_CHECK_INTERVAL_S",
    "SAVE_CHECK_INTERVAL_S",
    "HEALTH_PATH",
)


async def _settle(rounds: int = 20) -> None:
    """Let ready tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    """Deterministic Clock for tests."""

    def __init__(self, start_ms: int = BASE_MS) -> None:
        self._now_ms = start_ms
        self._sleepers: list[tuple[int, asyncio.Future[None]]] = []
        self.sleep_calls: list[float] = []

    def now_ms(self) -> int:
        return self._now_ms

    def set_ms(self, now_ms: int) -> None:
        """Jump to *now_ms* without waking sleepers (sync tests)."""
        self._now_ms = now_ms

    def tick(self, seconds: float) -> None:
        """Move forward without waking sleepers (sync tests)."""
        self._now_ms += int(seconds * 1000)

    async def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (self._now_ms + int(seconds * 1000), future)
        self._sleepers.append(entry)
        try:
            await future
        finally:
            self._sleepers.remove(entry)

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, f in self._sleepers if not f.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in deadline order."""
        await _settle()
        target = self._now_ms + int(seconds * 1000)
        while True:
            due = [d for d, f in self._sleepers if d <= target and not f.done()]
            if not due:
                break
            self._now_ms = max(self._now_ms, min(due))
            for deadline, future in list(self._sleepers):
                if deadline <= self._now_ms and not future.done():
                    future.set_result(None)
            await _settle()
        self._now_ms = target
        await _settle()


class MemoryBlobStore:
    """BlobStore kept in a dict; set ``fail_set``/``fail_get`` to inject errors."""

    def __init__(self, data: dict[str, bytes] | None = None) -> None:
        self.data: dict[str, bytes] = dict(data or {})
        self.fail_set = False
        self.fail_get = False
        self.set_calls = 0

    async def get(self, key: str) -> bytes | None:
        if self.fail_get:
            raise OSError("store unavailable")
        return self.data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.set_calls += 1
        if self.fail_set:
            raise OSError("disk full")
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


def make_reading(timestamp: int = BASE_MS, **overrides: object) -> Reading:
    """Create a healthy Reading (230 V, 2 A, 50 Hz, relay on)."""
    fields: dict[str, object] = {
        "timestamp": timestamp,
        "voltage": 230.0,
        "current": 2.0,
        "power": 460.0,
        "energy": 10.0,
        "frequency": 50.0,
        "power_factor": 0.95,
        "apparent_power": 484.0,
        "reactive_power": 150.0,
        "relay_state": True,
    }
    fields.update(overrides)
    return Reading(**fields)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture(autouse=True)
def _clean_monitor_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all daemon env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_MONITOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for MonitorSettings."""
    env = {
        "DEVICE_BASE_URL": "http://192.168.4.1",
        "DEVICE_POLL_INTERVAL_S": "2",
        "STORE_PATH": "/tmp/test-smartcb.db",
        "THRESHOLDS_PATH": "/tmp/thresholds.json",
        "ALERT_WEBHOOK_URL": "https://alerts.example.com/hook",
        "ALERT_WEBHOOK_TOKEN": "alert-token-abc",
        "ROLLUP_CHECK_INTERVAL_S": "30",
        "SAVE_CHECK_INTERVAL_S": "120",
        "HEALTH_PATH": "/tmp/health.json",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones)."""
    env = {"DEVICE_BASE_URL": "http://10.0.0.50"}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
