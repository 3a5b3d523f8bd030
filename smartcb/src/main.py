"""
Telemetry daemon main loop for a single smart circuit breaker.

Runs three concurrent asyncio loops:
1. **Poll loop**: fetches the device status over HTTP and feeds it to
   TelemetryEngine.ingest (sampling, energy normalization, event detection).
2. **Rollup loop**: calls engine.check_rollup() so the previous hour is rolled
   up even when no reading has been accepted since the hour boundary.
3. **Save loop**: calls engine.save_if_due() so history is persisted at most
   every five minutes even while the device is unreachable.

Each loop is resilient: an exception in one iteration is logged and does not
crash the loop or affect the others. Graceful shutdown on SIGTERM/SIGINT sets
a shared asyncio.Event; once every loop has finished its current iteration
the engine cancels any pending reconnection and saves one final time.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-12: Add rollup and save check loops (STORY-014)
- 2026-10-12: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from smartcb.src.device import DeviceClient
    from smartcb.src.engine import TelemetryEngine
    from smartcb.src.interfaces import ThresholdProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging() -> None:
    """Configure structured JSON logging for the telemetry daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, excluding secrets.

    The alert webhook token is only logged as a fingerprint.

    Args:
        settings: A MonitorSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Telemetry daemon starting with config: "
        "device_base_url=%s, device_poll_interval_s=%s, "
        "store_path=%s, thresholds_path=%s, alert_webhook_url=%s, "
        "rollup_check_interval_s=%s, save_check_interval_s=%s, "
        "health_path=%s, alert_token_masked=%s",
        settings.device_base_url,  # type: ignore[attr-defined]
        settings.device_poll_interval_s,  # type: ignore[attr-defined]
        settings.store_path,  # type: ignore[attr-defined]
        settings.thresholds_path or "<defaults>",  # type: ignore[attr-defined]
        settings.alert_webhook_url or "<disabled>",  # type: ignore[attr-defined]
        settings.rollup_check_interval_s,  # type: ignore[attr-defined]
        settings.save_check_interval_s,  # type: ignore[attr-defined]
        settings.health_path,  # type: ignore[attr-defined]
        _masked_token(settings.alert_webhook_token),  # type: ignore[attr-defined]
    )


def build_threshold_provider(thresholds_path: str) -> ThresholdProvider:
    """Pick the JSON file provider when a path is configured, else defaults."""
    from smartcb.src.thresholds import JsonFileThresholdProvider, StaticThresholdProvider

    if thresholds_path:
        return JsonFileThresholdProvider(thresholds_path)
    return StaticThresholdProvider()


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _poll_once(*, device: DeviceClient, engine: TelemetryEngine) -> int:
    """Execute a single fetch-ingest cycle.

    Catches all exceptions so that the caller's loop is never broken.

    Args:
        device: The breaker HTTP client.
        engine: The telemetry engine receiving the reading.

    Returns:
        Number of events detected for this reading.
    """
    try:
        status = await device.fetch_status()
        if status is None:
            logger.debug("Device returned no status, skipping ingest")
            return 0
        events = await engine.ingest(status)
        return len(events)
    except Exception:
        logger.error("Poll cycle error", exc_info=True)
        return 0


async def _rollup_once(engine: TelemetryEngine) -> None:
    try:
        await engine.check_rollup()
    except Exception:
        logger.error("Rollup check error", exc_info=True)


async def _save_once(engine: TelemetryEngine) -> None:
    try:
        await engine.save_if_due()
    except Exception:
        logger.error("Save check error", exc_info=True)


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _poll_loop(
    *,
    device: DeviceClient,
    engine: TelemetryEngine,
    poll_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run the poll loop until shutdown_event is set."""
    logger.info("Poll loop started (interval=%ss)", poll_interval_s)
    while not shutdown_event.is_set():
        await _poll_once(device=device, engine=engine)
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval_s)
    logger.info("Poll loop stopped")


async def _periodic_loop(
    *,
    name: str,
    action: Callable[[TelemetryEngine], Awaitable[None]],
    engine: TelemetryEngine,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run *action(engine)* every *interval_s* until shutdown_event is set."""
    logger.info("%s loop started (interval=%ss)", name, interval_s)
    while not shutdown_event.is_set():
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
        if not shutdown_event.is_set():
            await action(engine)
    logger.info("%s loop stopped", name)


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    device: DeviceClient,
    engine: TelemetryEngine,
    poll_interval_s: float,
    rollup_check_interval_s: float,
    save_check_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run poll, rollup and save loops concurrently until shutdown.

    When the shutdown_event is set, every loop finishes its current iteration,
    then the engine is shut down (reconnection cancelled, final save).

    Args:
        device: The breaker HTTP client.
        engine: The started telemetry engine.
        poll_interval_s: Seconds between status polls.
        rollup_check_interval_s: Seconds between hourly rollup checks.
        save_check_interval_s: Seconds between debounced save checks.
        shutdown_event: Event to signal graceful shutdown.
    """
    logger.info("Starting concurrent poll, rollup and save loops")

    await asyncio.gather(
        _poll_loop(
            device=device,
            engine=engine,
            poll_interval_s=poll_interval_s,
            shutdown_event=shutdown_event,
        ),
        _periodic_loop(
            name="Rollup",
            action=_rollup_once,
            engine=engine,
            interval_s=rollup_check_interval_s,
            shutdown_event=shutdown_event,
        ),
        _periodic_loop(
            name="Save",
            action=_save_once,
            engine=engine,
            interval_s=save_check_interval_s,
            shutdown_event=shutdown_event,
        ),
    )

    logger.info("Saving history before exit")
    await engine.shutdown()
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    from smartcb.src.alerts import WebhookAlertSink
    from smartcb.src.config import MonitorSettings
    from smartcb.src.device import DeviceClient
    from smartcb.src.engine import TelemetryEngine
    from smartcb.src.health import HealthWriter
    from smartcb.src.interfaces import SystemClock
    from smartcb.src.persistence import PersistenceGateway
    from smartcb.src.store import SqliteBlobStore

    settings = MonitorSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    clock = SystemClock()
    device = DeviceClient(settings.device_base_url)
    alert_sink = (
        WebhookAlertSink(
            settings.alert_webhook_url,
            settings.alert_webhook_token or None,
            clock=clock,
        )
        if settings.alert_webhook_url
        else None
    )

    async with SqliteBlobStore(settings.store_path) as store:
        engine = TelemetryEngine(
            clock=clock,
            thresholds=build_threshold_provider(settings.thresholds_path),
            actuator=device,
            persistence=PersistenceGateway(store),
            alert_sink=alert_sink,
            health=HealthWriter(settings.health_path),
        )
        await engine.start()
        await run_loops(
            device=device,
            engine=engine,
            poll_interval_s=settings.device_poll_interval_s,
            rollup_check_interval_s=settings.rollup_check_interval_s,
            save_check_interval_s=settings.save_check_interval_s,
            shutdown_event=shutdown_event,
        )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the telemetry daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
