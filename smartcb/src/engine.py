"""
Telemetry engine: wires the normalizer, history stores, event detector,
event log, reconnection scheduler and persistence together.

All collaborators are injected (clock, threshold provider, relay actuator,
persistence gateway, optional alert sink and health writer), so nothing runs
on ambient timers and tests control time explicitly.

Per incoming reading (``ingest``):

1. Sanitize the raw mapping.
2. Offer it to the recent window (sampled at 2 s, energy-normalized).
3. Independently run event detection against the previous incoming reading;
   an outage cancels any pending reconnection, a restore with the relay off
   arms it. Each event goes to the event log and, fire-and-forget, to the
   alert sink.
4. If a reading was accepted: roll up the previous hour when the clock has
   entered a new hour, and save when the save interval has elapsed.

Everything up to the first persistence await runs synchronously, so there is
never more than one in-flight mutation of the stores.

CHANGELOG:
- 2026-10-19: Keep a failing health file from interrupting ingest (STORY-017)
- 2026-10-11: Attach outage duration to restore events (STORY-011)
- 2026-10-10: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Literal

from smartcb.src.events import EventLog, detect_events
from smartcb.src.history import HourlyRollupStore, RecentWindow
from smartcb.src.models import Event, EventType, HourlyAggregate, Reading
from smartcb.src.normalizer import hour_start, sanitize_reading
from smartcb.src.reconnect import ReconnectionScheduler

if TYPE_CHECKING:
    from smartcb.src.health import HealthWriter
    from smartcb.src.interfaces import AlertSink, Clock, RelayActuator, ThresholdProvider
    from smartcb.src.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

RETENTION_MS: int = 30 * 24 * 60 * 60 * 1000
"""History older than 30 days is pruned after load."""

RECENT_SPAN_MS: int = 24 * 60 * 60 * 1000

Granularity = Literal["minute", "hour"]


class TelemetryEngine:
    """Single-device telemetry aggregation and event detection engine.

    Args:
        clock: Wall-clock source and sleeper.
        thresholds: Supplies a fresh ThresholdConfig per pass.
        actuator: Receives "relay on" requests from the reconnection scheduler.
        persistence: Saves and loads history.
        alert_sink: Optional receiver of every new event.
        health: Optional health file writer.
        window: Recent window (defaults to a 24 h / 2 s window).
        rollups: Hourly rollup store (defaults to 720 hours).
        event_log: Event log (defaults to 500 events).
    """

    def __init__(
        self,
        *,
        clock: Clock,
        thresholds: ThresholdProvider,
        actuator: RelayActuator,
        persistence: PersistenceGateway,
        alert_sink: AlertSink | None = None,
        health: HealthWriter | None = None,
        window: RecentWindow | None = None,
        rollups: HourlyRollupStore | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        self._clock = clock
        self._thresholds = thresholds
        self._persistence = persistence
        self._alert_sink = alert_sink
        self._health = health

        self.window = window or RecentWindow(clock)
        self.rollups = rollups or HourlyRollupStore()
        self.events = event_log or EventLog()
        self.scheduler = ReconnectionScheduler(
            clock=clock,
            actuator=actuator,
            thresholds=thresholds,
            relay_state=self._relay_is_on,
            on_reconnected=self._record_auto_on,
        )

        self._last_reading: Reading | None = None
        self._last_rollup_hour: int | None = None
        self._outage_started_ms: int | None = None
        self._alert_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted history and prune anything past retention."""
        now = self._clock.now_ms()
        history = await self._persistence.load(now)

        self.window.replace(history.readings)
        self.rollups.replace(history.aggregates)
        self.events.replace(history.events)

        cutoff = now - RETENTION_MS
        pruned = self.window.prune_older_than(cutoff) + self.rollups.prune_older_than(cutoff)
        if pruned:
            logger.info("Pruned %d records older than 30 days", pruned)

    async def shutdown(self) -> None:
        """Cancel reconnection, flush pending alerts and save once more."""
        await self.scheduler.aclose()
        if self._alert_tasks:
            await asyncio.gather(*self._alert_tasks, return_exceptions=True)
        await self.save()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, raw: Mapping[str, Any] | Reading) -> list[Event]:
        """Process one incoming reading from the device.

        Never raises for malformed input: bad fields are coerced to 0.

        Returns:
            The events detected for this reading.
        """
        now = self._clock.now_ms()
        reading = sanitize_reading(raw, now_ms=now)

        accepted = self.window.accept(reading)
        events = self._detect(accepted or reading)

        if accepted is not None:
            self._update_health(
                "record_reading",
                accepted.timestamp,
                recent_count=len(self.window),
                hourly_count=len(self.rollups),
            )
            await self.check_rollup()
            await self.save_if_due()

        return events

    def _detect(self, reading: Reading) -> list[Event]:
        thresholds = self._thresholds.get_thresholds()
        previous = self._last_reading
        self._last_reading = reading

        recorded: list[Event] = []
        for event in detect_events(reading, previous, thresholds):
            if event.type is EventType.OUTAGE:
                self.scheduler.cancel()
                self._outage_started_ms = event.timestamp
            elif event.type is EventType.RESTORE:
                if self._outage_started_ms is not None:
                    event = event.model_copy(
                        update={"duration": event.timestamp - self._outage_started_ms}
                    )
                    self._outage_started_ms = None
                if thresholds.reconnection.enabled and not reading.relay_state:
                    self.scheduler.arm()
            self._record(event)
            recorded.append(event)

        self._update_health("set_reconnect_state", self.scheduler.state.value)
        return recorded

    def _record(self, event: Event) -> None:
        self.events.add(event)
        logger.warning("Event %s: %s", event.type.value, event.description)
        if self._alert_sink is not None:
            task = asyncio.get_running_loop().create_task(self._notify(event))
            self._alert_tasks.add(task)
            task.add_done_callback(self._alert_tasks.discard)

    async def _notify(self, event: Event) -> None:
        try:
            await self._alert_sink.notify(event)  # type: ignore[union-attr]
        except Exception:
            logger.warning("Alert sink failed for event %s", event.id, exc_info=True)

    def _update_health(self, method: str, *args: Any, **kwargs: Any) -> None:
        if self._health is None:
            return
        try:
            getattr(self._health, method)(*args, **kwargs)
        except OSError:
            logger.warning("Failed to write health file %s", self._health.path, exc_info=True)

    def _relay_is_on(self) -> bool:
        return self._last_reading is not None and self._last_reading.relay_state

    def _record_auto_on(self, attempt: int) -> None:
        now = self._clock.now_ms()
        self._record(
            Event(
                id=f"evt-{now}-auto-on",
                type=EventType.AUTO_ON,
                timestamp=now,
                description=(
                    f"Relay turned ON automatically after power restore (attempt {attempt})"
                ),
                reading=self._last_reading,
            )
        )

    # ------------------------------------------------------------------
    # Rollup and persistence
    # ------------------------------------------------------------------

    async def check_rollup(self) -> HourlyAggregate | None:
        """Roll up the previous hour once per clock hour, then save.

        Returns:
            The new aggregate, or None if no rollup happened.
        """
        now = self._clock.now_ms()
        current_hour = hour_start(now)
        if self._last_rollup_hour == current_hour:
            return None
        self._last_rollup_hour = current_hour

        aggregate = self.rollups.rollup_previous_hour(self.window, now)
        if aggregate is not None:
            await self.save()
        return aggregate

    async def save_if_due(self) -> bool:
        now = self._clock.now_ms()
        if not self._persistence.is_save_due(now):
            return False
        return await self.save()

    async def save(self) -> bool:
        ok = await self._persistence.save(
            self._clock.now_ms(),
            readings=self.window.snapshot(),
            aggregates=self.rollups.snapshot(),
            events=self.events.snapshot(),
        )
        if ok:
            self._update_health("record_save")
        return ok

    async def clear(self) -> None:
        """Forget all history and events, in memory and on disk."""
        self.window.clear()
        self.rollups.clear()
        self.events.clear()
        self._last_rollup_hour = None
        await self._persistence.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def readings_for_period(
        self,
        start_ms: int,
        end_ms: int,
        granularity: Granularity = "hour",
    ) -> list[Reading] | list[HourlyAggregate]:
        """Chart data for a period.

        Minute granularity inside the last 24 hours comes from the recent
        window (inclusive bounds); anything else from the hourly rollups.
        """
        now = self._clock.now_ms()
        if granularity == "minute" and start_ms >= now - RECENT_SPAN_MS:
            return [r for r in self.window if start_ms <= r.timestamp <= end_ms]
        return self.rollups.aggregates_between(start_ms, end_ms)
