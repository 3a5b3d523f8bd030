"""
Threshold and transition event detection, plus the bounded event log.

``detect_events`` is a pure function of (reading, previous reading,
thresholds). It has no memory of its own: a reading that stays above a limit
produces an event every time it is evaluated. Edge-triggered events
(outage, restore, relay toggles) need the previous reading and are skipped
for the first one.

EventLog keeps the newest 500 events, newest first, and answers the filter
and statistics queries of the events screen.

CHANGELOG:
- 2026-10-09: Add EventLog filters and 30-day statistics (STORY-011)
- 2026-10-08: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Literal

from smartcb.src.models import Event, EventStatistics, EventType, Reading, ThresholdConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OUTAGE_VOLTAGE: float = 100.0
"""Voltage below which the supply is considered lost."""

UNDERLOAD_CURRENT_A: float = 0.1
"""Non-zero current below this is reported as underload."""

POWER_FACTOR_MIN_LOAD_A: float = 0.5
"""Power factor is only judged above this current (idle noise otherwise)."""

MAX_EVENTS: int = 500

_DAY_MS: int = 24 * 60 * 60 * 1000

DateRange = Literal["today", "week", "month", "all"]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def _event(reading: Reading, suffix: str, event_type: EventType, description: str) -> Event:
    return Event(
        id=f"evt-{reading.timestamp}-{suffix}",
        type=event_type,
        timestamp=reading.timestamp,
        description=description,
        reading=reading,
    )


def detect_events(
    reading: Reading,
    previous: Reading | None,
    thresholds: ThresholdConfig,
) -> list[Event]:
    """Compare a reading (and its predecessor) against the configured limits.

    Level checks, each yielding at most one event:

    - voltage above max -> ``overvoltage``; 0 < voltage < min -> ``undervoltage``
    - current above max -> ``overload``; 0 < current < 0.1 A with voltage
      present -> ``underload``
    - frequency (if enabled) above max -> ``frequency_max``;
      0 < frequency < min -> ``frequency_min``
    - power factor (if enabled) 0 < pf < min with current above 0.5 A ->
      ``power_factor_min``

    Transition checks, only when *previous* is given:

    - voltage falls through 100 V -> ``outage``
    - voltage rises through 100 V -> ``restore``
    - relay state changed -> ``manual_on`` / ``manual_off``

    Args:
        reading: The reading being evaluated.
        previous: The previously evaluated reading, or None.
        thresholds: Limits snapshot for this pass.

    Returns:
        Events in check order; empty when nothing fired.
    """
    events: list[Event] = []
    voltage = thresholds.voltage
    current = thresholds.current
    frequency = thresholds.frequency
    power_factor = thresholds.power_factor

    if reading.voltage > voltage.max:
        events.append(
            _event(
                reading,
                "overvoltage",
                EventType.OVERVOLTAGE,
                f"High voltage detected: {reading.voltage:.1f}V (Max: {voltage.max:g}V)",
            )
        )
    elif 0 < reading.voltage < voltage.min:
        events.append(
            _event(
                reading,
                "undervoltage",
                EventType.UNDERVOLTAGE,
                f"Low voltage detected: {reading.voltage:.1f}V (Min: {voltage.min:g}V)",
            )
        )

    if reading.current > current.max:
        events.append(
            _event(
                reading,
                "overload",
                EventType.OVERLOAD,
                f"Overload detected: {reading.current:.2f}A (Max: {current.max:g}A)",
            )
        )
    elif 0 < reading.current < UNDERLOAD_CURRENT_A and reading.voltage > 0:
        events.append(
            _event(
                reading,
                "underload",
                EventType.UNDERLOAD,
                f"Very low current: {reading.current:.3f}A "
                f"(Min: {UNDERLOAD_CURRENT_A:g}A)",
            )
        )

    if previous is not None:
        if previous.voltage > OUTAGE_VOLTAGE and reading.voltage < OUTAGE_VOLTAGE:
            events.append(
                _event(
                    reading,
                    "outage",
                    EventType.OUTAGE,
                    f"Power outage detected: {reading.voltage:.1f}V "
                    f"(below {OUTAGE_VOLTAGE:g}V)",
                )
            )
        elif previous.voltage < OUTAGE_VOLTAGE and reading.voltage > OUTAGE_VOLTAGE:
            events.append(
                _event(
                    reading,
                    "restore",
                    EventType.RESTORE,
                    f"Power restored: {reading.voltage:.1f}V (above {OUTAGE_VOLTAGE:g}V)",
                )
            )

    if frequency.enabled:
        if reading.frequency > frequency.max:
            events.append(
                _event(
                    reading,
                    "freq-max",
                    EventType.FREQUENCY_MAX,
                    f"High frequency: {reading.frequency:.1f}Hz (Max: {frequency.max:g}Hz)",
                )
            )
        elif 0 < reading.frequency < frequency.min:
            events.append(
                _event(
                    reading,
                    "freq-min",
                    EventType.FREQUENCY_MIN,
                    f"Low frequency: {reading.frequency:.1f}Hz (Min: {frequency.min:g}Hz)",
                )
            )

    if (
        power_factor.enabled
        and 0 < reading.power_factor < power_factor.min
        and reading.current > POWER_FACTOR_MIN_LOAD_A
    ):
        events.append(
            _event(
                reading,
                "pf-low",
                EventType.POWER_FACTOR_MIN,
                f"Low power factor: {reading.power_factor:.2f} (Min: {power_factor.min:g})",
            )
        )

    if previous is not None and previous.relay_state != reading.relay_state:
        state = "ON" if reading.relay_state else "OFF"
        events.append(
            _event(
                reading,
                "relay",
                EventType.MANUAL_ON if reading.relay_state else EventType.MANUAL_OFF,
                f"Relay turned {state}",
            )
        )

    return events


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


class EventLog:
    """Newest-first list of events capped at *max_events*."""

    def __init__(self, *, max_events: int = MAX_EVENTS) -> None:
        if max_events < 1:
            raise ValueError("max_events must be >= 1")
        self._max_events = max_events
        self._events: list[Event] = []

    def __len__(self) -> int:
        return len(self._events)

    def add(self, event: Event) -> None:
        """Prepend an event, evicting the oldest beyond the cap."""
        self._events.insert(0, event)
        del self._events[self._max_events :]

    def snapshot(self) -> list[Event]:
        return list(self._events)

    def replace(self, events: Iterable[Event]) -> None:
        ordered = sorted(events, key=lambda e: e.timestamp, reverse=True)
        self._events = ordered[: self._max_events]

    def clear(self) -> None:
        self._events.clear()

    def filtered(
        self,
        now_ms: int,
        *,
        date_range: DateRange = "all",
        event_type: EventType | None = None,
    ) -> list[Event]:
        """Events within *date_range* of *now_ms*, optionally of one type.

        ``today`` starts at UTC midnight; ``week`` and ``month`` are the
        last 7 and 30 days.
        """
        if date_range == "today":
            start = now_ms - (now_ms % _DAY_MS)
        elif date_range == "week":
            start = now_ms - 7 * _DAY_MS
        elif date_range == "month":
            start = now_ms - 30 * _DAY_MS
        else:
            start = None

        return [
            e
            for e in self._events
            if (start is None or e.timestamp >= start)
            and (event_type is None or e.type == event_type)
        ]

    def statistics(self, now_ms: int) -> EventStatistics:
        """Counts and outage downtime over the last 30 days.

        Downtime comes from ``duration`` on restore events, which the engine
        sets to the time since the matching outage.
        """
        recent = self.filtered(now_ms, date_range="month")
        outages = [e for e in recent if e.type == EventType.OUTAGE]
        downtime = sum(e.duration or 0 for e in recent if e.type == EventType.RESTORE)

        return EventStatistics(
            total_events=len(recent),
            total_outages=len(outages),
            average_outage_duration_ms=downtime / len(outages) if outages else 0.0,
            total_downtime_ms=downtime,
        )
