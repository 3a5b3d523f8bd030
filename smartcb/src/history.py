"""
Bounded in-memory history: a sampled recent window and hourly rollups.

RecentWindow keeps the last 24 hours of readings at a fixed 2-second sample
interval (43,200 entries). Readings arriving faster than the sample interval
are dropped, so the device push rate never drives memory growth.

HourlyRollupStore keeps up to 30 days of per-hour aggregates (720 entries),
unique by hour start and sorted ascending. Rolling up is idempotent: the
previous hour is recomputed from the recent window and upserted.

Neither store does I/O. Persistence is driven by the engine through the
PersistenceGateway.

CHANGELOG:
- 2026-10-09: Add period queries and age-based pruning (STORY-010)
- 2026-10-07: Correct hourly energy deltas against average power (STORY-006)
- 2026-10-06: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import bisect
import logging
from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from smartcb.src.interfaces import Clock
from smartcb.src.models import HourlyAggregate, Reading
from smartcb.src.normalizer import (
    ONE_HOUR_MS,
    correct_aggregate,
    hour_start,
    normalize_energy,
    sanitize_reading,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SAMPLE_INTERVAL_MS: int = 2 * 1000
"""Minimum wall-clock spacing between two accepted readings."""

MAX_RECENT_READINGS: int = 43_200
"""24 hours at one reading per SAMPLE_INTERVAL_MS."""

MAX_HISTORICAL_HOURS: int = 720
"""30 days of hourly aggregates."""


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _mean(values: list[float]) -> float:
    return sum(values) / len(values)


def aggregate_readings(readings: list[Reading], hour_start_ms: int) -> HourlyAggregate:
    """Summarise one hour of readings.

    ``energy_delta`` is the increase of the cumulative counter from the
    first to the last reading (never negative), then checked against
    ``power_avg`` over the full hour by :func:`correct_aggregate`.

    Args:
        readings: Readings inside the hour, in timestamp order.
        hour_start_ms: Start of the hour in epoch milliseconds.

    Returns:
        The aggregate; an all-zero aggregate when *readings* is empty.
    """
    if not readings:
        return HourlyAggregate(timestamp=hour_start_ms)

    voltages = [r.voltage for r in readings]
    currents = [r.current for r in readings]
    powers = [r.power for r in readings]

    energy_delta = max(0.0, readings[-1].energy - readings[0].energy)

    aggregate = HourlyAggregate(
        timestamp=hour_start_ms,
        voltage_avg=_mean(voltages),
        voltage_min=min(voltages),
        voltage_max=max(voltages),
        current_avg=_mean(currents),
        current_max=max(currents),
        power_avg=_mean(powers),
        power_max=max(powers),
        energy_delta=energy_delta,
        frequency_avg=_mean([r.frequency for r in readings]),
        power_factor_avg=_mean([r.power_factor for r in readings]),
        apparent_power_avg=_mean([r.apparent_power for r in readings]),
        reactive_power_avg=_mean([r.reactive_power for r in readings]),
        sample_count=len(readings),
    )
    return correct_aggregate(aggregate)


# ---------------------------------------------------------------------------
# Recent window
# ---------------------------------------------------------------------------


class RecentWindow:
    """Bounded FIFO of sampled readings, oldest first.

    Args:
        clock: Source of wall-clock time for the sampling throttle.
        sample_interval_ms: Minimum spacing between accepted readings.
        max_readings: Capacity; the oldest readings are evicted beyond it.
    """

    def __init__(
        self,
        clock: Clock,
        *,
        sample_interval_ms: int = SAMPLE_INTERVAL_MS,
        max_readings: int = MAX_RECENT_READINGS,
    ) -> None:
        if max_readings < 1:
            raise ValueError("max_readings must be >= 1")
        self._clock = clock
        self._sample_interval_ms = sample_interval_ms
        self._readings: deque[Reading] = deque(maxlen=max_readings)
        self._last_accepted_time: int | None = None

    def __len__(self) -> int:
        return len(self._readings)

    def __iter__(self) -> Iterator[Reading]:
        return iter(self._readings)

    @property
    def last(self) -> Reading | None:
        """Most recently accepted reading, or None when empty."""
        return self._readings[-1] if self._readings else None

    @property
    def last_accepted_time(self) -> int | None:
        return self._last_accepted_time

    def accept(self, raw: Mapping[str, Any] | Reading) -> Reading | None:
        """Sample, sanitize, normalize and append a raw reading.

        Readings arriving less than the sample interval after the previous
        accepted one are silently dropped.

        Returns:
            The normalized Reading that was stored, or None if dropped.
        """
        now = self._clock.now_ms()
        if (
            self._last_accepted_time is not None
            and now - self._last_accepted_time < self._sample_interval_ms
        ):
            return None

        reading = sanitize_reading(raw, now_ms=now)
        reading = normalize_energy(reading, self.last)
        # deque(maxlen=...) evicts from the left on overflow.
        self._readings.append(reading)
        self._last_accepted_time = now
        return reading

    def readings_between(self, start_ms: int, end_ms: int) -> list[Reading]:
        """Readings with ``start_ms <= timestamp < end_ms``."""
        return [r for r in self._readings if start_ms <= r.timestamp < end_ms]

    def replace(self, readings: Iterable[Reading]) -> None:
        """Swap the buffer contents, keeping only the newest entries that fit."""
        self._readings = deque(readings, maxlen=self._readings.maxlen)

    def prune_older_than(self, cutoff_ms: int) -> int:
        """Drop readings older than *cutoff_ms*; returns how many were removed."""
        removed = 0
        while self._readings and self._readings[0].timestamp < cutoff_ms:
            self._readings.popleft()
            removed += 1
        return removed

    def snapshot(self) -> list[Reading]:
        return list(self._readings)

    def clear(self) -> None:
        self._readings.clear()
        self._last_accepted_time = None


# ---------------------------------------------------------------------------
# Hourly rollups
# ---------------------------------------------------------------------------


class HourlyRollupStore:
    """Sorted, bounded collection of hourly aggregates keyed by hour start.

    Args:
        max_hours: Capacity; the oldest hours are trimmed beyond it.
    """

    def __init__(self, *, max_hours: int = MAX_HISTORICAL_HOURS) -> None:
        if max_hours < 1:
            raise ValueError("max_hours must be >= 1")
        self._max_hours = max_hours
        self._aggregates: list[HourlyAggregate] = []

    def __len__(self) -> int:
        return len(self._aggregates)

    def __iter__(self) -> Iterator[HourlyAggregate]:
        return iter(self._aggregates)

    def rollup_previous_hour(self, window: RecentWindow, now_ms: int) -> HourlyAggregate | None:
        """Aggregate the hour before the one containing *now_ms*.

        Safe to call any number of times: an existing aggregate for the same
        hour is replaced, which also picks up late readings for an hour that
        was only partly seen at the first rollup.

        Returns:
            The stored aggregate, or None when the window holds no readings
            for that hour.
        """
        current_hour = hour_start(now_ms)
        previous_hour = current_hour - ONE_HOUR_MS

        selected = window.readings_between(previous_hour, current_hour)
        if not selected:
            return None

        aggregate = aggregate_readings(selected, previous_hour)
        self.upsert(aggregate)
        logger.info(
            "Aggregated hour %d: samples=%d energy_delta=%.4f kWh (%s)",
            previous_hour,
            aggregate.sample_count,
            aggregate.energy_delta,
            aggregate.energy_source,
        )
        return aggregate

    def upsert(self, aggregate: HourlyAggregate) -> None:
        """Insert or replace by hour start, keep sorted, trim to capacity."""
        keys = [a.timestamp for a in self._aggregates]
        idx = bisect.bisect_left(keys, aggregate.timestamp)
        if idx < len(keys) and keys[idx] == aggregate.timestamp:
            self._aggregates[idx] = aggregate
        else:
            self._aggregates.insert(idx, aggregate)

        overflow = len(self._aggregates) - self._max_hours
        if overflow > 0:
            del self._aggregates[:overflow]

    def aggregates_between(self, start_ms: int, end_ms: int) -> list[HourlyAggregate]:
        """Aggregates with ``start_ms <= timestamp <= end_ms``."""
        return [a for a in self._aggregates if start_ms <= a.timestamp <= end_ms]

    def replace(self, aggregates: Iterable[HourlyAggregate]) -> None:
        """Load a collection: dedupe by hour (last wins), sort, trim."""
        by_hour = {a.timestamp: a for a in aggregates}
        ordered = [by_hour[k] for k in sorted(by_hour)]
        self._aggregates = ordered[-self._max_hours :]

    def prune_older_than(self, cutoff_ms: int) -> int:
        before = len(self._aggregates)
        self._aggregates = [a for a in self._aggregates if a.timestamp >= cutoff_ms]
        return before - len(self._aggregates)

    def snapshot(self) -> list[HourlyAggregate]:
        return list(self._aggregates)

    def clear(self) -> None:
        self._aggregates.clear()
