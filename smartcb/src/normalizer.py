"""
Pure normalizer for breaker readings and hourly energy deltas.

Two jobs:

1. ``sanitize_reading`` turns a raw status mapping (as delivered by the
   device or a test) into a :class:`Reading`, coercing missing or non-finite
   numbers to 0 and accepting both the device's camelCase keys and
   snake_case.
2. ``normalize_energy`` / ``correct_aggregate`` repair the cumulative energy
   counter. The breaker's meter sometimes stalls or under-reports while
   power is clearly flowing; when the reported increase is below 10% of the
   power integral the integral wins.

All functions are pure: no I/O, no clock. The caller supplies ``now_ms``
where a fallback timestamp is needed.

CHANGELOG:
- 2026-10-08: Apply the same correction to hourly aggregates after load (STORY-007)
- 2026-10-06: Cap the power-integral window at 12 hours (STORY-004)
- 2026-10-05: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from typing import Any

from smartcb.src.models import EnergySource, HourlyAggregate, Reading

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ONE_HOUR_MS: int = 60 * 60 * 1000

MAX_DELTA_WINDOW_MS: int = 12 * ONE_HOUR_MS
"""Gaps longer than this between readings are not integrated."""

ENERGY_MIN_EXPECTED_DELTA_KWH: float = 0.00005
"""Expected per-reading increase (0.05 Wh) below which nothing is corrected."""

AGGREGATE_MIN_EXPECTED_KWH: float = 0.05
"""Expected hourly energy (50 Wh) below which an aggregate is left alone."""

ENERGY_LOW_RATIO_THRESHOLD: float = 0.1
"""Reported energy under this fraction of the expected value is distrusted."""

# Maps Reading field name -> accepted raw keys, in lookup order.
_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "voltage": ("voltage",),
    "current": ("current",),
    "power": ("power",),
    "energy": ("energy",),
    "frequency": ("frequency",),
    "power_factor": ("power_factor", "powerFactor"),
    "apparent_power": ("apparent_power", "apparentPower"),
    "reactive_power": ("reactive_power", "reactivePower"),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _finite(value: Any) -> float:
    """Return *value* as a finite float, or 0.0 for anything else."""
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _lookup(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def hour_start(timestamp_ms: int) -> int:
    """Floor an epoch-millisecond timestamp to the start of its UTC hour."""
    return timestamp_ms - (timestamp_ms % ONE_HOUR_MS)


# ---------------------------------------------------------------------------
# Raw input
# ---------------------------------------------------------------------------


def sanitize_reading(raw: Mapping[str, Any] | Reading, *, now_ms: int) -> Reading:
    """Build a :class:`Reading` from a raw status mapping.

    Numeric fields that are missing, non-numeric, NaN or infinite become 0.
    The timestamp falls back to *now_ms* when absent or not positive.
    Malformed input is never raised to the caller.

    Args:
        raw: Device status mapping, or an already-built Reading.
        now_ms: Fallback timestamp in epoch milliseconds.

    Returns:
        A sanitized Reading (energy not yet corrected).
    """
    if isinstance(raw, Reading):
        raw = raw.model_dump()
    elif not isinstance(raw, Mapping):
        raw = {}

    fields = {name: _finite(_lookup(raw, keys)) for name, keys in _FIELD_KEYS.items()}

    ts = _finite(raw.get("timestamp"))
    timestamp = int(ts) if ts > 0 else now_ms

    relay = _lookup(raw, ("relay_state", "relayState"))

    return Reading(timestamp=timestamp, relay_state=bool(relay), **fields)


# ---------------------------------------------------------------------------
# Per-reading energy correction
# ---------------------------------------------------------------------------


def expected_energy_delta(previous: Reading, current: Reading) -> float:
    """Energy in kWh implied by the average power between two readings.

    Returns 0 when the elapsed time is non-positive or longer than
    :data:`MAX_DELTA_WINDOW_MS`, or when the average power is not positive.
    """
    elapsed_ms = current.timestamp - previous.timestamp
    if elapsed_ms <= 0 or elapsed_ms > MAX_DELTA_WINDOW_MS:
        return 0.0

    avg_power = (_finite(previous.power) + _finite(current.power)) / 2
    if avg_power <= 0:
        return 0.0

    return (avg_power / 1000) * (elapsed_ms / ONE_HOUR_MS)


def normalize_energy(reading: Reading, previous: Reading | None = None) -> Reading:
    """Return *reading* with a trustworthy cumulative energy value.

    - Energy is clamped to be non-negative.
    - If it did not increase over *previous*, it is held at the previous
      value (a drop is never propagated, nothing is invented).
    - If it increased by less than 10% of the power integral, and the
      integral is significant, it becomes ``previous.energy + expected``.

    Args:
        reading: The sanitized reading to correct.
        previous: The last accepted (already normalized) reading, if any.

    Returns:
        A new Reading when the energy changed, otherwise *reading* itself.
    """
    energy = max(0.0, _finite(reading.energy))

    if previous is not None:
        energy = _correct_against_previous(energy, reading, previous)

    if energy == reading.energy:
        return reading
    return reading.model_copy(update={"energy": energy})


def _correct_against_previous(energy: float, reading: Reading, previous: Reading) -> float:
    previous_energy = _finite(previous.energy)
    if energy <= previous_energy:
        return previous_energy

    delta = energy - previous_energy
    expected = expected_energy_delta(previous, reading)
    if (
        expected > ENERGY_MIN_EXPECTED_DELTA_KWH
        and delta < expected * ENERGY_LOW_RATIO_THRESHOLD
    ):
        logger.debug(
            "Energy delta %.6f kWh below %.0f%% of expected %.6f kWh, using integral",
            delta,
            ENERGY_LOW_RATIO_THRESHOLD * 100,
            expected,
        )
        return previous_energy + expected
    return energy


def normalize_recent_series(readings: Iterable[Reading]) -> list[Reading]:
    """Sort readings by timestamp and re-run :func:`normalize_energy` in order.

    Each reading is corrected against the already-corrected one before it,
    so a persisted series written by an older process comes back monotonic.
    """
    normalized: list[Reading] = []
    previous: Reading | None = None

    for reading in sorted(readings, key=lambda r: r.timestamp):
        current = normalize_energy(reading, previous)
        normalized.append(current)
        previous = current

    return normalized


# ---------------------------------------------------------------------------
# Hourly energy correction
# ---------------------------------------------------------------------------


def correct_aggregate(aggregate: HourlyAggregate) -> HourlyAggregate:
    """Apply the power-integral sanity check to one hourly aggregate.

    The expected energy for the hour is ``power_avg / 1000`` kWh. A negative
    delta becomes 0. When the expected energy is at least
    :data:`AGGREGATE_MIN_EXPECTED_KWH` and the reported delta is zero or
    below 10% of it, the delta is replaced and tagged ``derived``.
    """
    power_avg = _finite(aggregate.power_avg)
    measured = _finite(aggregate.energy_delta)
    expected = power_avg / 1000 if power_avg > 0 else 0.0

    if measured < 0:
        return aggregate.model_copy(update={"energy_delta": 0.0})

    if expected >= AGGREGATE_MIN_EXPECTED_KWH and (
        measured <= 0 or measured < expected * ENERGY_LOW_RATIO_THRESHOLD
    ):
        return aggregate.model_copy(
            update={"energy_delta": expected, "energy_source": EnergySource.DERIVED}
        )

    if measured != aggregate.energy_delta:
        return aggregate.model_copy(update={"energy_delta": measured})
    return aggregate


def normalize_hourly_series(aggregates: Iterable[HourlyAggregate]) -> list[HourlyAggregate]:
    """Apply :func:`correct_aggregate` to every aggregate, sorted by hour."""
    return [correct_aggregate(a) for a in sorted(aggregates, key=lambda a: a.timestamp)]
