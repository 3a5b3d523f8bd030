"""
Pydantic models for breaker telemetry, hourly rollups, events and thresholds.

Reading, HourlyAggregate and Event are frozen: once a reading has been
normalized and accepted, or an aggregate/event created, it is never mutated.
Corrections produce new instances via ``model_copy(update=...)``.

ThresholdConfig mirrors the settings screen of the mobile app. The engine
only reads it; defaults match the app's factory settings.

CHANGELOG:
- 2026-10-09: Add EventStatistics for the events summary (STORY-011)
- 2026-10-07: Add energy_source tag to HourlyAggregate (STORY-006)
- 2026-10-05: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class Reading(BaseModel):
    """A single point-in-time electrical sample reported by the breaker.

    Attributes:
        timestamp: Sample time in milliseconds since the Unix epoch.
        voltage: RMS voltage in volts.
        current: RMS current in amperes.
        power: Active power in watts.
        energy: Cumulative meter reading in kWh (not a delta).
        frequency: Grid frequency in hertz.
        power_factor: Power factor, 0-1.
        apparent_power: Apparent power in volt-amperes.
        reactive_power: Reactive power in volt-amperes reactive.
        relay_state: True when the breaker relay is closed (load powered).
    """

    model_config = ConfigDict(frozen=True)

    timestamp: int
    voltage: float = 0.0
    current: float = 0.0
    power: float = 0.0
    energy: float = 0.0
    frequency: float = 0.0
    power_factor: float = 0.0
    apparent_power: float = 0.0
    reactive_power: float = 0.0
    relay_state: bool = False


class EnergySource(StrEnum):
    """Whether an hourly energy delta came from the meter or the power integral."""

    SENSOR = "sensor"
    DERIVED = "derived"


class HourlyAggregate(BaseModel):
    """Statistics for one clock hour of readings.

    ``timestamp`` is the hour start in epoch milliseconds and is the unique
    key of the rollup collection.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: int
    voltage_avg: float = 0.0
    voltage_min: float = 0.0
    voltage_max: float = 0.0
    current_avg: float = 0.0
    current_max: float = 0.0
    power_avg: float = 0.0
    power_max: float = 0.0
    energy_delta: float = 0.0
    frequency_avg: float = 0.0
    power_factor_avg: float = 0.0
    apparent_power_avg: float = 0.0
    reactive_power_avg: float = 0.0
    sample_count: int = 0
    energy_source: EnergySource = EnergySource.SENSOR


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventType(StrEnum):
    """Kinds of events kept in the event log."""

    MANUAL_ON = "manual_on"
    MANUAL_OFF = "manual_off"
    AUTO_ON = "auto_on"
    AUTO_OFF = "auto_off"
    OUTAGE = "outage"
    RESTORE = "restore"
    THRESHOLD_BREACH = "threshold_breach"
    OVERVOLTAGE = "overvoltage"
    UNDERVOLTAGE = "undervoltage"
    OVERCURRENT = "overcurrent"
    OVERLOAD = "overload"
    UNDERLOAD = "underload"
    FREQUENCY_MIN = "frequency_min"
    FREQUENCY_MAX = "frequency_max"
    POWER_FACTOR_MIN = "power_factor_min"


class Event(BaseModel):
    """A discrete detected occurrence.

    Attributes:
        id: Identifier of the form ``evt-<timestamp>-<suffix>``.
        type: The kind of event.
        timestamp: Detection time in epoch milliseconds.
        description: Human-readable text with the measured value and limit.
        reading: Snapshot of the reading that triggered the event, if any.
        duration: Outage length in milliseconds (restore events only).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: EventType
    timestamp: int
    description: str
    reading: Reading | None = None
    duration: int | None = None


class EventStatistics(BaseModel):
    """Summary of the last 30 days of events."""

    total_events: int = 0
    total_outages: int = 0
    average_outage_duration_ms: float = 0.0
    total_downtime_ms: int = 0


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


class VoltageThreshold(BaseModel):
    min: float = 200.0
    max: float = 240.0


class CurrentThreshold(BaseModel):
    max: float = 16.0


class FrequencyThreshold(BaseModel):
    min: float = 49.5
    max: float = 50.5
    enabled: bool = True


class PowerFactorThreshold(BaseModel):
    min: float = 0.85
    enabled: bool = True


class ReconnectionSettings(BaseModel):
    """Automatic relay reconnection after a power restore.

    Attributes:
        delay_s: Seconds to wait after the restore before switching on.
        max_attempts: Retries before giving up until the next restore.
        enabled: Master switch for automatic reconnection.
    """

    delay_s: float = Field(default=30.0, ge=0.0)
    max_attempts: int = Field(default=3, ge=0)
    enabled: bool = True


class ThresholdConfig(BaseModel):
    """Snapshot of the user-configured limits, owned by the settings layer."""

    voltage: VoltageThreshold = Field(default_factory=VoltageThreshold)
    current: CurrentThreshold = Field(default_factory=CurrentThreshold)
    frequency: FrequencyThreshold = Field(default_factory=FrequencyThreshold)
    power_factor: PowerFactorThreshold = Field(default_factory=PowerFactorThreshold)
    reconnection: ReconnectionSettings = Field(default_factory=ReconnectionSettings)
