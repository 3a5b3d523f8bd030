"""
Debounced save/load of the history collections to a key-value blob store.

Each collection is stored under its own key as a JSON array:

- ``smartcb:recent_readings``   -> list[Reading]
- ``smartcb:hourly_aggregates`` -> list[HourlyAggregate]
- ``smartcb:events``            -> list[Event]

Saving is debounced by the caller through ``is_save_due`` (at most once per
SAVE_INTERVAL_MS); ``save`` itself writes unconditionally, which is also used
right after an hourly rollup. Save failures are logged and swallowed; the
in-memory state stays authoritative and the next save retries.

Loading validates every record on its own. Records that fail validation or
carry an implausible timestamp (in the future, or more than a year old) are
dropped individually rather than failing the whole load. The energy
correction pass is then re-run, because an older process may have
persisted uncorrected values.

CHANGELOG:
- 2026-10-09: Persist the event log alongside history (STORY-011)
- 2026-10-08: Re-run energy normalization after load (STORY-007)
- 2026-10-07: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from smartcb.src.interfaces import BlobStore
from smartcb.src.models import Event, HourlyAggregate, Reading
from smartcb.src.normalizer import normalize_hourly_series, normalize_recent_series

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RECENT_KEY: str = "smartcb:recent_readings"
HOURLY_KEY: str = "smartcb:hourly_aggregates"
EVENTS_KEY: str = "smartcb:events"

SAVE_INTERVAL_MS: int = 5 * 60 * 1000
"""Minimum spacing between debounced saves."""

MAX_RECORD_AGE_MS: int = 365 * 24 * 60 * 60 * 1000
"""Persisted records older than this are treated as corrupt."""

_READINGS = TypeAdapter(list[Reading])
_AGGREGATES = TypeAdapter(list[HourlyAggregate])
_EVENTS = TypeAdapter(list[Event])

_RecordT = TypeVar("_RecordT", Reading, HourlyAggregate, Event)


@dataclass
class LoadedHistory:
    """Result of :meth:`PersistenceGateway.load`.

    Attributes:
        readings: Normalized recent readings, ascending.
        aggregates: Corrected hourly aggregates, ascending.
        events: Events as stored (newest first).
        dropped: Number of records discarded as corrupt or implausible.
    """

    readings: list[Reading] = field(default_factory=list)
    aggregates: list[HourlyAggregate] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    dropped: int = 0


class PersistenceGateway:
    """Serializes history collections into a :class:`BlobStore`.

    Args:
        store: The durable key-value store.
        save_interval_ms: Debounce interval for :meth:`is_save_due`.
    """

    def __init__(self, store: BlobStore, *, save_interval_ms: int = SAVE_INTERVAL_MS) -> None:
        self._store = store
        self._save_interval_ms = save_interval_ms
        self._last_save_ms: int | None = None

    @property
    def last_save_ms(self) -> int | None:
        """Time of the last save attempt, or None before the first one."""
        return self._last_save_ms

    def is_save_due(self, now_ms: int) -> bool:
        return self._last_save_ms is None or now_ms - self._last_save_ms >= self._save_interval_ms

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save(
        self,
        now_ms: int,
        *,
        readings: Sequence[Reading],
        aggregates: Sequence[HourlyAggregate],
        events: Sequence[Event],
    ) -> bool:
        """Write all three collections.

        The attempt time is recorded even on failure so a broken store is
        retried once per interval rather than on every reading.

        Returns:
            True if every write succeeded, False otherwise.
        """
        self._last_save_ms = now_ms
        # Serialize before the first await so the snapshot is consistent.
        payloads = {
            RECENT_KEY: _READINGS.dump_json(list(readings)),
            HOURLY_KEY: _AGGREGATES.dump_json(list(aggregates)),
            EVENTS_KEY: _EVENTS.dump_json(list(events)),
        }
        try:
            for key, payload in payloads.items():
                await self._store.set(key, payload)
        except Exception:
            logger.error("Failed to save history", exc_info=True)
            return False

        logger.info(
            "Saved history: %d recent, %d hourly, %d events",
            len(readings),
            len(aggregates),
            len(events),
        )
        return True

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self, now_ms: int) -> LoadedHistory:
        """Read, validate and normalize all persisted collections.

        Never raises: an unreadable or undecodable blob yields an empty
        collection and a logged warning.
        """
        readings, dropped_readings = await self._load_records(RECENT_KEY, Reading, now_ms)
        aggregates, dropped_hourly = await self._load_records(HOURLY_KEY, HourlyAggregate, now_ms)
        events, dropped_events = await self._load_records(EVENTS_KEY, Event, now_ms)

        dropped = dropped_readings + dropped_hourly + dropped_events
        if dropped:
            logger.warning(
                "Cleaned corrupt data: %d recent, %d hourly, %d events",
                dropped_readings,
                dropped_hourly,
                dropped_events,
            )

        history = LoadedHistory(
            readings=normalize_recent_series(readings),
            aggregates=normalize_hourly_series(aggregates),
            events=events,
            dropped=dropped,
        )
        logger.info(
            "Loaded history: %d recent, %d hourly, %d events",
            len(history.readings),
            len(history.aggregates),
            len(history.events),
        )
        return history

    async def _load_records(
        self,
        key: str,
        model: type[_RecordT],
        now_ms: int,
    ) -> tuple[list[_RecordT], int]:
        try:
            blob = await self._store.get(key)
        except Exception:
            logger.warning("Failed to read '%s' from store", key, exc_info=True)
            return [], 0

        if blob is None:
            return [], 0

        try:
            items = json.loads(blob)
        except ValueError:
            logger.warning("Discarding undecodable blob under '%s'", key)
            return [], 0

        if not isinstance(items, list):
            logger.warning("Discarding '%s': expected a JSON array", key)
            return [], 0

        oldest_ms = now_ms - MAX_RECORD_AGE_MS
        records: list[_RecordT] = []
        dropped = 0
        for item in items:
            try:
                record = model.model_validate(item)
            except ValidationError:
                dropped += 1
                continue
            if not _is_plausible(record, oldest_ms, now_ms):
                dropped += 1
                continue
            records.append(record)

        return records, dropped

    async def clear(self) -> None:
        """Delete every persisted collection (best effort)."""
        for key in (RECENT_KEY, HOURLY_KEY, EVENTS_KEY):
            try:
                await self._store.delete(key)
            except Exception:
                logger.warning("Failed to delete '%s' from store", key, exc_info=True)


def _is_plausible(record: BaseModel, oldest_ms: int, now_ms: int) -> bool:
    timestamp = getattr(record, "timestamp", 0)
    return oldest_ms < timestamp <= now_ms
