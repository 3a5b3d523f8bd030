"""
ThresholdConfig providers.

The engine asks for a fresh snapshot on every detection pass, so a change to
the limits takes effect on the next reading and never retroactively.

- StaticThresholdProvider: a fixed snapshot (tests, defaults).
- JsonFileThresholdProvider: re-reads a JSON file on every call. A missing,
  unreadable or invalid file falls back to the last good snapshot (or the
  defaults), with a warning logged once per distinct failure.

CHANGELOG:
- 2026-10-10: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from smartcb.src.models import ThresholdConfig

logger = logging.getLogger(__name__)


class StaticThresholdProvider:
    """Returns the ThresholdConfig held in ``config``; assign it to change limits."""

    def __init__(self, config: ThresholdConfig | None = None) -> None:
        self.config = config or ThresholdConfig()

    def get_thresholds(self) -> ThresholdConfig:
        return self.config


class JsonFileThresholdProvider:
    """Reads ThresholdConfig from a JSON file each time it is asked.

    Args:
        path: JSON file written by the settings layer. Accepts str or Path.
        default: Snapshot used until the file has been read successfully.
    """

    def __init__(self, path: str | Path, default: ThresholdConfig | None = None) -> None:
        self.path = Path(path)
        self._last_good = default or ThresholdConfig()
        self._last_error: str | None = None

    def get_thresholds(self) -> ThresholdConfig:
        try:
            config = ThresholdConfig.model_validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as exc:
            message = f"{type(exc).__name__}: {exc}"
            if message != self._last_error:
                logger.warning(
                    "Cannot read thresholds from %s, keeping previous config (%s)",
                    self.path,
                    type(exc).__name__,
                )
                self._last_error = message
            return self._last_good

        self._last_error = None
        self._last_good = config
        return config
