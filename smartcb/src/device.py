"""
Thin HTTP adapter for the breaker's local REST API.

- ``fetch_status()`` GETs ``/api/status`` and returns the raw JSON mapping
  for the engine to sanitize. Consecutive failures back off exponentially
  (capped at MAX_BACKOFF_S) and return ``None``.
- ``request_relay_on()`` POSTs ``{"state": true}`` to ``/api/relay`` and
  returns the device's ``success`` flag. Any error returns False. The
  reconnection scheduler treats the answer as advisory only.

The device stamps readings with its uptime counter rather than wall-clock
time, so the adapter drops the device's timestamp and lets the engine's
clock stamp each reading on arrival.

CHANGELOG:
- 2026-10-11: Initial creation (STORY-016)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_BACKOFF_S: float = 1.0
"""Initial backoff delay in seconds after the first failed status fetch."""

MAX_BACKOFF_S: float = 30.0
"""Maximum backoff delay in seconds (cap for exponential growth)."""

REQUEST_TIMEOUT_S: float = 3.0
"""Timeout per HTTP request to the device."""


class DeviceClient:
    """HTTP client for one breaker, with exponential backoff on status polls.

    Args:
        base_url: Device base URL, e.g. ``http://192.168.4.1``.

    Raises:
        ValueError: If *base_url* is not an http(s) URL.
    """

    def __init__(self, base_url: str) -> None:
        if not base_url.lower().startswith(("http://", "https://")):
            raise ValueError(f"Device URL must be http(s) (got: '{base_url}').")
        self._base_url = base_url.rstrip("/")
        self._consecutive_failures: int = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def fetch_status(self) -> dict[str, Any] | None:
        """Fetch the current electrical status.

        Returns:
            The raw status mapping without its device timestamp, or ``None``
            on any error.
        """
        if self._consecutive_failures > 0:
            delay = min(
                BASE_BACKOFF_S * (2 ** (self._consecutive_failures - 1)),
                MAX_BACKOFF_S,
            )
            logger.warning(
                "Backoff: sleeping %.1fs before retry (consecutive failures: %d)",
                delay,
                self._consecutive_failures,
            )
            await asyncio.sleep(delay)

        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S) as client:
                response = await client.get(f"{self._base_url}/api/status")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Status fetch from %s failed: %s", self._base_url, exc)
            self._consecutive_failures += 1
            return None

        if not isinstance(data, dict):
            logger.warning("Status from %s is not a JSON object", self._base_url)
            self._consecutive_failures += 1
            return None

        self._consecutive_failures = 0
        data.pop("timestamp", None)
        return data

    async def request_relay_on(self) -> bool:
        """Ask the device to close the relay.

        Returns:
            True if the device acknowledged the command, False otherwise.
        """
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S) as client:
                response = await client.post(
                    f"{self._base_url}/api/relay",
                    json={"state": True},
                )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Relay ON request to %s failed: %s", self._base_url, exc)
            return False

        return isinstance(result, dict) and result.get("success") is True
