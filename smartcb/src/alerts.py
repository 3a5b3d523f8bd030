"""
HTTPS webhook alert sink for newly detected events.

Posts each event as JSON to a webhook with Bearer token authentication.
Delivery is fire-and-forget from the engine's point of view: network errors
and non-2xx responses are logged and never raised. Repeats of the same event
type within a cooldown window (30 s by default) are suppressed so a reading
stuck above a limit does not flood the receiver; the event log itself keeps
every occurrence.

The webhook URL must use HTTPS; ``http://`` URLs are rejected at
construction time. TLS certificate verification is always enabled.

CHANGELOG:
- 2026-10-11: Add per-type cooldown (STORY-015)
- 2026-10-10: Initial creation (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import logging

import httpx

from smartcb.src.interfaces import Clock, SystemClock
from smartcb.src.models import Event, EventType

logger = logging.getLogger(__name__)

_DEFAULT_COOLDOWN_S = 30.0
_TIMEOUT_S = 10.0


class WebhookAlertSink:
    """Delivers events to an HTTPS webhook.

    Args:
        url: Webhook endpoint. Must start with ``https://``.
        token: Bearer token sent in the Authorization header, if any.
        cooldown_s: Minimum seconds between two deliveries of the same
            event type.
        clock: Time source for the cooldown.

    Raises:
        ValueError: If *url* does not start with ``https://``.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        cooldown_s: float = _DEFAULT_COOLDOWN_S,
        clock: Clock | None = None,
    ) -> None:
        if not url.lower().startswith("https://"):
            raise ValueError(f"Alert webhook URL must use HTTPS (got: '{url}').")
        self._url = url
        self._token = token
        self._cooldown_ms = int(cooldown_s * 1000)
        self._clock = clock or SystemClock()
        self._last_sent: dict[EventType, int] = {}

    def _on_cooldown(self, event: Event) -> bool:
        now = self._clock.now_ms()
        last = self._last_sent.get(event.type)
        if last is not None and now - last < self._cooldown_ms:
            return True
        self._last_sent[event.type] = now
        return False

    async def notify(self, event: Event) -> None:
        """POST *event* to the webhook unless its type is cooling down."""
        if self._on_cooldown(event):
            logger.debug("Alert %s on cooldown, skipping", event.type)
            return

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            async with httpx.AsyncClient(verify=True, timeout=_TIMEOUT_S) as client:
                response = await client.post(
                    self._url,
                    json=event.model_dump(mode="json"),
                    headers=headers,
                )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning("Alert delivery failed (network error): %s", exc)
            return

        if response.status_code >= 300:
            logger.warning(
                "Alert delivery failed (HTTP %d) for event %s",
                response.status_code,
                event.id,
            )
            return

        logger.info("Alert delivered: %s", event.id)
