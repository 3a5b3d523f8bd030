"""
Automatic relay reconnection after a power restore.

A small explicit state machine with a single timer slot:

    IDLE --arm()--> PENDING --timer--> VERIFYING --timer--> IDLE
                       ^                    |
                       +---- retry ---------+  (relay still off)

- ``arm()`` cancels any outstanding timer first, then waits ``delay_s``
  (read fresh from the ThresholdProvider). Once ``attempts`` has reached
  ``max_attempts`` it resets the counter and stays idle instead.
- When the delay fires, the relay state is re-observed. Already on: done.
  Still off: a "relay on" request goes to the actuator, then a fixed 2 s
  verification window starts.
- After verification: relay on -> done; still off -> ``attempts += 1`` and
  arm again.
- ``cancel()`` (on outage) clears the timer and resets ``attempts``.

The actuator's return value is not trusted; success is only inferred from
the relay state observed in later readings.

CHANGELOG:
- 2026-10-19: Await an in-flight transition on aclose (STORY-013)
- 2026-10-10: Guard against cancel/re-arm while the actuator call is awaited (STORY-013)
- 2026-10-09: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import StrEnum

from smartcb.src.interfaces import Clock, RelayActuator, ThresholdProvider

logger = logging.getLogger(__name__)

VERIFY_DELAY_S: float = 2.0
"""Seconds to wait after a relay-on request before checking the result."""


class ReconnectState(StrEnum):
    IDLE = "idle"
    PENDING = "pending"
    VERIFYING = "verifying"


class ReconnectionScheduler:
    """Single-slot, bounded-retry reconnection scheduler.

    Args:
        clock: Provides the awaitable sleep used for timers.
        actuator: Receives "turn relay on" requests.
        thresholds: Supplies ``reconnection`` settings on every arm.
        relay_state: Returns the relay state from the latest reading.
        on_reconnected: Called with the attempt number once a requested
            reconnection is confirmed.
        verify_delay_s: Verification window after each request.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        actuator: RelayActuator,
        thresholds: ThresholdProvider,
        relay_state: Callable[[], bool],
        on_reconnected: Callable[[int], None] | None = None,
        verify_delay_s: float = VERIFY_DELAY_S,
    ) -> None:
        self._clock = clock
        self._actuator = actuator
        self._thresholds = thresholds
        self._relay_state = relay_state
        self._on_reconnected = on_reconnected
        self._verify_delay_s = verify_delay_s

        self._state = ReconnectState.IDLE
        self._attempts = 0
        self._timer: asyncio.Task[None] | None = None
        # Task running a transition after its delay elapsed (may await the actuator).
        self._transition: asyncio.Task[None] | None = None
        # Bumped on every arm/cancel so a fire that was overtaken while
        # awaiting the actuator does not act on stale state.
        self._generation = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ReconnectState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def arm(self) -> bool:
        """Start (or restart) the reconnection delay.

        Must be called from within a running event loop.

        Returns:
            True if a timer was started, False if the attempt budget was
            exhausted and the scheduler gave up.
        """
        self._cancel_timer()
        settings = self._thresholds.get_thresholds().reconnection

        if self._attempts >= settings.max_attempts:
            logger.warning(
                "Auto-reconnect: max attempts (%d) reached, giving up",
                settings.max_attempts,
            )
            self._attempts = 0
            self._state = ReconnectState.IDLE
            return False

        self._state = ReconnectState.PENDING
        self._start_timer(settings.delay_s)
        logger.info(
            "Auto-reconnect: scheduled in %.1fs (attempt %d/%d)",
            settings.delay_s,
            self._attempts + 1,
            settings.max_attempts,
        )
        return True

    def cancel(self) -> None:
        """Drop any pending reconnection and reset the attempt counter."""
        was_active = self._state is not ReconnectState.IDLE or self.has_pending_timer
        self._cancel_timer()
        self._attempts = 0
        self._state = ReconnectState.IDLE
        if was_active:
            logger.info("Auto-reconnect: cancelled")

    async def on_timer_fire(self) -> None:
        """Advance the state machine after the current timer elapsed."""
        if self._state is ReconnectState.PENDING:
            await self._fire_pending()
        elif self._state is ReconnectState.VERIFYING:
            self._fire_verifying()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _fire_pending(self) -> None:
        if self._relay_state():
            logger.info("Auto-reconnect: relay already ON, nothing to do")
            self._reset()
            return

        if not self._thresholds.get_thresholds().reconnection.enabled:
            logger.info("Auto-reconnect: disabled since scheduling, dropping")
            self._reset()
            return

        generation = self._generation
        logger.info("Auto-reconnect: requesting relay ON (attempt %d)", self._attempts + 1)
        try:
            accepted = await self._actuator.request_relay_on()
        except Exception:
            logger.warning("Auto-reconnect: relay ON request failed", exc_info=True)
            accepted = False

        if generation != self._generation:
            return
        if not accepted:
            logger.warning("Auto-reconnect: device did not acknowledge relay ON request")

        self._state = ReconnectState.VERIFYING
        self._start_timer(self._verify_delay_s)

    def _fire_verifying(self) -> None:
        if self._relay_state():
            attempt = self._attempts + 1
            logger.info("Auto-reconnect: relay confirmed ON (attempt %d)", attempt)
            self._reset()
            if self._on_reconnected is not None:
                self._on_reconnected(attempt)
            return

        self._attempts += 1
        logger.warning(
            "Auto-reconnect: relay still OFF after attempt %d, retrying",
            self._attempts,
        )
        self.arm()

    def _reset(self) -> None:
        self._attempts = 0
        self._state = ReconnectState.IDLE

    # ------------------------------------------------------------------
    # Timer slot
    # ------------------------------------------------------------------

    def _start_timer(self, delay_s: float) -> None:
        self._generation += 1
        self._timer = asyncio.get_running_loop().create_task(self._run_timer(delay_s))

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run_timer(self, delay_s: float) -> None:
        await self._clock.sleep(delay_s)
        # The slot is free once the delay elapsed; the transition may re-arm.
        self._timer = None
        task = asyncio.current_task()
        self._transition = task
        try:
            await self.on_timer_fire()
        except Exception:
            logger.error("Auto-reconnect: timer transition failed", exc_info=True)
        finally:
            if self._transition is task:
                self._transition = None

    async def aclose(self) -> None:
        """Cancel the timer and wait for any in-flight transition to finish.

        A transition already awaiting the actuator is not interrupted; the
        cancel makes it drop its result once the request returns.
        """
        timer = self._timer
        transition = self._transition
        self.cancel()
        if timer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await timer
        if transition is not None and transition is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await transition
