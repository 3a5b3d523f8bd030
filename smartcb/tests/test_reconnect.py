"""
Tests for the reconnection scheduler.

Time is driven by ManualClock, so timers fire only when a test advances the
clock. Verifies the idle -> pending -> verifying cycle, bounded retries,
the single timer slot, cancellation on outage, and that a cancel or re-arm
while the actuator call is in flight is not overridden by the stale fire.

CHANGELOG:
- 2026-10-19: Cover aclose during an in-flight relay request (STORY-013)
- 2026-10-10: Cover cancel during the actuator await (STORY-013)
- 2026-10-09: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import ManualClock
from smartcb.src.models import ReconnectionSettings, ThresholdConfig
from smartcb.src.reconnect import ReconnectionScheduler, ReconnectState
from smartcb.src.thresholds import StaticThresholdProvider


class _Relay:
    """Mutable relay state observed by the scheduler."""

    def __init__(self, on: bool = False) -> None:
        self.on = on

    def __call__(self) -> bool:
        return self.on


def _make_scheduler(
    clock: ManualClock,
    *,
    relay: _Relay | None = None,
    delay_s: float = 30,
    max_attempts: int = 3,
    enabled: bool = True,
    actuator: AsyncMock | None = None,
) -> tuple[ReconnectionScheduler, AsyncMock, _Relay, MagicMock, StaticThresholdProvider]:
    relay = relay or _Relay()
    if actuator is None:
        actuator = AsyncMock()
        actuator.request_relay_on = AsyncMock(return_value=True)
    on_reconnected = MagicMock()
    thresholds = StaticThresholdProvider(
        ThresholdConfig(
            reconnection=ReconnectionSettings(
                delay_s=delay_s, max_attempts=max_attempts, enabled=enabled
            )
        )
    )
    scheduler = ReconnectionScheduler(
        clock=clock,
        actuator=actuator,
        thresholds=thresholds,
        relay_state=relay,
        on_reconnected=on_reconnected,
    )
    return scheduler, actuator, relay, on_reconnected, thresholds


class TestArm:
    @pytest.mark.asyncio
    async def test_arm_starts_pending_timer(self, clock: ManualClock) -> None:
        scheduler, actuator, *_ = _make_scheduler(clock)

        assert scheduler.arm() is True
        await clock.advance(0)

        assert scheduler.state is ReconnectState.PENDING
        assert scheduler.has_pending_timer
        assert clock.sleep_calls == [30]
        actuator.request_relay_on.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_happens_before_delay(self, clock: ManualClock) -> None:
        scheduler, actuator, *_ = _make_scheduler(clock)
        scheduler.arm()

        await clock.advance(29.9)

        actuator.request_relay_on.assert_not_awaited()
        assert scheduler.state is ReconnectState.PENDING

    @pytest.mark.asyncio
    async def test_rearm_keeps_single_timer(self, clock: ManualClock) -> None:
        scheduler, actuator, *_ = _make_scheduler(clock)
        scheduler.arm()
        await clock.advance(10)
        scheduler.arm()

        await clock.advance(0)
        assert clock.pending_sleepers == 1

        # The first timer would have fired at t=30; the restarted one at t=40.
        await clock.advance(25)
        actuator.request_relay_on.assert_not_awaited()
        await clock.advance(5)
        actuator.request_relay_on.assert_awaited_once()


class TestSuccessfulReconnect:
    @pytest.mark.asyncio
    async def test_request_then_verify(self, clock: ManualClock) -> None:
        scheduler, actuator, relay, on_reconnected, _ = _make_scheduler(clock)
        scheduler.arm()

        await clock.advance(30)
        actuator.request_relay_on.assert_awaited_once()
        assert scheduler.state is ReconnectState.VERIFYING

        relay.on = True
        await clock.advance(2)

        assert scheduler.state is ReconnectState.IDLE
        assert scheduler.attempts == 0
        assert not scheduler.has_pending_timer
        on_reconnected.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_relay_already_on_skips_request(self, clock: ManualClock) -> None:
        scheduler, actuator, relay, on_reconnected, _ = _make_scheduler(clock)
        scheduler.arm()
        relay.on = True

        await clock.advance(30)

        actuator.request_relay_on.assert_not_awaited()
        on_reconnected.assert_not_called()
        assert scheduler.state is ReconnectState.IDLE


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_bounded_by_max_attempts(self, clock: ManualClock) -> None:
        scheduler, actuator, _, on_reconnected, _ = _make_scheduler(clock, max_attempts=3)
        scheduler.arm()

        await clock.advance(500)

        assert actuator.request_relay_on.await_count == 3
        assert scheduler.state is ReconnectState.IDLE
        assert scheduler.attempts == 0
        assert not scheduler.has_pending_timer
        on_reconnected.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_attempt_succeeds(self, clock: ManualClock) -> None:
        scheduler, actuator, relay, on_reconnected, _ = _make_scheduler(clock)
        scheduler.arm()

        await clock.advance(32)
        assert scheduler.attempts == 1
        assert scheduler.state is ReconnectState.PENDING

        await clock.advance(30)
        relay.on = True
        await clock.advance(2)

        assert actuator.request_relay_on.await_count == 2
        on_reconnected.assert_called_once_with(2)

    @pytest.mark.asyncio
    async def test_zero_max_attempts_never_schedules(self, clock: ManualClock) -> None:
        scheduler, actuator, *_ = _make_scheduler(clock, max_attempts=0)

        assert scheduler.arm() is False
        await clock.advance(100)

        actuator.request_relay_on.assert_not_awaited()
        assert scheduler.state is ReconnectState.IDLE

    @pytest.mark.asyncio
    async def test_unacknowledged_request_still_verifies(self, clock: ManualClock) -> None:
        actuator = AsyncMock()
        actuator.request_relay_on = AsyncMock(return_value=False)
        scheduler, _, relay, on_reconnected, _ = _make_scheduler(clock, actuator=actuator)
        scheduler.arm()

        await clock.advance(30)
        relay.on = True
        await clock.advance(2)

        on_reconnected.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_actuator_error_is_not_fatal(self, clock: ManualClock) -> None:
        actuator = AsyncMock()
        actuator.request_relay_on = AsyncMock(side_effect=ConnectionError("boom"))
        scheduler, *_ = _make_scheduler(clock, actuator=actuator)
        scheduler.arm()

        await clock.advance(30)

        assert scheduler.state is ReconnectState.VERIFYING


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_while_pending(self, clock: ManualClock) -> None:
        scheduler, actuator, *_ = _make_scheduler(clock)
        scheduler.arm()
        await clock.advance(10)

        scheduler.cancel()
        await clock.advance(100)

        actuator.request_relay_on.assert_not_awaited()
        assert scheduler.state is ReconnectState.IDLE
        assert not scheduler.has_pending_timer

    @pytest.mark.asyncio
    async def test_cancel_resets_attempts(self, clock: ManualClock) -> None:
        scheduler, *_ = _make_scheduler(clock)
        scheduler.arm()
        await clock.advance(32)
        assert scheduler.attempts == 1

        scheduler.cancel()
        assert scheduler.attempts == 0

    @pytest.mark.asyncio
    async def test_cancel_during_actuator_call_wins(self, clock: ManualClock) -> None:
        actuator = AsyncMock()
        scheduler, *_ = _make_scheduler(clock, actuator=actuator)

        async def _request_and_cancel() -> bool:
            scheduler.cancel()
            return True

        actuator.request_relay_on = AsyncMock(side_effect=_request_and_cancel)
        scheduler.arm()

        await clock.advance(30)

        assert scheduler.state is ReconnectState.IDLE
        assert not scheduler.has_pending_timer
        await clock.advance(10)
        assert clock.sleep_calls == [30]

    @pytest.mark.asyncio
    async def test_disabled_after_arming_drops_request(self, clock: ManualClock) -> None:
        scheduler, actuator, _, _, thresholds = _make_scheduler(clock)
        scheduler.arm()
        thresholds.config = ThresholdConfig(
            reconnection=ReconnectionSettings(enabled=False),
        )

        await clock.advance(30)

        actuator.request_relay_on.assert_not_awaited()
        assert scheduler.state is ReconnectState.IDLE

    @pytest.mark.asyncio
    async def test_aclose_cancels_timer(self, clock: ManualClock) -> None:
        scheduler, actuator, *_ = _make_scheduler(clock)
        scheduler.arm()
        await clock.advance(1)

        await scheduler.aclose()
        await clock.advance(60)

        actuator.request_relay_on.assert_not_awaited()
        assert clock.pending_sleepers == 0

    @pytest.mark.asyncio
    async def test_aclose_waits_for_inflight_request(self, clock: ManualClock) -> None:
        release = asyncio.Event()

        async def _slow_request() -> bool:
            await release.wait()
            return True

        actuator = AsyncMock()
        actuator.request_relay_on = AsyncMock(side_effect=_slow_request)
        scheduler, *_ = _make_scheduler(clock, actuator=actuator)
        scheduler.arm()
        await clock.advance(30)
        actuator.request_relay_on.assert_called_once()

        closing = asyncio.create_task(scheduler.aclose())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not closing.done()

        release.set()
        await closing

        assert scheduler.state is ReconnectState.IDLE
        assert not scheduler.has_pending_timer
        assert clock.pending_sleepers == 0
        # The stale request does not open a verification window.
        assert clock.sleep_calls == [30]
