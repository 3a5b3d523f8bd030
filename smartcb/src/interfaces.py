"""
Collaborator interfaces injected into the telemetry engine.

Every dependency the engine has on the outside world goes through one of
these protocols so tests can substitute a manual clock, an in-memory blob
store or an ``AsyncMock`` actuator.

- Clock: wall-clock time in epoch milliseconds and an awaitable sleep.
- ThresholdProvider: fresh ThresholdConfig snapshot per detection pass.
- RelayActuator: "turn relay on" request; the result is advisory only.
- AlertSink: fire-and-forget delivery of new events.
- BlobStore: durable key-value storage of opaque bytes.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from smartcb.src.models import Event, ThresholdConfig


@runtime_checkable
class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Clock backed by ``time.time()`` and ``asyncio.sleep``."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@runtime_checkable
class ThresholdProvider(Protocol):
    def get_thresholds(self) -> ThresholdConfig: ...


@runtime_checkable
class RelayActuator(Protocol):
    async def request_relay_on(self) -> bool: ...


@runtime_checkable
class AlertSink(Protocol):
    async def notify(self, event: Event) -> None: ...


@runtime_checkable
class BlobStore(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...
