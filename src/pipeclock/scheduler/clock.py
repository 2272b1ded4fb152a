"""
scheduler/clock.py — Injectable time source

The scheduler never reads the system clock directly. It asks a Clock for
"now" and for "sleep until the next tick", so tests can drive simulated
time while the event loop keeps running in real time.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller between ticks."""
        ...


class SystemClock:
    """Wall clock + asyncio.sleep. Production wiring."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """
    Clock whose "now" only moves when told to.

    sleep() still yields to the event loop for a short real interval
    (capped by real_sleep_cap) so background tasks make progress, but it
    never moves simulated time.
    """

    def __init__(self, start: datetime | None = None, real_sleep_cap: float = 0.005) -> None:
        start = start or datetime(2023, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._real_sleep_cap = real_sleep_cap

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        if delta < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now = self._now + delta
        return self._now

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self._now = when

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(min(max(seconds, 0.0), self._real_sleep_cap))
