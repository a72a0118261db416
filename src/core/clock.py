"""Injectable wall clock.

Engines never call ``datetime.now()`` or ``asyncio.sleep()`` directly; they go
through a Clock so tests can drive time deterministically with ``FakeClock``.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone


class Clock:
    """Real clock backed by the system time and the running event loop."""

    def now(self) -> datetime:
        """Return the current UTC instant (timezone-aware)."""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class FakeClock(Clock):
    """Manually advanced clock for tests.

    ``sleep`` parks the caller until ``advance`` moves time past its deadline.

    Usage::

        clock = FakeClock(datetime(2026, 3, 1, tzinfo=timezone.utc))
        await clock.advance(60)   # wakes every sleeper due within the minute
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._sleepers: list[tuple[datetime, int, asyncio.Future]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        deadline = self._now + timedelta(seconds=seconds)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (deadline, next(self._counter), future))
        await future

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in deadline order."""
        target = self._now + timedelta(seconds=seconds)
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not future.done():
                future.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()

    def set(self, instant: datetime) -> None:
        """Jump to an absolute instant without waking sleepers."""
        self._now = instant

    @staticmethod
    async def settle(rounds: int = 10) -> None:
        """Yield to the event loop so woken tasks can run."""
        for _ in range(rounds):
            await asyncio.sleep(0)
