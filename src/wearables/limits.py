"""Per-provider outbound concurrency caps.

One semaphore per provider, shared by the token manager and the sync engine,
so the number of concurrent calls to a provider is bounded no matter how
many users are connected to it.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping

from src.wearables.base import Provider


class ProviderGate:
    """Lazily created ``asyncio.Semaphore`` per provider.

    Args:
        caps:        provider -> max concurrent calls.
        default_cap: Cap for providers missing from ``caps``.
    """

    def __init__(self, caps: Mapping[str, int] | None = None, default_cap: int = 4) -> None:
        if default_cap <= 0:
            raise ValueError("default_cap must be positive")
        self._caps = dict(caps or {})
        self._default = default_cap
        self._semaphores: dict[Provider, asyncio.Semaphore] = {}

    def cap_for(self, provider: Provider) -> int:
        return self._caps.get(provider.value, self._default)

    def semaphore(self, provider: Provider) -> asyncio.Semaphore:
        sem = self._semaphores.get(provider)
        if sem is None:
            sem = asyncio.Semaphore(self.cap_for(provider))
            self._semaphores[provider] = sem
        return sem

    @asynccontextmanager
    async def slot(self, provider: Provider) -> AsyncIterator[None]:
        """Hold one of ``provider``'s call slots for the duration of the block."""
        async with self.semaphore(provider):
            yield
