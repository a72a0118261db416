"""asyncpg connection pool.

One pool per process, created in the app lifespan and closed on shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("cadence.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=2,
        max_size=20,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=2, max=20)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection inside a transaction.

    Usage::

        async with get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM wearable_connections WHERE user_id = $1", uid)
    """
    async with (pool or get_pool()).acquire() as conn:
        async with conn.transaction():
            yield conn


async def execute(query: str, *args: Any, pool: asyncpg.Pool | None = None) -> str:
    """Execute a single statement and return its status."""
    async with get_connection(pool) as conn:
        return await conn.execute(query, *args)


async def fetch(query: str, *args: Any, pool: asyncpg.Pool | None = None) -> list[asyncpg.Record]:
    async with get_connection(pool) as conn:
        return await conn.fetch(query, *args)


async def fetchrow(
    query: str, *args: Any, pool: asyncpg.Pool | None = None
) -> asyncpg.Record | None:
    async with get_connection(pool) as conn:
        return await conn.fetchrow(query, *args)


async def fetchval(query: str, *args: Any, pool: asyncpg.Pool | None = None) -> Any:
    async with get_connection(pool) as conn:
        return await conn.fetchval(query, *args)
