"""Redis async connection pool (optional; enabled by ``REDIS_URL``)."""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis

from ride_dispatch.config import settings

_pools: dict[str, aioredis.ConnectionPool] = {}


async def get_redis(url: Optional[str] = None) -> Optional[aioredis.Redis]:
    """Return a client on the shared pool for *url*, or ``None`` when Redis is not configured."""
    url = url if url is not None else settings.redis_url
    if not url:
        return None
    pool = _pools.get(url)
    if pool is None:
        pool = _pools[url] = aioredis.ConnectionPool.from_url(url, decode_responses=True)
    return aioredis.Redis(connection_pool=pool)


async def close_pools() -> None:
    for pool in _pools.values():
        await pool.disconnect()
    _pools.clear()
