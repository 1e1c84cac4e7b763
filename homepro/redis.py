"""Redis connection pool backing the per-user rate-limit buckets."""

from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from homepro.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url, decode_responses=True)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()


async def close_redis() -> None:
    await redis_pool.disconnect()
