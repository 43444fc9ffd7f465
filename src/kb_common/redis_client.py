"""Redis connection pool for the buyer-endpoint rate limiter.

Nothing money-related lives here: holds, balances and payout jobs are all in
PostgreSQL. The limiter fails open, so the pool uses short socket timeouts to
keep a Redis outage from stalling confirm/reject requests.
"""

import redis.asyncio as aioredis

from config.settings import settings

_SOCKET_TIMEOUT_SECONDS = 0.5

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=_SOCKET_TIMEOUT_SECONDS,
            socket_timeout=_SOCKET_TIMEOUT_SECONDS,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
