"""Rate limiting for the buyer confirmation endpoints.

Buyers authenticate with a short confirmation code, so the confirm and reject
endpoints are the brute-force surface. Fixed window per client IP:

    count = INCR ratelimit:<ip>:confirm
    if count == 1: EXPIRE key 60
    if count > limit: 429 with Retry-After

Other paths pass straight through. If Redis is unreachable the request is
allowed and a warning is logged.
"""

import logging
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from config.settings import settings
from src.kb_common.errors import RateLimitError
from src.kb_common.redis_client import get_redis
from src.kb_common.response import error_response

logger = logging.getLogger("kb.request")

WINDOW_SECONDS = 60
LIMITED_PATHS = frozenset({"/api/v1/escrow/confirm", "/api/v1/escrow/reject"})


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop when behind the reverse proxy, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        limit: int | None = None,
        redis_factory: Callable[[], Awaitable[aioredis.Redis]] = get_redis,
    ) -> None:
        super().__init__(app)
        self._limit = limit if limit is not None else settings.CONFIRM_RATE_LIMIT_PER_MINUTE
        self._redis_factory = redis_factory

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method != "POST" or request.url.path not in LIMITED_PATHS:
            return await call_next(request)

        key = f"ratelimit:{client_ip(request)}:confirm"
        try:
            redis = await self._redis_factory()
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, WINDOW_SECONDS)
        except RedisError as exc:
            logger.warning("Rate limiter unavailable, allowing request: %s", exc)
            return await call_next(request)

        if count > self._limit:
            err = RateLimitError()
            logger.warning("Rate limit hit on %s for %s", request.url.path, key)
            return JSONResponse(
                status_code=err.http_status,
                content=error_response(err.code, err.message, request).model_dump(),
                headers={"Retry-After": str(WINDOW_SECONDS)},
            )
        return await call_next(request)
