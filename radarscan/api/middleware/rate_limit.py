"""Per-client-IP rate limiting for the mutating API routes.

Creating a scan costs a third-party scan and requesting an email sends mail,
so ``POST /api/scan`` and ``POST /api/email/{session_id}`` are limited to
``RATE_LIMIT_RPM`` requests per ``RATE_LIMIT_WINDOW_SECONDS`` for each client
IP (see :func:`~radarscan.api.provenance.client_ip`).  Everything else passes
untouched.

The window is a Redis sorted set per IP (``radarscan:rl:{ip}``) whose scores
are request timestamps in milliseconds.  One Lua script prunes expired
entries, records the request and returns the new count together with the
oldest timestamp, so concurrent API workers cannot race between the read and
the write.

A request over the limit gets ``429`` and a ``Retry-After`` equal to the time
until the oldest entry leaves the window.  Limited routes always carry
``X-RateLimit-Limit``, ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset``.
When no Redis client is configured, or Redis fails, the request is let
through and a warning is logged.
"""
from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from radarscan.api.provenance import client_ip

logger = logging.getLogger(__name__)

DEFAULT_RPM: int = 10
WINDOW_SECONDS: int = 60

#: Path prefixes of the limited routes; only POST requests are counted.
LIMITED_PATH_PREFIXES: tuple[str, ...] = ("/api/scan", "/api/email/")

# KEYS[1]: window key
# ARGV: now_ms, window_ms, member, ttl_seconds
# Returns {count including this request, oldest score in the window}.
_RECORD_REQUEST_LUA = """
local now_ms = tonumber(ARGV[1])
redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now_ms - tonumber(ARGV[2]))
redis.call('ZADD', KEYS[1], now_ms, ARGV[3])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[4]))
local count = redis.call('ZCARD', KEYS[1])
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
if oldest[2] then
    return {count, tonumber(oldest[2])}
end
return {count, now_ms}
"""


def _build_key(ip_address: str) -> str:
    """Return the Redis sorted-set key for a client IP."""
    return f"radarscan:rl:{ip_address}"


def _is_limited(request: Request) -> bool:
    return request.method == "POST" and request.url.path.startswith(LIMITED_PATH_PREFIXES)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limiter keyed by client IP.

    Args:
        app: The wrapped ASGI application.
        redis_client: Async Redis client.  When ``None``, ``app.state.redis``
            is used at request time.
        rpm: Requests allowed per window.
        window_seconds: Window length in seconds.
    """

    def __init__(
        self,
        app: ASGIApp,
        redis_client: Redis | None = None,
        rpm: int = DEFAULT_RPM,
        window_seconds: int = WINDOW_SECONDS,
    ) -> None:
        super().__init__(app)
        self._redis = redis_client
        self._rpm = rpm
        self._window_ms = window_seconds * 1000
        self._scripts: dict[int, object] = {}

    def _script_for(self, redis_client: Redis) -> object:
        script = self._scripts.get(id(redis_client))
        if script is None:
            script = self._scripts[id(redis_client)] = redis_client.register_script(_RECORD_REQUEST_LUA)
        return script

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not _is_limited(request):
            return await call_next(request)

        ip_address = client_ip(request) or "unknown"
        redis_client = self._redis or getattr(request.app.state, "redis", None)
        if redis_client is None:
            logger.warning("Redis unavailable; rate limiting disabled for %s", ip_address)
            return await call_next(request)

        now_ms = int(time.time() * 1000)
        try:
            count, oldest_ms = await self._script_for(redis_client)(  # type: ignore[operator]
                keys=[_build_key(ip_address)],
                args=[now_ms, self._window_ms, f"{now_ms}-{uuid.uuid4().hex}", self._window_ms // 1000 + 1],
            )
        except RedisError as exc:
            logger.warning("Rate limit check failed for %s, allowing request: %s", ip_address, exc)
            return await call_next(request)

        count, oldest_ms = int(count), int(oldest_ms)
        window_ends_ms = oldest_ms + self._window_ms
        headers = {
            "X-RateLimit-Limit": str(self._rpm),
            "X-RateLimit-Remaining": str(max(0, self._rpm - count)),
            "X-RateLimit-Reset": str(math.ceil(window_ends_ms / 1000)),
        }

        if count > self._rpm:
            retry_after = math.ceil(max(0, window_ends_ms - now_ms) / 1000)
            logger.info("Rate limit exceeded for %s: %d/%d in window", ip_address, count, self._rpm)
            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Rate limit exceeded",
                    "limit": self._rpm,
                    "window_seconds": self._window_ms // 1000,
                    "retry_after_seconds": retry_after,
                },
                headers={"Retry-After": str(retry_after), **headers},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
