"""Fixed-window rate limiting and one-shot idempotency locks backed by Redis.

Both helpers degrade when Redis is missing or failing: without a client every
request is allowed, and with ``fail_open`` set a Redis error is logged and
treated as "allowed" instead of blocking the caller.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RateLimiterUnavailable(RuntimeError):
    """Redis failed and the limiter is configured to fail closed."""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int


def rate_limit_key(scope: str, ident: int | str) -> str:
    return f"rl:{scope}:{ident}"


def stripe_event_lock_key(event_id: str) -> str:
    return f"stripe:event:{event_id}"


class RateLimiter:
    def __init__(self, client: redis.Redis | None, *, fail_open: bool = True) -> None:
        self._client = client
        self.fail_open = fail_open

    @classmethod
    def from_url(cls, url: str | None, *, fail_open: bool = True) -> "RateLimiter":
        if not url:
            logger.info("REDIS_URL not set; rate limiting disabled")
            return cls(None, fail_open=fail_open)
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, fail_open=fail_open)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def hit(self, key: str, window_seconds: int = 60, limit: int = 30) -> RateLimitDecision:
        """Count one hit against ``key`` and decide whether it is allowed."""
        if self._client is None:
            return RateLimitDecision(True, limit, window_seconds)
        try:
            count = await self._client.incr(key)
            if count == 1:
                await self._client.expire(key, window_seconds)
            ttl = await self._client.ttl(key)
        except RedisError as exc:
            if not self.fail_open:
                logger.error("Redis unavailable for rate limiting: %s", exc)
                raise RateLimiterUnavailable("Rate limiter unavailable") from exc
            logger.warning("Redis unavailable for rate limiting, allowing: %s", exc)
            return RateLimitDecision(True, limit, window_seconds)
        return RateLimitDecision(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_seconds=ttl if isinstance(ttl, int) and ttl >= 0 else window_seconds,
        )

    async def acquire_once(self, key: str, ttl_seconds: int = 24 * 60 * 60) -> bool:
        """Take a lock that is never released; ``False`` means somebody already holds it."""
        if self._client is None:
            return True
        try:
            res = await self._client.set(key, "1", nx=True, ex=ttl_seconds)
        except RedisError as exc:
            if not self.fail_open:
                logger.error("Redis unavailable for idempotency lock: %s", exc)
                raise RateLimiterUnavailable("Idempotency store unavailable") from exc
            logger.warning("Redis unavailable for idempotency lock, allowing: %s", exc)
            return True
        return bool(res)

    async def release(self, key: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.delete(key)
        except RedisError as exc:
            logger.warning("Failed to release %s: %s", key, exc)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


__all__ = [
    "RateLimitDecision",
    "RateLimiter",
    "RateLimiterUnavailable",
    "rate_limit_key",
    "stripe_event_lock_key",
]
