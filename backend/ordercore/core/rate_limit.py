from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from typing import Awaitable, Callable, DefaultDict, Deque, Hashable

from fastapi import Request

from ordercore.core.errors import RateLimited
from ordercore.core.redis_client import get_redis

WindowBucket = Deque[float]
Clock = Callable[[], float]

logger = logging.getLogger(__name__)


def _too_many(retry_after_seconds: int) -> RateLimited:
    return RateLimited("Too many requests", headers={"Retry-After": str(max(1, retry_after_seconds))})


class RateLimiter:
    """Fixed-window counter keyed in Redis, with a per-process sliding window as degraded mode.

    The in-memory buckets only apply when Redis is not configured or unreachable;
    they are not shared between workers, so limits become per-process.
    """

    def __init__(self, key: Hashable, *, window_seconds: int, clock: Clock = time.time) -> None:
        self.key = key
        self.window_seconds = max(1, int(window_seconds))
        self.clock = clock
        self.buckets: DefaultDict[Hashable, WindowBucket] = defaultdict(deque)
        self._last_sweep = clock()

    async def hit(self, identifier: Hashable, *, limit: int) -> None:
        now = self.clock()
        if await self._hit_redis(identifier, limit=limit, now=now):
            return
        self._hit_memory(identifier, limit=limit, now=now)

    async def _hit_redis(self, identifier: Hashable, *, limit: int, now: float) -> bool:
        client = get_redis()
        if client is None:
            return False
        if limit <= 0:
            return True
        now_int = int(now)
        window = now_int // self.window_seconds
        redis_key = f"rate_limit:{self.key}:{identifier}:{window}"
        try:
            count = await client.incr(redis_key)
            if count == 1:
                await client.expire(redis_key, self.window_seconds)
        except Exception as exc:
            logger.warning("redis_rate_limit_degraded", extra={"error": str(exc), "limiter": str(self.key)})
            return False
        if int(count) > int(limit):
            raise _too_many(self.window_seconds - (now_int % self.window_seconds))
        return True

    def _sweep(self, now: float) -> None:
        """Drop identifiers whose newest hit fell out of the window."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for identifier in [key for key, bucket in self.buckets.items() if not bucket or now - bucket[-1] > self.window_seconds]:
            del self.buckets[identifier]

    def _hit_memory(self, identifier: Hashable, *, limit: int, now: float) -> None:
        self._sweep(now)
        bucket = self.buckets[identifier]
        while bucket and now - bucket[0] > self.window_seconds:
            bucket.popleft()
        if len(bucket) >= limit:
            retry_after = int(math.ceil(bucket[0] + self.window_seconds - now)) if bucket else 1
            raise _too_many(retry_after)
        bucket.append(now)

    def reset(self) -> None:
        self.buckets.clear()


def client_ip(request: Request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def per_identifier_limiter(
    identifier_fn: Callable[[Request], Hashable],
    limit_fn: Callable[[Request], int],
    window_seconds: int,
    key: Hashable,
    clock: Clock = time.time,
) -> Callable[[Request], Awaitable[None]]:
    """
    FastAPI dependency enforcing a per-identifier limit (e.g. client IP).

    Args:
        identifier_fn: maps the request to an identifier.
        limit_fn: max requests allowed in the window for this request.
        window_seconds: window length in seconds.
        key: limiter namespace (e.g. "orders:intake").
    """
    limiter = RateLimiter(key, window_seconds=window_seconds, clock=clock)

    async def dependency(request: Request) -> None:
        await limiter.hit(identifier_fn(request), limit=limit_fn(request))

    dependency.limiter = limiter  # type: ignore[attr-defined]
    return dependency
