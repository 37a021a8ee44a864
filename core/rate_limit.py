"""Rate limiting helpers (Redis preferred, in-memory fallback)."""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

import config

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int


class RateLimiter:
    def __init__(self, *, redis_url: Optional[str] = None, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._buckets: Dict[str, Deque[float]] = defaultdict(deque)
        self._redis: Optional[redis.Redis] = redis.Redis.from_url(redis_url) if redis_url else None

    async def allow(self, *, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        limit = int(limit)
        window_seconds = int(window_seconds)
        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(allowed=True, retry_after_seconds=0)

        if self._redis is not None:
            try:
                # Atomic counter with TTL.
                pipe = self._redis.pipeline()
                pipe.incr(key, 1)
                pipe.ttl(key)
                current, ttl = await pipe.execute()
                if ttl == -1:
                    await self._redis.expire(key, window_seconds)
                    ttl = window_seconds
                if int(current) <= limit:
                    return RateLimitResult(allowed=True, retry_after_seconds=0)
                retry_after = int(ttl if ttl and ttl > 0 else window_seconds)
                return RateLimitResult(allowed=False, retry_after_seconds=max(1, retry_after))
            except RedisError as exc:
                logger.warning(f"Redis rate limiter unavailable, using in-memory window: {exc}")

        return self._allow_in_memory(key, limit, window_seconds)

    def _allow_in_memory(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        # Sliding window; runs without awaiting so it is atomic on the event loop
        now = self._clock()
        bucket = self._buckets[key]
        cutoff = now - window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if len(bucket) < limit:
            bucket.append(now)
            return RateLimitResult(allowed=True, retry_after_seconds=0)
        retry_after = int((bucket[0] + window_seconds) - now)
        return RateLimitResult(allowed=False, retry_after_seconds=max(1, retry_after))

    def reset(self) -> None:
        self._buckets.clear()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_rate_limiter() -> RateLimiter:
    return RateLimiter(redis_url=config.REDIS_URL or None)
