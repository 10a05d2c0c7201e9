"""Per-key sliding-window rate limiting.

The limiter keeps a log of admitted hits per key inside a counter store. The
Redis store is shared by every worker process, so the cap holds no matter how
many processor instances run. The memory store only sees its own process.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional, Protocol
from uuid import uuid4

import redis


logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    def hit(self, key: str, member: str, now: float, window: float) -> tuple[int, float]:
        """Record ``member`` and return (hits in window, oldest hit timestamp)."""

    def release(self, key: str, member: str) -> None:
        """Forget a hit that was not admitted."""


class RedisCounterStore:
    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None) -> None:
        self.redis_url = redis_url
        self._redis = client

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def hit(self, key: str, member: str, now: float, window: float) -> tuple[int, float]:
        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - window)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.expire(key, int(window) + 1)
        _, _, count, oldest, _ = pipe.execute()
        oldest_ts = float(oldest[0][1]) if oldest else now
        return int(count), oldest_ts

    def release(self, key: str, member: str) -> None:
        self.redis.zrem(key, member)

    def close(self) -> None:
        if self._redis is not None:
            self._redis.close()
            self._redis = None


class MemoryCounterStore:
    def __init__(self) -> None:
        self._hits: dict[str, dict[str, float]] = defaultdict(dict)
        self._lock = threading.Lock()

    def hit(self, key: str, member: str, now: float, window: float) -> tuple[int, float]:
        with self._lock:
            cutoff = now - window
            self._sweep(cutoff)
            hits = self._hits[key]
            for stale in [m for m, ts in hits.items() if ts <= cutoff]:
                del hits[stale]
            hits[member] = now
            return len(hits), min(hits.values())

    def _sweep(self, cutoff: float) -> None:
        # Drop keys whose newest hit has left the window.
        expired = [
            key
            for key, hits in self._hits.items()
            if max(hits.values(), default=cutoff) <= cutoff
        ]
        for key in expired:
            del self._hits[key]

    def release(self, key: str, member: str) -> None:
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                return
            hits.pop(member, None)
            if not hits:
                del self._hits[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    remaining: int
    retry_after: float


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        limit: int = 10,
        period_seconds: float = 60,
        prefix: str = "ratelimit:recurring",
    ) -> None:
        if limit <= 0:
            raise ValueError("Rate limit must be positive")
        self.store = store
        self.limit = limit
        self.period_seconds = float(period_seconds)
        self.prefix = prefix

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    def acquire(self, identifier: str, now: Optional[float] = None) -> ThrottleDecision:
        now = time.time() if now is None else now
        key = self._key(identifier)
        member = f"{now:.6f}:{uuid4().hex}"
        count, oldest = self.store.hit(key, member, now, self.period_seconds)
        if count <= self.limit:
            return ThrottleDecision(True, self.limit - count, 0.0)

        self.store.release(key, member)
        retry_after = max(oldest + self.period_seconds - now, 0.0)
        logger.info(
            f"throttled: key={key} limit={self.limit} retry_after={retry_after:.1f}"
        )
        return ThrottleDecision(False, 0, retry_after)


def build_counter_store(backend: str, redis_url: str) -> CounterStore:
    if backend == "redis":
        return RedisCounterStore(redis_url)
    if backend == "memory":
        return MemoryCounterStore()
    raise ValueError(f"Unsupported rate limit backend: {backend}")
