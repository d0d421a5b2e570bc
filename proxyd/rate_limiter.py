"""Frontend rate limiters keyed by caller, in memory or in Redis."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import timedelta

import redis

logger = logging.getLogger(__name__)

# Seconds between the start of year 1 and the Unix epoch.
_ZERO_TIME_OFFSET_S = 62_135_596_800
_NS_PER_S = 1_000_000_000


def _duration_ns(duration: timedelta) -> int:
    return (duration // timedelta(microseconds=1)) * 1000


def truncate_now(duration: timedelta) -> int:
    """Unix seconds of the current time rounded down to a multiple of duration."""
    now_ns = time.time_ns()
    step = _duration_ns(duration)
    if step <= 0:
        return now_ns // _NS_PER_S
    absolute = now_ns + _ZERO_TIME_OFFSET_S * _NS_PER_S
    truncated = absolute - absolute % step
    return (truncated - _ZERO_TIME_OFFSET_S * _NS_PER_S) // _NS_PER_S


class FrontendRateLimiter(ABC):
    """Consumes one unit for a key and reports whether it was within the limit."""

    @abstractmethod
    def take(self, key: str) -> bool:
        """Return True when the key is still under its limit; raise if the backing store fails."""


class _LimitedKeys:
    def __init__(self, trunc_ts: int):
        self.trunc_ts = trunc_ts
        self._keys: dict[str, int] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int) -> bool:
        with self._lock:
            used = self._keys.get(key, 0)
            self._keys[key] = used + 1
            return used < limit


class MemoryFrontendRateLimiter(FrontendRateLimiter):
    """Counts usage in memory; counters reset whenever the truncated time changes."""

    def __init__(self, duration: timedelta, limit: int):
        self.duration = duration
        self.limit = limit
        self._generation: _LimitedKeys | None = None
        self._lock = threading.Lock()

    def take(self, key: str) -> bool:
        with self._lock:
            trunc_ts = truncate_now(self.duration)
            if self._generation is None or self._generation.trunc_ts != trunc_ts:
                self._generation = _LimitedKeys(trunc_ts)
            generation = self._generation
        return generation.take(key, self.limit)


class RedisFrontendRateLimiter(FrontendRateLimiter):
    """Counts usage in Redis with one expiring counter per key and time slot."""

    def __init__(self, client, duration: timedelta, limit: int, prefix: str):
        self._client = client
        self.duration = duration
        self.limit = limit
        self.prefix = prefix

    def take(self, key: str) -> bool:
        trunc_ts = truncate_now(self.duration)
        full_key = f"rate_limit:{self.prefix}:{key}:{trunc_ts}"
        expire_ms = max(self.duration // timedelta(milliseconds=1) - 1, 1)
        try:
            with self._client.pipeline(transaction=False) as pipe:
                pipe.incr(full_key)
                pipe.pexpire(full_key, expire_ms)
                count, _ = pipe.execute()
        except redis.RedisError:
            logger.warning("error taking frontend rate limit for %s", full_key)
            raise
        return count - 1 < self.limit


class NoopFrontendRateLimiter(FrontendRateLimiter):
    """Never limits."""

    def take(self, key: str) -> bool:
        return True


NOOP_FRONTEND_RATE_LIMITER = NoopFrontendRateLimiter()


def new_redis_client(url: str) -> redis.Redis:
    """Connect to Redis at url and check the connection with a ping."""
    client = redis.Redis.from_url(url, socket_connect_timeout=5, socket_timeout=5)
    try:
        client.ping()
    except redis.RedisError as exc:
        raise redis.exceptions.ConnectionError(f"error connecting to redis {exc}") from exc
    return client