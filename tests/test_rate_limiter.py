from collections import Counter
from datetime import timedelta
from unittest import mock

import pytest
import redis

from proxyd.rate_limiter import (
    MemoryFrontendRateLimiter,
    NoopFrontendRateLimiter,
    RedisFrontendRateLimiter,
    new_redis_client,
    truncate_now,
)

BASE_SECONDS = 1_700_000_000
BASE_NS = BASE_SECONDS * 1_000_000_000


class FakeClock:
    def __init__(self, ns):
        self.ns = ns

    def __call__(self):
        return self.ns


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.commands = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def incr(self, key):
        self.commands.append(("incr", key))
        return self

    def pexpire(self, key, ms):
        self.commands.append(("pexpire", key, ms))
        return self

    def execute(self):
        if self.store.fail:
            raise redis.exceptions.ConnectionError("connection refused")
        results = []
        for command in self.commands:
            if command[0] == "incr":
                self.store.counts[command[1]] += 1
                results.append(self.store.counts[command[1]])
            else:
                self.store.expiries[command[1]] = command[2]
                results.append(True)
        return results


class FakeRedis:
    def __init__(self):
        self.counts = Counter()
        self.expiries = {}
        self.fail = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)


@pytest.fixture
def clock():
    fake = FakeClock(BASE_NS)
    with mock.patch("time.time_ns", fake):
        yield fake


def _limiters():
    return {
        "memory": lambda: MemoryFrontendRateLimiter(timedelta(seconds=2), 2),
        "redis": lambda: RedisFrontendRateLimiter(FakeRedis(), timedelta(seconds=2), 2, ""),
    }


@pytest.mark.parametrize("name", ["memory", "redis"])
def test_frontend_rate_limiter(clock, name):
    limit = 2
    limiter = _limiters()[name]()
    for i in range(4):
        assert limiter.take("foo") == (i < limit)
        assert limiter.take("bar") == (i < limit)
    clock.ns += 2 * 1_000_000_000
    for i in range(4):
        assert limiter.take("foo") == (i < limit)
        assert limiter.take("bar") == (i < limit)


def test_truncate_now(clock):
    clock.ns = BASE_NS + 1_500_000_000
    assert truncate_now(timedelta(seconds=2)) == BASE_SECONDS
    assert truncate_now(timedelta(0)) == BASE_SECONDS + 1


def test_memory_limiter_stays_within_slot(clock):
    limiter = MemoryFrontendRateLimiter(timedelta(seconds=2), 1)
    assert limiter.take("foo") is True
    clock.ns += 1_000_000_000
    assert limiter.take("foo") is False


def test_redis_key_and_expiry(clock):
    store = FakeRedis()
    limiter = RedisFrontendRateLimiter(store, timedelta(seconds=2), 5, "main")
    assert limiter.take("foo") is True
    key = f"rate_limit:main:foo:{BASE_SECONDS}"
    assert store.counts[key] == 1
    assert store.expiries[key] == 1999


def test_redis_errors_propagate(clock):
    store = FakeRedis()
    store.fail = True
    limiter = RedisFrontendRateLimiter(store, timedelta(seconds=2), 5, "main")
    with pytest.raises(redis.RedisError):
        limiter.take("foo")


def test_noop_never_limits():
    limiter = NoopFrontendRateLimiter()
    assert all(limiter.take("foo") for _ in range(100))


def test_new_redis_client_rejects_bad_url():
    with pytest.raises(ValueError):
        new_redis_client("not-a-url")


def test_new_redis_client_unreachable():
    with pytest.raises(redis.exceptions.ConnectionError, match="error connecting to redis"):
        new_redis_client("redis://127.0.0.1:1/0")