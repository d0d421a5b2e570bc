"""Moving average over a time window, kept in fixed-size time buckets."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Protocol

_MICROSECOND = timedelta(microseconds=1)
_EPOCH = datetime(1, 1, 1)


class Clock(Protocol):
    def now(self) -> datetime: ...


class DefaultClock:
    """A clock reading the system time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class AdjustableClock:
    """A clock that returns whatever time it was last set to."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now


@dataclass
class Bucket:
    sum: float = 0.0
    qty: int = 0


def _round(when: datetime, size: timedelta) -> datetime:
    """Round to the nearest multiple of size since year 1; halves round up."""
    if size <= timedelta(0):
        return when
    if when.tzinfo is not None:
        utc = when.astimezone(timezone.utc).replace(tzinfo=None)
        return _round(utc, size).replace(tzinfo=timezone.utc).astimezone(when.tzinfo)
    micros = (when - _EPOCH) // _MICROSECOND
    step = size // _MICROSECOND
    remainder = micros % step
    if remainder + remainder < step:
        micros -= remainder
    else:
        micros += step - remainder
    return _EPOCH + timedelta(microseconds=micros)


class AvgSlidingWindow:
    """Averages data points whose rounded times fall within the window."""

    def __init__(
        self,
        window_length: timedelta = timedelta(minutes=5),
        bucket_size: timedelta = timedelta(seconds=1),
        clock: Clock | None = None,
    ):
        self.window_length = window_length or timedelta(minutes=5)
        self.bucket_size = bucket_size or timedelta(seconds=1)
        self.clock = clock if clock is not None else DefaultClock()
        self._buckets: dict[datetime, Bucket] = {}
        self._qty = 0
        self._sum = 0.0
        self._lock = threading.RLock()

    def _window(self) -> tuple[datetime, datetime]:
        now = _round(self.clock.now(), self.bucket_size)
        return now - self.window_length, now

    def _in_window(self, when: datetime) -> bool:
        start, now = self._window()
        return start < when <= now

    def _advance(self) -> None:
        with self._lock:
            start, _ = self._window()
            for key in list(self._buckets):
                if key > start:
                    break
                bucket = self._buckets.pop(key)
                if self._buckets:
                    self._qty -= bucket.qty
                    self._sum -= bucket.sum
                else:
                    self._qty = 0
                    self._sum = 0.0

    def add(self, value: float) -> None:
        """Add a data point at the current time."""
        self.add_with_time(self.clock.now(), value)

    def incr(self) -> None:
        self.add(1.0)

    def add_with_time(self, when: datetime, value: float) -> None:
        """Add a data point at the given time; points outside the window are dropped."""
        self._advance()
        with self._lock:
            key = _round(when, self.bucket_size)
            if not self._in_window(key):
                return
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = Bucket()
                self._buckets[key] = bucket
            previous = bucket.sum
            bucket.qty += 1
            bucket.sum = previous + value
            self._qty += 1
            self._sum = self._sum - previous + bucket.sum

    def avg(self) -> float:
        with self._lock:
            self._advance()
            if self._qty == 0:
                return 0.0
            return self._sum / self._qty

    def sum(self) -> float:
        with self._lock:
            self._advance()
            return self._sum

    def count(self) -> int:
        with self._lock:
            self._advance()
            return self._qty

    def clear(self) -> None:
        """Reset the running count and sum."""
        with self._lock:
            self._qty = 0
            self._sum = 0.0

    def buckets(self) -> list[Bucket]:
        """Copies of the live buckets, oldest first."""
        with self._lock:
            return [replace(bucket) for bucket in self._buckets.values()]