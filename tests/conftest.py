"""Shared fixtures for MarketPulse tests."""

import fnmatch

import pytest

from marketpulse.utils.timers import ManualClock, TimerRegistry


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client calls the cache makes."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.sets = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex if ex else -1
        return True

    async def ttl(self, key):
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                removed += 1
            if key in self.sets:
                del self.sets[key]
                removed += 1
        return removed

    async def exists(self, key):
        return int(key in self.data)

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def expire(self, key, seconds):
        return True

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def clock():
    return ManualClock(start=1000.0)


@pytest.fixture
def timers(clock):
    return TimerRegistry(clock)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def no_sleep():
    return SleepRecorder()
