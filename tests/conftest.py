"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any application import so settings
never point at a real backend. Tests that need a backend get ``FakeRedis``,
an in-process double injected through ``CacheClient``'s connection factory.
"""

import fnmatch
import math
import os
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# CRITICAL: Set these before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")
os.environ.setdefault("CACHE_MAX_RETRIES", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")


class FakeClock:
    """Deterministic clock used to test window expiry."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakePipeline:
    """Queues commands and runs them in order on ``execute``."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._queued: list[tuple[str, tuple[Any, ...]]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._queued.clear()

    def incr(self, key: str) -> "FakePipeline":
        self._queued.append(("incr", (key,)))
        return self

    def pttl(self, key: str) -> "FakePipeline":
        self._queued.append(("pttl", (key,)))
        return self

    async def execute(self) -> list[Any]:
        queued, self._queued = self._queued, []
        return [await getattr(self._redis, name)(*args) for name, args in queued]


class FakeRedis:
    """Async stand-in for ``redis.asyncio.Redis`` covering the commands used here.

    Attributes:
        down: When True every call raises a connection error.
        ping_failures: Number of upcoming pings that fail before one succeeds.
        command_error: Raised by every data command when set.
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.data: dict[str, Any] = {}
        self.expires_at: dict[str, float] = {}
        self.down = False
        self.ping_failures = 0
        self.ping_calls = 0
        self.command_error: Exception | None = None
        self.closed = False
        self.calls: list[str] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.down:
            raise RedisConnectionError("Connection refused")
        if self.command_error is not None:
            raise self.command_error

    def _purge(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.clock():
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    async def ping(self) -> bool:
        self.ping_calls += 1
        if self.down:
            raise RedisConnectionError("Connection refused")
        if self.ping_failures > 0:
            self.ping_failures -= 1
            raise RedisConnectionError("Connection refused")
        return True

    async def get(self, key: str) -> Any:
        self._check("get")
        self._purge(key)
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> bool:
        self._check("set")
        self.data[key] = value
        self.expires_at.pop(key, None)
        return True

    async def setex(self, key: str, ttl: int, value: Any) -> bool:
        self._check("setex")
        self.data[key] = value
        self.expires_at[key] = self.clock() + ttl
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        removed = 0
        for key in keys:
            self._purge(key)
            if key in self.data:
                removed += 1
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return removed

    async def keys(self, pattern: str) -> list[str]:
        self._check("keys")
        for key in list(self.data):
            self._purge(key)
        return [k for k in self.data if fnmatch.fnmatchcase(k, pattern)]

    async def exists(self, key: str) -> int:
        self._check("exists")
        self._purge(key)
        return int(key in self.data)

    async def pttl(self, key: str) -> int:
        self._check("pttl")
        self._purge(key)
        if key not in self.data:
            return -2
        deadline = self.expires_at.get(key)
        if deadline is None:
            return -1
        return int(math.ceil((deadline - self.clock()) * 1000))

    async def ttl(self, key: str) -> int:
        remaining = await self.pttl(key)
        return remaining if remaining < 0 else int(math.ceil(remaining / 1000))

    async def pexpire(self, key: str, ms: int) -> bool:
        self._check("pexpire")
        self._purge(key)
        if key not in self.data:
            return False
        self.expires_at[key] = self.clock() + ms / 1000
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        return await self.pexpire(key, seconds * 1000)

    async def incr(self, key: str) -> int:
        self._check("incr")
        self._purge(key)
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = value
        return value

    async def decr(self, key: str) -> int:
        self._check("decr")
        self._purge(key)
        value = int(self.data.get(key, 0)) - 1
        self.data[key] = value
        return value

    async def info(self, section: str | None = None) -> str:
        self._check("info")
        if section == "keyspace":
            return f"# Keyspace\r\ndb0:keys={len(self.data)},expires={len(self.expires_at)},avg_ttl=0\r\n"
        return "# Stats\r\nkeyspace_hits:10\r\nkeyspace_misses:2\r\nevicted_keys:0\r\n"

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def fake_factory(clock: FakeClock):
    """Connection factory that builds a new FakeRedis per client.

    Every connection built is recorded on ``factory.created``.
    """

    created: list[FakeRedis] = []

    def factory(_settings: Any) -> FakeRedis:
        redis = FakeRedis(clock)
        created.append(redis)
        return redis

    factory.created = created  # type: ignore[attr-defined]
    return factory


@pytest.fixture
def down_factory(clock: FakeClock):
    """Connection factory whose connections are unreachable."""

    created: list[FakeRedis] = []

    def factory(_settings: Any) -> FakeRedis:
        redis = FakeRedis(clock)
        redis.down = True
        created.append(redis)
        return redis

    factory.created = created  # type: ignore[attr-defined]
    return factory


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def recording_sleep(sleeps: list[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep
