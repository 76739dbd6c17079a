"""Prefixed JSON cache on top of the shared ``CacheClient``.

Every operation degrades instead of failing: when the cache is disabled or
the backend is down, reads miss, writes report False, and counts are 0. Each
outcome feeds the client's ``CacheStats``.
"""

from __future__ import annotations

import functools
import json
import logging
from typing import Any, Awaitable, Callable

from freelance_throttle.adapters.cache.client import CacheClient, CacheResult, CallMode
from freelance_throttle.adapters.cache.stats import CacheStats
from freelance_throttle.core.config import CacheSettings, settings

logger = logging.getLogger(__name__)

# TTL reply for a missing key
KEY_MISSING_TTL = -2


class CacheService:
    """Generic caching operations with a key prefix and default TTL.

    Attributes:
        prefix: Prepended to every key.
        default_ttl: Seconds applied when ``set`` gets no TTL (0 means no expiry).
    """

    def __init__(
        self,
        client: CacheClient,
        *,
        cache_settings: CacheSettings | None = None,
        prefix: str | None = None,
        enabled: bool | None = None,
        default_ttl: int | None = None,
    ) -> None:
        cfg = cache_settings or settings.cache
        self._client = client
        self.prefix = cfg.prefix if prefix is None else prefix
        self.enabled = cfg.enabled if enabled is None else enabled
        self.default_ttl = cfg.default_ttl_seconds if default_ttl is None else default_ttl

    @property
    def stats(self) -> CacheStats:
        return self._client.stats

    def build_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def serialize(value: Any) -> str:
        if value is None:
            return ""
        return json.dumps(value, default=str)

    @staticmethod
    def deserialize(raw: Any) -> Any:
        """Decode a stored value; non-JSON payloads are returned raw."""
        if raw is None or raw == "":
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache.deserialize_failed", extra={"value_type": type(raw).__name__})
            return raw

    def is_enabled(self) -> bool:
        return self.enabled and self._client.is_available()

    async def _run(self, name: str, *args: Any, **kwargs: Any) -> CacheResult:
        return await self._client.execute(name, *args, mode=CallMode.WITH_FALLBACK, **kwargs)

    async def get(self, key: str) -> Any:
        """Return the cached value or None on miss, error, or disabled cache."""

        if not self.is_enabled():
            return None

        result = await self._run("get", self.build_key(key))
        if not result.ok:
            return None
        if result.value is None:
            self.stats.increment_miss()
            logger.debug("cache.miss", extra={"cache_key": key})
            return None

        self.stats.increment_hit()
        logger.debug("cache.hit", extra={"cache_key": key})
        return self.deserialize(result.value)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store ``value`` as JSON; ``ttl`` <= 0 stores without expiry."""

        if not self.is_enabled():
            return False

        ttl = self.default_ttl if ttl is None else ttl
        cache_key = self.build_key(key)
        payload = self.serialize(value)
        if ttl > 0:
            result = await self._run("setex", cache_key, ttl, payload)
        else:
            result = await self._run("set", cache_key, payload)

        if not result.ok:
            return False
        self.stats.increment_set()
        logger.debug("cache.set", extra={"cache_key": key, "ttl_s": ttl})
        return True

    async def delete(self, key: str) -> bool:
        if not self.is_enabled():
            return False

        result = await self._run("delete", self.build_key(key))
        if not result.ok:
            return False
        self.stats.increment_delete()
        return True

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern under the prefix."""

        if not self.is_enabled():
            return 0

        found = await self._run("keys", self.build_key(pattern))
        if not found.ok or not found.value:
            return 0

        keys = list(found.value)
        removed = await self._run("delete", *keys)
        if not removed.ok:
            return 0
        self.stats.increment_delete(len(keys))
        return len(keys)

    async def exists(self, key: str) -> bool:
        if not self.is_enabled():
            return False

        result = await self._run("exists", self.build_key(key))
        return result.ok and result.value == 1

    async def ttl(self, key: str) -> int:
        """Seconds to live, -1 for no expiry, -2 when missing or unavailable."""

        if not self.is_enabled():
            return KEY_MISSING_TTL

        result = await self._run("ttl", self.build_key(key))
        if not result.ok or result.value is None:
            return KEY_MISSING_TTL
        return int(result.value)

    async def expire(self, key: str, ttl: int) -> bool:
        if not self.is_enabled():
            return False

        result = await self._run("expire", self.build_key(key), ttl)
        return result.ok and bool(result.value)

    async def flush(self) -> int:
        """Remove all keys carrying this service's prefix."""

        return await self.delete_pattern("*")

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
    ) -> Any:
        """Return the cached value, computing and storing it on a miss."""

        cached_value = await self.get(key)
        if cached_value is not None:
            return cached_value

        value = await factory()
        if value is not None:
            await self.set(key, value, ttl)
        return value


def cached(service: CacheService | Callable[[], CacheService | None], ttl: int = 60, key_prefix: str = "fn"):
    """Decorator that caches async function results through a CacheService.

    ``service`` may be the service itself or a zero-argument callable
    returning it (or None when caching is not wired up yet).

    Key format: ``{key_prefix}:{arg1}:{arg2}:...:{kw}={value}``
    """

    def resolve() -> CacheService | None:
        if isinstance(service, CacheService):
            return service
        return service()

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            cache = resolve()
            if cache is None or not cache.is_enabled():
                return await fn(*args, **kwargs)

            parts = [key_prefix] + [str(a) for a in args] + [f"{k}={v}" for k, v in sorted(kwargs.items())]
            return await cache.get_or_set(":".join(parts), lambda: fn(*args, **kwargs), ttl)

        return wrapper

    return decorator
