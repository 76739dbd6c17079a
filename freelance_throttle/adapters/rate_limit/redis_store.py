"""Backend-backed fixed-window counter store.

Each increment runs ``INCR`` and ``PTTL`` in one MULTI/EXEC transaction. A
key without an expiry is new, so its window is started with ``PEXPIRE``.
Counters then vanish through the backend TTL; nothing deletes them on the
common path.
"""

from __future__ import annotations

import time
from typing import Callable

from redis.exceptions import RedisError

from freelance_throttle.adapters.cache.client import CacheClient
from freelance_throttle.adapters.rate_limit.base import AbstractRateLimitStore, WindowHit
from freelance_throttle.core.errors import CacheCommandError

# PTTL replies: -2 when the key does not exist, -1 when it has no expiry
_NO_EXPIRY = -1


class RedisFixedWindowStore(AbstractRateLimitStore):
    """Counter store on top of a ``CacheClient``.

    Raises ``CacheError`` subclasses when the backend cannot answer; callers
    decide how to degrade.
    """

    def __init__(self, client: CacheClient, *, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock

    @property
    def client(self) -> CacheClient:
        return self._client

    async def increment(self, key: str, window_seconds: int) -> WindowHit:
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        window_ms = int(window_seconds * 1000)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pttl(key)
                count, ttl_ms = await pipe.execute()

                if ttl_ms is None or int(ttl_ms) <= _NO_EXPIRY:
                    await self._client.execute_command("pexpire", key, window_ms)
                    ttl_ms = window_ms
        except (RedisError, OSError) as exc:
            self._client.report_connection_error(exc)
            raise CacheCommandError(
                code="rate_limit_increment_failed",
                message=f"Rate limit increment failed: {exc}",
                details={"command": "incr"},
            ) from exc

        return WindowHit(count=int(count), reset_at=self._clock() + int(ttl_ms) / 1000)

    async def decrement(self, key: str) -> None:
        value = await self._client.execute_command_with_fallback("decr", key)
        if value is not None and int(value) < 0:
            # The window expired before the refund; drop the orphan counter
            await self._client.execute_command_with_fallback("delete", key)

    async def reset(self, key: str) -> None:
        await self._client.execute_command_with_fallback("delete", key)
