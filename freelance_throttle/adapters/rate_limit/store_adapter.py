"""Store adapter that keeps rate limiting working with or without the backend.

At startup the adapter connects through its own ``CacheClient`` (a separate
connection from the general cache, so the two fail independently). If that
first connection fails, the adapter uses process memory for the rest of the
process lifetime and never retries the backend for rate limiting.

Known limitation: the memory store is per-process. In a multi-instance
deployment, memory mode turns a global quota into a per-instance quota.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable

from freelance_throttle.adapters.cache.client import CacheClient
from freelance_throttle.adapters.rate_limit.base import AbstractRateLimitStore, StoreMode, WindowHit
from freelance_throttle.adapters.rate_limit.in_memory import InMemoryFixedWindowStore
from freelance_throttle.adapters.rate_limit.redis_store import RedisFixedWindowStore
from freelance_throttle.core.errors import CacheError

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"


def build_limiter_key(policy_name: str, key: str) -> str:
    """Namespace a requester key under its policy: ``rate_limit:<policy>:<key>``."""

    return f"{KEY_PREFIX}:{policy_name}:{key}"


class RateLimitStoreAdapter:
    """Route counter operations to the backend store or the memory store.

    Args:
        client: Dedicated cache client for rate limiting, or None for memory only.
        memory_store: Fallback store; a fresh in-memory store by default.
        backend_store: Override for the backend store (defaults to one built on ``client``).
        clock: Time source shared by the default stores.
    """

    def __init__(
        self,
        client: CacheClient | None = None,
        *,
        memory_store: AbstractRateLimitStore | None = None,
        backend_store: AbstractRateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._memory = memory_store if memory_store is not None else InMemoryFixedWindowStore(clock=clock)
        self._backend = backend_store
        if self._backend is None and client is not None:
            self._backend = RedisFixedWindowStore(client, clock=clock)
        self._mode = StoreMode.MEMORY
        self._started = False

    @property
    def mode(self) -> StoreMode:
        return self._mode

    @property
    def memory_store(self) -> AbstractRateLimitStore:
        return self._memory

    async def start(self) -> StoreMode:
        """Connect once; fall back to memory for good if that fails."""

        if self._started:
            return self._mode
        self._started = True

        if self._client is None or self._backend is None:
            logger.info("rate_limit.store_selected", extra={"mode": StoreMode.MEMORY.value, "reason": "backend_disabled"})
            return self._mode

        await self._client.initialize()
        if self._client.is_available():
            self._mode = StoreMode.BACKEND
            logger.info("rate_limit.store_selected", extra={"mode": self._mode.value, "backend": self._client.backend_label})
        else:
            logger.warning(
                "rate_limit.backend_unavailable",
                extra={
                    "mode": StoreMode.MEMORY.value,
                    "backend": self._client.backend_label,
                    "limitation": "per-instance quotas while in memory mode",
                },
            )
            # No reconnection attempts for rate limiting after a failed start
            await self._client.close()
        return self._mode

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    def _use_backend(self) -> bool:
        return (
            self._mode is StoreMode.BACKEND
            and self._client is not None
            and self._client.is_available()
        )

    async def increment(self, policy_name: str, key: str, window_seconds: int) -> WindowHit:
        """Count one request; always returns a count, whatever the backend does."""

        full_key = build_limiter_key(policy_name, key)
        if self._use_backend():
            try:
                hit = await self._backend.increment(full_key, window_seconds)
                return replace(hit, store=StoreMode.BACKEND)
            except CacheError as exc:
                logger.warning(
                    "rate_limit.backend_error",
                    extra={
                        "policy": policy_name,
                        "error_code": exc.code,
                        "error_message": exc.message,
                        "fallback": StoreMode.MEMORY.value,
                    },
                )
        hit = await self._memory.increment(full_key, window_seconds)
        return replace(hit, store=StoreMode.MEMORY)

    async def decrement(self, policy_name: str, key: str, store: StoreMode | None = None) -> None:
        """Refund one hit from ``store``, the one that counted it.

        Without ``store`` the refund goes to the store currently in use.
        """

        full_key = build_limiter_key(policy_name, key)
        if store is None:
            store = StoreMode.BACKEND if self._use_backend() else StoreMode.MEMORY

        if store is StoreMode.MEMORY:
            await self._memory.decrement(full_key)
        elif self._use_backend():
            await self._backend.decrement(full_key)
        else:
            logger.warning(
                "rate_limit.refund_skipped",
                extra={"policy": policy_name, "requester": key, "store": store.value},
            )

    async def reset_key(self, policy_name: str, key: str) -> None:
        full_key = build_limiter_key(policy_name, key)
        if self._use_backend():
            await self._backend.reset(full_key)
        await self._memory.reset(full_key)
