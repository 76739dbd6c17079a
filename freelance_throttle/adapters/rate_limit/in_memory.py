"""In-memory fixed-window counter store.

Notes:
- Per-process only: with several workers or instances, each one enforces its
  own independent quota, so a global quota of N becomes N per instance.
- Thread-safe: a single lock guards increment-and-check.
- Expired windows are evicted lazily when their key is touched again, plus a
  periodic sweep so abandoned keys do not accumulate.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from freelance_throttle.adapters.rate_limit.base import AbstractRateLimitStore, WindowHit


@dataclass
class _WindowState:
    count: int
    reset_at: float


class InMemoryFixedWindowStore(AbstractRateLimitStore):
    """Counter store using a window that starts at a key's first request.

    This mirrors the backend semantics (INCR plus an expiry set on the first
    hit), so quotas behave the same whichever store answers.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_every: int = 1000,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source function returning UNIX time in seconds.
            sweep_every: Run a full expired-key sweep after this many increments.

        Raises:
            ValueError: If sweep_every is invalid.
        """
        if sweep_every < 1:
            raise ValueError("sweep_every must be >= 1")

        self._clock = clock
        self._sweep_every = sweep_every
        self._ops_since_sweep = 0
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _WindowState] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._state_by_key)

    def _live_state(self, key: str, now: float) -> _WindowState | None:
        """Return the state for key, evicting it if its window has elapsed."""
        state = self._state_by_key.get(key)
        if state is not None and state.reset_at <= now:
            del self._state_by_key[key]
            return None
        return state

    def _sweep_locked(self, now: float) -> None:
        expired = [k for k, s in self._state_by_key.items() if s.reset_at <= now]
        for key in expired:
            del self._state_by_key[key]
        self._ops_since_sweep = 0

    def prune_expired(self) -> int:
        """Drop every expired window now and return how many were removed."""
        with self._lock:
            before = len(self._state_by_key)
            self._sweep_locked(self._clock())
            return before - len(self._state_by_key)

    async def increment(self, key: str, window_seconds: int) -> WindowHit:
        """Count one request for key and return the updated window.

        Raises:
            ValueError: If key is empty or window_seconds is invalid.
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        now = self._clock()
        with self._lock:
            self._ops_since_sweep += 1
            if self._ops_since_sweep >= self._sweep_every:
                self._sweep_locked(now)

            state = self._live_state(key, now)
            if state is None:
                state = _WindowState(count=0, reset_at=now + window_seconds)
                self._state_by_key[key] = state
            state.count += 1
            return WindowHit(count=state.count, reset_at=state.reset_at)

    async def decrement(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            state = self._live_state(key, now)
            if state is not None and state.count > 0:
                state.count -= 1

    async def reset(self, key: str) -> None:
        with self._lock:
            self._state_by_key.pop(key, None)
