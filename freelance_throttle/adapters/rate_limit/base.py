"""Rate limit store interfaces.

The request gate depends on these abstractions (not the concrete stores) so
counters can live in the shared backend or in process memory without the
HTTP layer noticing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class StoreMode(str, Enum):
    """Where a counter lives."""

    BACKEND = "backend"
    MEMORY = "memory"


@dataclass(frozen=True)
class WindowHit:
    """Counter state right after an increment.

    Attributes:
        count: Requests seen in the current window, including this one.
        reset_at: UNIX epoch seconds when the window (and counter) expires.
        store: Store that counted the hit, so a refund goes back to it.
    """

    count: int
    reset_at: float
    store: StoreMode | None = None


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when the current window resets.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None

    def to_headers(self) -> dict[str, str]:
        """Standard rate limit headers; ``Retry-After`` only when blocked."""

        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class AbstractRateLimitStore(ABC):
    """Fixed-window counter storage keyed by fully-qualified limiter key."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> WindowHit:
        """Atomically count one request for ``key``.

        A key seen for the first time (or after its window elapsed) starts a
        new window of ``window_seconds`` with a count of 1.
        """
        raise NotImplementedError

    @abstractmethod
    async def decrement(self, key: str) -> None:
        """Refund one request for ``key`` within its current window."""
        raise NotImplementedError

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the counter for ``key``."""
        raise NotImplementedError
