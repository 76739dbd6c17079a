"""Process-wide cache usage counters.

Counters are incremented by every cache operation outcome and reset on
demand. They are never persisted.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field


def _percent(part: int, total: int) -> str:
    if total <= 0:
        return "0%"
    return f"{part / total * 100:.2f}%"


@dataclass
class CacheStats:
    """Hit/miss/error/set/delete counters with derived rates."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0
    deletes: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment_hit(self) -> None:
        with self._lock:
            self.hits += 1

    def increment_miss(self) -> None:
        with self._lock:
            self.misses += 1

    def increment_error(self) -> None:
        with self._lock:
            self.errors += 1

    def increment_set(self) -> None:
        with self._lock:
            self.sets += 1

    def increment_delete(self, count: int = 1) -> None:
        with self._lock:
            self.deletes += count

    def snapshot(self) -> dict[str, int | str]:
        """Return the counters plus hit/miss rate percentages."""

        with self._lock:
            lookups = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "errors": self.errors,
                "sets": self.sets,
                "deletes": self.deletes,
                "hit_rate": _percent(self.hits, lookups),
                "miss_rate": _percent(self.misses, lookups),
            }

    def reset(self) -> None:
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.errors = 0
            self.sets = 0
            self.deletes = 0
