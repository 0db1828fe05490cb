"""
Per-item exponential failure backoff for the work queue.

Each call to ``when(item)`` counts one more failure for *item* and returns
``base_delay * 2 ** (failures - 1)`` seconds, capped at ``max_delay``.
``forget(item)`` resets the count after a successful attempt.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable

# 2**64 is far beyond any sensible cap and keeps the float math bounded
_MAX_EXPONENT = 64


class ItemExponentialFailureRateLimiter:
    """Exponential backoff keyed by item, bounded by a minimum and maximum."""

    def __init__(self, base_delay: float = 30.0, max_delay: float = 600.0) -> None:
        if base_delay <= 0:
            raise ValueError(f"base_delay must be > 0, got: {base_delay}")
        if max_delay < base_delay:
            raise ValueError(
                f"max_delay must be >= base_delay, got: {max_delay} < {base_delay}"
            )
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        """Record a failure for *item* and return how long to wait."""
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        if exponent >= _MAX_EXPONENT:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)
