"""
Secrets Exporter - Work Queue

Deduplicating, rate-limited work queue of object keys shared by the change
feed handlers, the periodic resync and the reconciliation workers.

Guarantees:
  * at most one pending instance of a key at any time;
  * at most one worker processes a given key at a time; a key re-added
    while it is processing is deferred until ``done(key)``;
  * once shut down, ``get()`` returns ``(None, True)`` immediately, even if
    keys are still pending, and every ``add*`` call is ignored.

Delayed additions (``add_after`` / ``add_rate_limited``) are kept in a
heap and moved onto the queue by a background thread when they become
due.  For a key waiting more than once, the earliest due time wins.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Hashable

from secrets_exporter.workqueue.ratelimit import ItemExponentialFailureRateLimiter

logger = logging.getLogger(__name__)


class RateLimitingQueue:
    """Thread-safe queue for many producers and many consumers."""

    def __init__(
        self,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
        name: str = "workqueue",
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()

        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

        # Delayed additions: heap of (due_at, seq, item); ``_waiting`` holds
        # the effective due time per item so superseded heap entries are skipped
        self._delay_cond = threading.Condition()
        self._heap: list[tuple[float, int, Hashable]] = []
        self._waiting: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._delay_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name}-delay", daemon=True
        )
        self._delay_thread.start()

    # -- Basic queue -------------------------------------------------------------

    def add(self, item: Hashable) -> None:
        """Mark *item* as needing processing."""
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)``, or ``(None, True)`` once the queue is shut
        down.  With a *timeout*, ``(None, False)`` is returned when it
        expires.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None, False
                self._cond.wait(remaining)

            if self._shutting_down:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Mark *item* as processed; re-queue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop handing out items and wake every blocked consumer."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            self._delay_cond.notify_all()
        logger.info("%s shut down", self.name)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # -- Delayed additions -------------------------------------------------------

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add *item* once *delay* seconds have passed."""
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return

        due_at = time.monotonic() + delay
        with self._delay_cond:
            existing = self._waiting.get(item)
            if existing is not None and existing <= due_at:
                return
            self._waiting[item] = due_at
            heapq.heappush(self._heap, (due_at, next(self._seq), item))
            self._delay_cond.notify()

    def waiting(self) -> int:
        """Number of items scheduled for a delayed addition."""
        with self._delay_cond:
            return len(self._waiting)

    def _pop_ready(self, now: float) -> list[Hashable]:
        ready: list[Hashable] = []
        while self._heap and self._heap[0][0] <= now:
            due_at, _, item = heapq.heappop(self._heap)
            if self._waiting.get(item) == due_at:
                del self._waiting[item]
                ready.append(item)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._delay_cond:
                # Checked under the delay lock so a shut_down() notify is never missed
                if self._shutting_down:
                    return
                ready = self._pop_ready(time.monotonic())
                if not ready:
                    timeout = None
                    if self._heap:
                        timeout = max(0.0, self._heap[0][0] - time.monotonic())
                    self._delay_cond.wait(timeout)
                    continue
            for item in ready:
                self.add(item)

    # -- Rate limiting -----------------------------------------------------------

    def add_rate_limited(self, item: Hashable) -> None:
        """Add *item* after the backoff delay the rate limiter assigns to it."""
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Clear the backoff state of *item* after a successful attempt."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
