"""
Secrets Exporter - Local Secret Cache

Thread-safe, in-memory mirror of the watched secret collection, indexed
by object key.  Only the informer writes to it; reconciliation workers and
the scrape endpoint read from it.
"""

from __future__ import annotations

import logging
import threading
import time

from secrets_exporter.store.models import TrackedSecret

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

# (old, new) pairs produced by ``SecretCache.replace``.  ``old`` is None for
# additions, ``new`` is None for deletions.
Change = tuple[TrackedSecret | None, TrackedSecret | None]


class SecretCache:
    """Indexed store of :class:`TrackedSecret` objects keyed by object key."""

    def __init__(self) -> None:
        self._items: dict[str, TrackedSecret] = {}
        self._lock = threading.RLock()
        self._synced = threading.Event()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def list_keys(self) -> list[str]:
        """Return all cached keys in sorted order."""
        with self._lock:
            return sorted(self._items)

    def list(self) -> list[TrackedSecret]:
        """Return all cached secrets ordered by key."""
        with self._lock:
            return [self._items[key] for key in sorted(self._items)]

    def get(self, key: str) -> TrackedSecret | None:
        """Return the secret stored under *key*, or ``None``."""
        with self._lock:
            return self._items.get(key)

    def apply(self, event_type: str, secret: TrackedSecret) -> TrackedSecret | None:
        """Apply a single change-feed event and return the previous object.

        ``ADDED`` and ``MODIFIED`` replace the stored object wholesale;
        ``DELETED`` removes it.  Replaying the same event is harmless.
        """
        with self._lock:
            if event_type == DELETED:
                return self._items.pop(secret.key, None)
            if event_type in (ADDED, MODIFIED):
                old = self._items.get(secret.key)
                self._items[secret.key] = secret
                return old
        raise ValueError(f"unsupported event type: {event_type!r}")

    def replace(self, secrets: list[TrackedSecret]) -> list[Change]:
        """Replace the whole content with a fresh listing.

        Returns one ``(old, new)`` pair per affected key: additions and
        updates for every listed secret, deletions for every key that is no
        longer present.
        """
        fresh = {secret.key: secret for secret in secrets}
        changes: list[Change] = []
        with self._lock:
            for key in sorted(self._items.keys() - fresh.keys()):
                changes.append((self._items[key], None))
            for key in sorted(fresh):
                changes.append((self._items.get(key), fresh[key]))
            self._items = fresh
        return changes

    # -- Initial synchronisation ----------------------------------------------

    def mark_synced(self) -> None:
        if not self._synced.is_set():
            logger.info("secret cache synced with %d object(s)", len(self))
        self._synced.set()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(
        self,
        timeout: float,
        stop_event: threading.Event | None = None,
        poll_interval: float = 0.1,
    ) -> bool:
        """Block until the initial list has been stored.

        Returns ``False`` when *timeout* elapses or *stop_event* fires
        first.
        """
        deadline = time.monotonic() + timeout
        while not self._synced.is_set():
            if stop_event is not None and stop_event.is_set():
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._synced.wait(min(poll_interval, remaining))
        return True
