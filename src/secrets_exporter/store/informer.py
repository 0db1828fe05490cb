"""
Secrets Exporter - Secret Informer

Keeps the local secret cache in sync with the external store and notifies
registered handlers about additions, updates and deletions.

The run loop works list-then-watch:

1. Lists all secrets (retrying with jittered exponential backoff) and
   replaces the cache content, which marks the cache as synced.
2. Streams watch events from the list's resource version and applies each
   one to the cache before dispatching it to the handlers.
3. On ``ResourceExpired`` (410 Gone) it re-lists and diffs the fresh
   snapshot against the cache, emitting deletions for vanished secrets.
4. Every ``resync_interval`` seconds it re-delivers an update for every
   cached secret so handlers can re-evaluate time-dependent state.

Handlers run on the informer thread and must return quickly.
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from secrets_exporter.errors import KeyDerivationError, ResourceExpired, StoreUnauthorized
from secrets_exporter.store.cache import ADDED, DELETED, MODIFIED, SecretCache
from secrets_exporter.store.models import TrackedSecret
from secrets_exporter.store.source import SecretSource

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30


@dataclass
class ResourceEventHandler:
    """Callbacks invoked for cache changes.  Any of them may be omitted."""

    on_add: Callable[[TrackedSecret], None] | None = None
    on_update: Callable[[TrackedSecret, TrackedSecret], None] | None = None
    on_delete: Callable[[TrackedSecret], None] | None = None


class SecretInformer:
    """List/watch loop feeding a :class:`SecretCache`."""

    def __init__(
        self,
        source: SecretSource,
        cache: SecretCache,
        resync_interval: float,
        watch_timeout: int = 300,
    ) -> None:
        self.source = source
        self.cache = cache
        self.resync_interval = resync_interval
        self.watch_timeout = watch_timeout
        self._handlers: list[ResourceEventHandler] = []
        self._last_resync = time.monotonic()
        self._stop = threading.Event()

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._stop.set()
        self.source.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._stop.is_set()

    # -- Dispatch ----------------------------------------------------------------

    def _dispatch(
        self, old: TrackedSecret | None, new: TrackedSecret | None
    ) -> None:
        for handler in self._handlers:
            try:
                if new is None:
                    if handler.on_delete is not None and old is not None:
                        handler.on_delete(old)
                elif old is None:
                    if handler.on_add is not None:
                        handler.on_add(new)
                elif handler.on_update is not None:
                    handler.on_update(old, new)
            except Exception:
                logger.exception("secret event handler failed")

    def handle_event(self, event_type: str, obj: Any) -> str | None:
        """Apply one watch event to the cache and notify the handlers.

        Returns the resource version carried by the object, or ``None`` when
        the event was dropped.
        """
        if event_type not in (ADDED, MODIFIED, DELETED):
            logger.debug("ignoring secret event of type %s", event_type)
            return None

        try:
            secret = TrackedSecret.from_v1_secret(obj)
        except KeyDerivationError as exc:
            logger.warning("error handling secret %s event: %s", event_type, exc)
            return None

        old = self.cache.apply(event_type, secret)
        if event_type == DELETED:
            self._dispatch(old or secret, None)
        else:
            self._dispatch(old, secret)
        return secret.resource_version

    def list_and_replace(self) -> str | None:
        """List every secret, replace the cache content and mark it synced."""
        items, resource_version = self.source.list_secrets()

        secrets: list[TrackedSecret] = []
        for obj in items:
            try:
                secrets.append(TrackedSecret.from_v1_secret(obj))
            except KeyDerivationError as exc:
                logger.warning("skipping listed secret: %s", exc)

        changes = self.cache.replace(secrets)
        self.cache.mark_synced()
        logger.info(
            "listed %d secret(s) at resourceVersion %s", len(secrets), resource_version
        )
        for old, new in changes:
            self._dispatch(old, new)
        return resource_version

    # -- Resync ------------------------------------------------------------------

    def resync(self) -> int:
        """Re-deliver an update event for every cached secret."""
        secrets = self.cache.list()
        for secret in secrets:
            self._dispatch(secret, secret)
        self._last_resync = time.monotonic()
        logger.debug("informer resync delivered %d secret(s)", len(secrets))
        return len(secrets)

    def _resync_remaining(self, now_monotonic: float) -> float:
        return self.resync_interval - (now_monotonic - self._last_resync)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Watch timeout, shortened so the loop wakes up for the next resync."""
        remaining = self._resync_remaining(now_monotonic)
        return min(self.watch_timeout, max(1, math.ceil(remaining)))

    # -- Run loop ----------------------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        """List-then-watch secrets until *stop_event* is set."""
        self._stop.clear()
        resource_version: str | None = None
        needs_list = True
        backoff_seconds = 1

        logger.info(
            "starting secret informer (namespace=%s)",
            self.source.namespace or "<all>",
        )

        while not self._should_stop(stop_event):
            try:
                if needs_list:
                    resource_version = self.list_and_replace()
                    needs_list = False
                    self._last_resync = time.monotonic()

                timeout_seconds = self._next_watch_timeout_seconds(time.monotonic())
                for event_type, obj in self.source.watch_secrets(
                    resource_version, timeout_seconds
                ):
                    if self._should_stop(stop_event):
                        break
                    latest = self.handle_event(event_type, obj)
                    if latest:
                        resource_version = latest

                backoff_seconds = 1
                if self._resync_remaining(time.monotonic()) <= 0:
                    self.resync()
            except ResourceExpired:
                logger.warning("watch resource version expired, re-listing secrets")
                needs_list = True
            except StoreUnauthorized as exc:
                # Retried at the cap; the cache keeps its last known state
                logger.error("not allowed to list/watch secrets: %s", exc)
                stop_event.wait(timeout=MAX_BACKOFF_SECONDS)
                backoff_seconds = MAX_BACKOFF_SECONDS
            except Exception:
                logger.exception(
                    "secret %s failed", "list" if needs_list else "watch"
                )
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

        logger.info("secret informer stopped")
