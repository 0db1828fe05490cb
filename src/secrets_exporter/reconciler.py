"""
Secrets Exporter - Reconciler

Worker pool that turns queued secret keys into certificate metrics.

Flow per key::

    queue.get() -> cache lookup -> extract every field -> metrics.sync_secret
                -> queue.done()

``sync_secret`` returns a tagged :class:`SyncResult` and the worker loop
decides what happens next:

- ``OK``: backoff is cleared and the key is re-checked after the recheck
  interval.
- ``TRANSIENT``: the key is re-added with per-key exponential backoff.
- ``FATAL``: the key is dropped; the periodic resync re-enqueues it if it
  still exists.

An APScheduler interval job re-enqueues every cached key each recheck
interval to heal missed events and to pick up certificates whose validity
changed without a write to the secret.
"""

from __future__ import annotations

import enum
import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from secrets_exporter.certificates.extract import CertificateRecord, extract_certificate
from secrets_exporter.errors import KeyDerivationError
from secrets_exporter.metrics import CertificateMetrics
from secrets_exporter.store.cache import SecretCache
from secrets_exporter.store.informer import ResourceEventHandler
from secrets_exporter.store.models import TrackedSecret, split_key
from secrets_exporter.workqueue.queue import RateLimitingQueue

logger = logging.getLogger(__name__)

RESYNC_JOB_ID = "resync_secrets"


class SyncResult(enum.Enum):
    """Outcome of reconciling a single key."""

    OK = "ok"
    TRANSIENT = "transient"
    FATAL = "fatal"


class Reconciler:
    """Reconciles queued secret keys into :class:`CertificateMetrics`."""

    def __init__(
        self,
        cache: SecretCache,
        queue: RateLimitingQueue,
        metrics: CertificateMetrics,
        recheck_interval: float,
    ) -> None:
        self.cache = cache
        self.queue = queue
        self.metrics = metrics
        self.recheck_interval = recheck_interval
        self._workers: list[threading.Thread] = []
        self._scheduler: BackgroundScheduler | None = None

    # -- Change feed handlers ----------------------------------------------------

    def on_add(self, secret: TrackedSecret) -> None:
        self.queue.add_rate_limited(secret.key)

    def on_update(self, old: TrackedSecret, new: TrackedSecret) -> None:
        self.queue.add_rate_limited(new.key)

    def on_delete(self, secret: TrackedSecret) -> None:
        self.queue.add(secret.key)

    def event_handler(self) -> ResourceEventHandler:
        """Handlers for the informer; they only enqueue and return."""
        return ResourceEventHandler(
            on_add=self.on_add,
            on_update=self.on_update,
            on_delete=self.on_delete,
        )

    # -- Processing --------------------------------------------------------------

    def sync_secret(self, key: str) -> SyncResult:
        """Recompute the certificate samples of the secret stored under *key*."""
        try:
            split_key(key)
        except (KeyDerivationError, AttributeError) as exc:
            logger.error("invalid secret key %r: %s", key, exc)
            return SyncResult.FATAL

        try:
            secret = self.cache.get(key)
        except Exception:
            logger.exception("error getting secret %s", key)
            return SyncResult.TRANSIENT

        if secret is None:
            retracted = self.metrics.retract_secret(key)
            logger.info(
                "secret %s does not exist; retracted %d sample(s)", key, retracted
            )
            return SyncResult.FATAL

        records: dict[str, CertificateRecord] = {}
        for field_name, payload in secret.data.items():
            record = extract_certificate(payload)
            if record is not None:
                records[field_name] = record

        self.metrics.sync_secret(key, records)
        logger.debug("secret %s synced with %d certificate(s)", key, len(records))
        return SyncResult.OK

    def _handle_result(self, key: str, result: SyncResult) -> None:
        if result is SyncResult.OK:
            self.queue.forget(key)
            self.queue.add_after(key, self.recheck_interval)
        elif result is SyncResult.TRANSIENT:
            logger.warning(
                "error syncing secret %s (retry %d)",
                key,
                self.queue.num_requeues(key) + 1,
            )
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)

    def process_next_item(self) -> bool:
        """Process one key; returns ``False`` once the queue is shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            try:
                result = self.sync_secret(key)
            except Exception:
                logger.exception("unexpected error syncing secret %s", key)
                result = SyncResult.TRANSIENT
            self._handle_result(key, result)
        finally:
            self.queue.done(key)
        return True

    def run_worker(self) -> None:
        while self.process_next_item():
            pass
        logger.debug("%s exiting", threading.current_thread().name)

    # -- Resync ------------------------------------------------------------------

    def resync_all(self) -> int:
        """Enqueue every cached key; returns how many were enqueued."""
        keys = self.cache.list_keys()
        for key in keys:
            self.queue.add(key)
        logger.info("resync: enqueued %d secret(s)", len(keys))
        return len(keys)

    # -- Lifecycle ---------------------------------------------------------------

    def start(self, threadiness: int) -> None:
        """Start *threadiness* workers and the periodic resync job.

        The cache must have synced before this is called.
        """
        for index in range(threadiness):
            worker = threading.Thread(
                target=self.run_worker, name=f"reconciler-{index}", daemon=True
            )
            worker.start()
            self._workers.append(worker)

        self._scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )
        self._scheduler.add_job(
            self.resync_all,
            trigger=IntervalTrigger(seconds=self.recheck_interval),
            id=RESYNC_JOB_ID,
            name="Re-enqueue all cached secrets",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "started %d worker(s); recheck every %ss", threadiness, self.recheck_interval
        )

    def shutdown(self, timeout: float) -> bool:
        """Stop the resync job and the queue, then wait for every worker.

        Returns ``True`` when all workers acknowledged within *timeout*
        seconds each.
        """
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=True)
            self._scheduler = None

        self.queue.shut_down()

        stopped = True
        for worker in self._workers:
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("%s did not stop within %ss", worker.name, timeout)
                stopped = False
        self._workers = []
        return stopped
