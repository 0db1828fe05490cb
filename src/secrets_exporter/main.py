"""
Secrets Exporter entry point.

Wires the informer, work queue, reconciler and scrape endpoint together
and blocks until a shutdown signal (SIGINT / SIGTERM) is received.

Usage::

    python -m secrets_exporter.main
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Any

from pydantic import ValidationError

from secrets_exporter.errors import CacheSyncTimeout, StoreUnavailable
from secrets_exporter.metrics import CertificateMetrics
from secrets_exporter.reconciler import Reconciler
from secrets_exporter.server import MetricsServer, create_app
from secrets_exporter.settings import Settings
from secrets_exporter.store.cache import SecretCache
from secrets_exporter.store.informer import SecretInformer
from secrets_exporter.store.source import SecretSource
from secrets_exporter.util.logging import setup_logging
from secrets_exporter.workqueue.queue import RateLimitingQueue
from secrets_exporter.workqueue.ratelimit import ItemExponentialFailureRateLimiter

logger = logging.getLogger(__name__)

# Graceful-shutdown signal shared by every subsystem
_stop_event = threading.Event()


def _handle_signal(signum: int, frame: Any) -> None:
    """Signal handler for SIGINT / SIGTERM -- request graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s -- shutting down gracefully...", sig_name)
    _stop_event.set()


def _wait_for_cache(
    cache: SecretCache, timeout: float, stop_event: threading.Event
) -> bool:
    """Block until the initial list landed; ``False`` if stopped first.

    Raises ``CacheSyncTimeout`` when *timeout* seconds pass without a sync.
    """
    logger.info("waiting for cache to sync secrets")
    if cache.wait_for_sync(timeout, stop_event):
        logger.info("cache synced with %d secret(s)", len(cache))
        return True
    if stop_event.is_set():
        return False
    raise CacheSyncTimeout(f"timeout after {timeout}s while waiting for cache to sync")


def run_exporter(
    settings: Settings,
    source: SecretSource,
    stop_event: threading.Event,
) -> int:
    """Run the exporter until *stop_event* is set; returns the exit status.

    Exits with ``1`` when the cache does not sync within
    ``CACHE_SYNC_TIMEOUT`` so the process never serves a partial view.
    """
    cache = SecretCache()
    queue = RateLimitingQueue(
        ItemExponentialFailureRateLimiter(
            settings.BACKOFF_BASE_DELAY, settings.BACKOFF_MAX_DELAY
        ),
        name="secrets",
    )
    metrics = CertificateMetrics(namespace=settings.METRIC_NAMESPACE)
    reconciler = Reconciler(cache, queue, metrics, settings.RECHECK_INTERVAL)

    informer = SecretInformer(
        source, cache, settings.RESYNC_INTERVAL, settings.WATCH_TIMEOUT
    )
    informer.add_event_handler(reconciler.event_handler())
    server = MetricsServer(
        create_app(metrics, cache),
        settings.HOST,
        settings.METRIC_PORT,
        log_level=settings.LOG_LEVEL,
    )

    informer_thread = threading.Thread(
        target=informer.run, args=(stop_event,), name="secret-informer", daemon=True
    )

    def _shutdown() -> bool:
        informer.request_stop()
        drained = reconciler.shutdown(settings.SHUTDOWN_TIMEOUT)
        server.stop(settings.SHUTDOWN_TIMEOUT)
        if server.is_alive():
            logger.warning("metrics server did not stop in time")
        informer_thread.join(settings.SHUTDOWN_TIMEOUT)
        if informer_thread.is_alive():
            logger.warning("secret informer did not stop in time")
        return drained

    logger.info("starting new secrets exporter")
    informer_thread.start()
    server.start()

    try:
        synced = _wait_for_cache(cache, settings.CACHE_SYNC_TIMEOUT, stop_event)
    except CacheSyncTimeout as exc:
        logger.error("%s", exc)
        stop_event.set()
        _shutdown()
        return 1
    if not synced:
        _shutdown()
        return 0

    reconciler.start(settings.THREADINESS)

    stop_event.wait()
    if not _shutdown():
        logger.warning("some workers did not acknowledge shutdown")
    logger.info("secrets exporter stopped")
    return 0


def main() -> int:
    """Entry point for the exporter process.

    Sets up logging, builds the Kubernetes client and runs the exporter
    until a shutdown signal is received.
    """
    try:
        settings = Settings()
    except ValidationError as exc:
        setup_logging()
        logger.error("invalid configuration: %s", exc)
        return 1

    setup_logging(settings.LOG_LEVEL)

    # Register signal handlers
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    # Import here so logging is configured first
    from secrets_exporter.kube import load_core_api
    from secrets_exporter.store.source import KubernetesSecretSource

    try:
        core_api = load_core_api(settings.KUBECONFIG)
    except StoreUnavailable as exc:
        logger.error("%s", exc)
        return 1

    source = KubernetesSecretSource(core_api, settings.NAMESPACE)
    return run_exporter(settings, source, _stop_event)


def run() -> None:
    """Entry point for the ``secrets-exporter`` console script."""
    sys.exit(main())


if __name__ == "__main__":
    run()
