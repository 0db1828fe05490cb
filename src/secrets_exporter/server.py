"""
Secrets Exporter - Scrape Endpoint

FastAPI application exposing the certificate metrics on ``/metrics`` and a
liveness probe on ``/health``, served by uvicorn on a background thread.
"""

from __future__ import annotations

import logging
import threading

import uvicorn
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST

from secrets_exporter.metrics import CertificateMetrics
from secrets_exporter.store.cache import SecretCache

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(metrics: CertificateMetrics, cache: SecretCache) -> FastAPI:
    """Build the scrape application around an explicit metrics registry."""
    app = FastAPI(
        title="Secrets Certificate Exporter",
        description=(
            "Exposes the validity window of X.509 certificates found in "
            "Kubernetes secrets as Prometheus gauges."
        ),
        version=VERSION,
    )

    @app.get("/metrics", tags=["metrics"])
    def scrape() -> Response:
        """Current certificate gauges in the Prometheus text format."""
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health", tags=["health"])
    def health_check() -> dict:
        """Liveness probe."""
        return {
            "status": "healthy",
            "service": "secrets-exporter",
            "version": VERSION,
            "synced": cache.has_synced(),
            "secrets": len(cache),
        }

    return app


class MetricsServer:
    """Runs a uvicorn server for the scrape application on its own thread.

    A bind failure only ends this thread; reconciliation keeps running.
    """

    def __init__(self, app: FastAPI, host: str, port: int, log_level: str = "info") -> None:
        self.host = host
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level=log_level.lower(),
                lifespan="off",
            )
        )
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._serve, name="metrics-server", daemon=True
        )
        self._thread.start()

    def _serve(self) -> None:
        logger.info("exposing metrics on %s:%s", self.host, self.port)
        try:
            self._server.run()
        except (OSError, SystemExit) as exc:
            # uvicorn exits the serving coroutine with SystemExit on bind errors
            logger.error("error exposing metrics on %s:%s: %s", self.host, self.port, exc)

    @property
    def started(self) -> bool:
        return self._server.started

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
