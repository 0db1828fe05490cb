"""Tests for the scrape endpoint."""

from __future__ import annotations

import socket
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from secrets_exporter.certificates.extract import CertificateRecord
from secrets_exporter.server import VERSION, MetricsServer, create_app
from secrets_exporter.store.cache import ADDED
from secrets_exporter.store.models import TrackedSecret


@pytest.fixture()
def client(metrics, cache) -> TestClient:
    return TestClient(create_app(metrics, cache))


class TestMetricsEndpoint:

    def test_exposes_certificate_gauges(self, client, metrics):
        metrics.sync_secret(
            "default/web",
            {
                "tls.crt": CertificateRecord(
                    dns_names=("example.com",),
                    not_before=datetime(2020, 1, 1, tzinfo=timezone.utc),
                    not_after=datetime(2021, 1, 1, tzinfo=timezone.utc),
                )
            },
        )

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        samples = [
            line
            for line in response.text.splitlines()
            if line.startswith("secrets_exporter_certificate_not_after{")
        ]
        assert len(samples) == 1
        assert 'host="example.com"' in samples[0]
        assert 'secret="default/web"' in samples[0]
        assert 'name="tls.crt"' in samples[0]
        assert samples[0].endswith(" 1.6094592e+09")

    def test_empty_registry_still_describes_the_gauges(self, client):
        body = client.get("/metrics").text

        assert "# HELP secrets_exporter_certificate_not_before" in body
        assert "# HELP secrets_exporter_certificate_not_after" in body


class TestHealthEndpoint:

    def test_reports_cache_state(self, client, cache):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "service": "secrets-exporter",
            "version": VERSION,
            "synced": False,
            "secrets": 0,
        }

        cache.apply(ADDED, TrackedSecret(namespace="default", name="web", data={}))
        cache.mark_synced()

        data = client.get("/health").json()
        assert data["synced"] is True
        assert data["secrets"] == 1


class TestMetricsServer:

    def test_bind_failure_only_ends_the_server_thread(self, metrics, cache, wait_for):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as occupied:
            occupied.bind(("127.0.0.1", 0))
            occupied.listen(1)
            port = occupied.getsockname()[1]

            server = MetricsServer(create_app(metrics, cache), "127.0.0.1", port)
            server.start()

            assert wait_for(lambda: not server.is_alive(), timeout=10)
            assert server.started is False

    def test_serves_until_stopped(self, metrics, cache, wait_for):
        server = MetricsServer(create_app(metrics, cache), "127.0.0.1", 0)
        server.start()
        try:
            assert wait_for(lambda: server.started, timeout=10)
        finally:
            server.stop(timeout=5)

        assert not server.is_alive()
