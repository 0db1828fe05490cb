"""
Secrets Exporter - Certificate Metrics

Owns a private Prometheus registry with the two certificate gauges:

    <namespace>_certificate_not_before{host, secret, name}
    <namespace>_certificate_not_after{host, secret, name}

Values are Unix epoch seconds (UTC).  Reconciliation workers push samples
per secret with ``sync_secret``; every sample of that secret that is not
part of the new set is retracted, so fields that stopped being
certificates and deleted secrets disappear from the scrape output.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Mapping

from prometheus_client import CollectorRegistry, Gauge, generate_latest

from secrets_exporter.certificates.extract import CertificateRecord

logger = logging.getLogger(__name__)

METRIC_NAMESPACE = "secrets_exporter"
SUBSYSTEM_CERTIFICATE = "certificate"
LABEL_NAMES = ("host", "secret", "name")


class CertificateMetrics:
    """Metric registry for certificate validity windows."""

    def __init__(
        self,
        namespace: str = METRIC_NAMESPACE,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self.not_before = Gauge(
            "not_before",
            "Certificate is not valid before.",
            LABEL_NAMES,
            namespace=namespace,
            subsystem=SUBSYSTEM_CERTIFICATE,
            registry=self.registry,
        )
        self.not_after = Gauge(
            "not_after",
            "Certificate is not valid after.",
            LABEL_NAMES,
            namespace=namespace,
            subsystem=SUBSYSTEM_CERTIFICATE,
            registry=self.registry,
        )
        prefix = "_".join(part for part in (namespace, SUBSYSTEM_CERTIFICATE) if part)
        self._not_before_name = f"{prefix}_not_before"
        self._not_after_name = f"{prefix}_not_after"
        # secret key -> field name -> host label of the emitted sample; the
        # inner dicts are replaced, never mutated, once published
        self._emitted: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()
        # per-secret writer locks; dropped once no writer holds them
        self._secret_locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, secret: str) -> threading.Lock:
        with self._lock:
            lock = self._secret_locks.get(secret)
            if lock is None:
                lock = threading.Lock()
                self._secret_locks[secret] = lock
            return lock

    def _emitted_fields(self, secret: str) -> dict[str, str]:
        with self._lock:
            return self._emitted.get(secret, {})

    def _publish(self, secret: str, fields: dict[str, str]) -> None:
        with self._lock:
            if fields:
                self._emitted[secret] = fields
            else:
                self._emitted.pop(secret, None)

    def _set(
        self,
        previous: dict[str, str],
        host: str,
        secret: str,
        name: str,
        not_before: float,
        not_after: float,
    ) -> None:
        previous_host = previous.get(name)
        if previous_host is not None and previous_host != host:
            self._remove(previous_host, secret, name)
        self.not_before.labels(host, secret, name).set(not_before)
        self.not_after.labels(host, secret, name).set(not_after)

    def upsert(
        self, host: str, secret: str, name: str, not_before: float, not_after: float
    ) -> None:
        """Set both gauges for one ``(host, secret, name)`` label set."""
        with self._lock_for(secret):
            fields = dict(self._emitted_fields(secret))
            self._set(fields, host, secret, name, not_before, not_after)
            fields[name] = host
            self._publish(secret, fields)

    def sync_secret(
        self, secret: str, records: Mapping[str, CertificateRecord]
    ) -> int:
        """Make the samples of *secret* match *records* exactly.

        *records* maps field names to the certificates currently decoded
        from them.  Returns the number of retracted samples.
        """
        with self._lock_for(secret):
            previous = self._emitted_fields(secret)
            stale = {
                name: host for name, host in previous.items() if name not in records
            }
            for name, host in stale.items():
                self._remove(host, secret, name)

            fields: dict[str, str] = {}
            for name, record in records.items():
                self._set(
                    previous,
                    record.host,
                    secret,
                    name,
                    float(int(record.not_before.timestamp())),
                    float(int(record.not_after.timestamp())),
                )
                fields[name] = record.host
            self._publish(secret, fields)

        if stale:
            logger.info(
                "retracted %d stale certificate sample(s) of secret %s",
                len(stale),
                secret,
            )
        return len(stale)

    def retract_secret(self, secret: str) -> int:
        """Remove every sample of *secret*; returns how many were removed."""
        return self.sync_secret(secret, {})

    def samples(self) -> dict[tuple[str, str, str], tuple[float, float]]:
        """Snapshot of ``(host, secret, name) -> (not_before, not_after)``."""
        with self._lock:
            emitted = list(self._emitted.items())

        snapshot: dict[tuple[str, str, str], tuple[float, float]] = {}
        for secret, fields in emitted:
            for name, host in fields.items():
                labels = {"host": host, "secret": secret, "name": name}
                snapshot[(host, secret, name)] = (
                    self.registry.get_sample_value(self._not_before_name, labels),
                    self.registry.get_sample_value(self._not_after_name, labels),
                )
        return snapshot

    def render(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def _remove(self, host: str, secret: str, name: str) -> None:
        self.not_before.remove(host, secret, name)
        self.not_after.remove(host, secret, name)
