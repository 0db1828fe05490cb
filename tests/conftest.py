"""Shared pytest fixtures for secrets exporter tests.

Certificates are generated with ``cryptography`` at fixture time and the
Kubernetes API is replaced by an in-memory secret source, so tests never
touch a real cluster.
"""

from __future__ import annotations

import base64
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from kubernetes.client import V1ObjectMeta, V1Secret

from secrets_exporter.errors import ResourceExpired
from secrets_exporter.metrics import CertificateMetrics
from secrets_exporter.reconciler import Reconciler
from secrets_exporter.store.cache import SecretCache
from secrets_exporter.workqueue.queue import RateLimitingQueue
from secrets_exporter.workqueue.ratelimit import ItemExponentialFailureRateLimiter

NOT_BEFORE = datetime(2020, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2021, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def make_certificate(signing_key) -> Callable[..., bytes]:
    """Return a factory producing self-signed PEM certificates."""

    def _make(
        dns_names: tuple[str, ...] = ("example.com",),
        not_before: datetime = NOT_BEFORE,
        not_after: datetime = NOT_AFTER,
        common_name: str = "example.com",
    ) -> bytes:
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(signing_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
        )
        if dns_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
                critical=False,
            )
        cert = builder.sign(signing_key, hashes.SHA256())
        return cert.public_bytes(serialization.Encoding.PEM)

    return _make


@pytest.fixture(scope="session")
def certificate_pem(make_certificate) -> bytes:
    """Certificate for example.com valid 2020-01-01 .. 2021-01-01 (UTC)."""
    return make_certificate()


@pytest.fixture(scope="session")
def private_key_pem(signing_key) -> bytes:
    return signing_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def duplicate_san_certificate_pem(signing_key) -> bytes:
    """Certificate carrying two subjectAltName extensions.

    The builder refuses duplicates, so an issuerAltName extension with the
    same encoded length is rewritten to the subjectAltName OID in the DER.
    """
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "example.com")])
    alt_names = [x509.DNSName("example.com")]
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(signing_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOT_BEFORE)
        .not_valid_after(NOT_AFTER)
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.IssuerAlternativeName(alt_names), critical=False)
        .sign(signing_key, hashes.SHA256())
    )
    der = cert.public_bytes(serialization.Encoding.DER)
    issuer_alt_name_oid = b"\x06\x03\x55\x1d\x12"
    subject_alt_name_oid = b"\x06\x03\x55\x1d\x11"
    assert der.count(issuer_alt_name_oid) == 1
    der = der.replace(issuer_alt_name_oid, subject_alt_name_oid)

    body = base64.encodebytes(der)
    return b"-----BEGIN CERTIFICATE-----\n" + body + b"-----END CERTIFICATE-----\n"


# ---------------------------------------------------------------------------
# Kubernetes secrets
# ---------------------------------------------------------------------------

def _encode(data: dict[str, bytes]) -> dict[str, str]:
    return {k: base64.b64encode(v).decode("ascii") for k, v in data.items()}


@pytest.fixture()
def make_secret() -> Callable[..., V1Secret]:
    """Return a factory for ``V1Secret`` objects with base64-encoded data."""

    def _make(
        name: str,
        data: dict[str, bytes],
        namespace: str = "default",
        resource_version: str | None = None,
    ) -> V1Secret:
        return V1Secret(
            metadata=V1ObjectMeta(
                name=name, namespace=namespace, resource_version=resource_version
            ),
            data=_encode(data),
        )

    return _make


class FakeSecretSource:
    """In-memory secret source with a scriptable watch stream."""

    def __init__(self, namespace: str = "") -> None:
        self.namespace = namespace
        self.list_calls = 0
        self.list_error: Exception | None = None
        self.expire_next_watch = False
        self._objects: dict[str, V1Secret] = {}
        self._events: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._stopped = threading.Event()
        self._resource_version = 0
        self._lock = threading.Lock()

    def _bump(self, secret: V1Secret) -> str:
        self._resource_version += 1
        secret.metadata.resource_version = str(self._resource_version)
        return f"{secret.metadata.namespace}/{secret.metadata.name}"

    def seed(self, secret: V1Secret) -> None:
        """Store *secret* without emitting a watch event."""
        with self._lock:
            self._objects[self._bump(secret)] = secret

    def put(self, secret: V1Secret) -> None:
        """Create or replace *secret* and emit the matching watch event."""
        with self._lock:
            key = self._bump(secret)
            event_type = "MODIFIED" if key in self._objects else "ADDED"
            self._objects[key] = secret
        self._events.put((event_type, secret))

    def delete(self, namespace: str, name: str) -> None:
        with self._lock:
            secret = self._objects.pop(f"{namespace}/{name}")
        self._events.put(("DELETED", secret))

    def list_secrets(self) -> tuple[list[Any], str | None]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        with self._lock:
            return list(self._objects.values()), str(self._resource_version)

    def watch_secrets(
        self, resource_version: str | None, timeout_seconds: int
    ) -> Iterator[tuple[str, Any]]:
        if self.expire_next_watch:
            self.expire_next_watch = False
            raise ResourceExpired(f"resource version {resource_version} expired")

        deadline = time.monotonic() + min(timeout_seconds, 0.2)
        while not self._stopped.is_set() and time.monotonic() < deadline:
            try:
                yield self._events.get(timeout=0.02)
            except queue.Empty:
                continue

    def stop(self) -> None:
        self._stopped.set()


@pytest.fixture()
def fake_source() -> FakeSecretSource:
    return FakeSecretSource()


# ---------------------------------------------------------------------------
# Reconciliation building blocks
# ---------------------------------------------------------------------------

@pytest.fixture()
def cache() -> SecretCache:
    return SecretCache()


@pytest.fixture()
def work_queue() -> Iterator[RateLimitingQueue]:
    """Queue with millisecond backoff so rate-limited adds arrive quickly."""
    q = RateLimitingQueue(
        ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=0.1),
        name="test-queue",
    )
    yield q
    q.shut_down()


@pytest.fixture()
def metrics() -> CertificateMetrics:
    return CertificateMetrics()


@pytest.fixture()
def reconciler(cache, work_queue, metrics) -> Reconciler:
    return Reconciler(cache, work_queue, metrics, recheck_interval=3600)


@pytest.fixture()
def wait_for() -> Callable[..., bool]:
    """Poll *predicate* until it is true or *timeout* seconds pass."""

    def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait
