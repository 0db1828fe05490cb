"""
Secrets Exporter - Tracked Secret Model

Typed, immutable view of a Kubernetes secret as held by the local cache.
Secret data arrives base64-encoded from the API and is decoded once, when
the object enters the cache.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any

from secrets_exporter.errors import KeyDerivationError

logger = logging.getLogger(__name__)


def object_key(namespace: str | None, name: str) -> str:
    """Return ``"<namespace>/<name>"``, or just ``name`` without a namespace."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> tuple[str, str]:
    """Split an object key into ``(namespace, name)``.

    Raises ``KeyDerivationError`` for keys with more than one separator or
    an empty name.
    """
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise KeyDerivationError(f"unexpected key format: {key!r}")


@dataclass(frozen=True)
class TrackedSecret:
    """A secret as mirrored in the local cache."""

    namespace: str
    name: str
    data: dict[str, bytes] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)

    @classmethod
    def from_v1_secret(cls, secret: Any) -> "TrackedSecret":
        """Build a tracked secret from a ``kubernetes.client.V1Secret``.

        Raises ``KeyDerivationError`` when the object has no metadata or no
        name, since no key can be computed for it.
        """
        metadata = getattr(secret, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            raise KeyDerivationError(
                f"object has no metadata.name: {type(secret).__name__}"
            )

        raw_data = getattr(secret, "data", None) or {}
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=name,
            data={
                k: _decode_value(v)
                for k, v in raw_data.items()
                if isinstance(k, str)
            },
            resource_version=getattr(metadata, "resource_version", None),
        )


def _decode_value(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        logger.debug("secret value is not base64; keeping it verbatim")
        return str(value).encode("utf-8")
