"""Exceptions raised by the secrets exporter."""

from __future__ import annotations


class ExporterError(Exception):
    """Base class for all exporter errors."""


class KeyDerivationError(ExporterError):
    """An object from the change feed carries no usable name."""


class ResourceExpired(ExporterError):
    """The watch resource version is too old; a full re-list is required."""


class StoreUnauthorized(ExporterError):
    """The store rejected our credentials (401) or permissions (403)."""


class StoreUnavailable(ExporterError):
    """The client for the external secret store could not be created."""


class CacheSyncTimeout(ExporterError):
    """The local cache did not finish its initial list in time."""
