"""
Secrets Exporter - Secret Source

The list/watch capability of the external secret store.  The informer
only depends on the :class:`SecretSource` protocol; the Kubernetes
implementation wraps ``CoreV1Api`` and the ``kubernetes.watch`` stream.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from secrets_exporter.errors import ResourceExpired, StoreUnauthorized

logger = logging.getLogger(__name__)

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_GONE = 410


def _raise_for_auth(exc: ApiException) -> None:
    if exc.status in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
        raise StoreUnauthorized(
            f"{exc.status} {exc.reason}: check the service account RBAC for secrets"
        ) from exc


class SecretSource(Protocol):
    """List/watch access to a (possibly namespace-scoped) secret collection."""

    namespace: str

    def list_secrets(self) -> tuple[list[Any], str | None]:
        """Return every current secret and the list's resource version."""
        ...

    def watch_secrets(
        self, resource_version: str | None, timeout_seconds: int
    ) -> Iterator[tuple[str, Any]]:
        """Yield ``(event_type, object)`` pairs until the watch times out.

        Raises ``ResourceExpired`` when *resource_version* is too old.
        """
        ...

    def stop(self) -> None:
        """Interrupt an open watch stream."""
        ...


class KubernetesSecretSource:
    """Secret source backed by the Kubernetes API server."""

    def __init__(self, core_api: CoreV1Api, namespace: str = "") -> None:
        self.core_api = core_api
        self.namespace = namespace
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_call(self) -> tuple[Any, tuple[Any, ...]]:
        if self.namespace:
            return self.core_api.list_namespaced_secret, (self.namespace,)
        return self.core_api.list_secret_for_all_namespaces, ()

    def list_secrets(self) -> tuple[list[Any], str | None]:
        func, args = self._list_call()
        try:
            result = func(*args)
        except ApiException as exc:
            _raise_for_auth(exc)
            raise
        resource_version = getattr(
            getattr(result, "metadata", None), "resource_version", None
        )
        return list(result.items or []), resource_version

    def watch_secrets(
        self, resource_version: str | None, timeout_seconds: int
    ) -> Iterator[tuple[str, Any]]:
        func, args = self._list_call()
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher

        kwargs: dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version

        try:
            for event in watcher.stream(func, *args, **kwargs):
                obj = event.get("object")
                if obj is None:
                    continue
                yield str(event.get("type", "")), obj
        except ApiException as exc:
            # 410 Gone means etcd compacted past our resourceVersion
            if exc.status == HTTP_GONE:
                raise ResourceExpired(
                    f"resource version {resource_version} expired"
                ) from exc
            _raise_for_auth(exc)
            raise
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def stop(self) -> None:
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
