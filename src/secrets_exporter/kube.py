"""Kubernetes client bootstrap."""

from __future__ import annotations

import logging

from kubernetes import client, config

from secrets_exporter.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def load_core_api(kubeconfig: str = "") -> client.CoreV1Api:
    """Return a ``CoreV1Api`` for the configured cluster.

    With an explicit *kubeconfig* path that file is used.  Otherwise the
    in-cluster service account is tried first, falling back to the default
    kubeconfig for local development.

    Raises ``StoreUnavailable`` when no configuration can be loaded.
    """
    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
            logger.info("Loaded kubeconfig from %s", kubeconfig)
        else:
            try:
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config")
            except config.ConfigException:
                config.load_kube_config()
                logger.info("Loaded default kubeconfig")
    except (config.ConfigException, OSError) as exc:
        raise StoreUnavailable(f"error creating kubernetes client: {exc}") from exc

    return client.CoreV1Api()
