from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    AppsV1Api,
    BatchV1Api,
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

JSON_PATCH = "application/json-patch+json"
MERGE_PATCH = "application/merge-patch+json"
STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"


@dataclass(frozen=True)
class KubeClients:
    """API group clients shared by the watchers, the upgrader and the pauser."""

    core: CoreV1Api
    apps: AppsV1Api
    batch: BatchV1Api
    custom_objects: CustomObjectsApi
    coordination: CoordinationV1Api


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        batch=client.BatchV1Api(),
        custom_objects=client.CustomObjectsApi(),
        coordination=client.CoordinationV1Api(),
    )


_SERIALIZER: client.ApiClient | None = None


def to_plain(obj: Any) -> Any:
    """Convert a typed client model into the camelCase JSON tree the API serves.

    Dicts (custom objects, test fixtures) are returned unchanged.
    """
    global _SERIALIZER

    if obj is None or isinstance(obj, dict):
        return obj
    if _SERIALIZER is None:
        _SERIALIZER = client.ApiClient()
    return _SERIALIZER.sanitize_for_serialization(obj)

