from __future__ import annotations

from typing import Any

from reloader.src.resources import CONFIGMAP, SECRET

Container = dict[str, Any]


def _source_name(source: Any, resource_type: str) -> str | None:
    """Name of the ConfigMap/Secret a volume or projection source points at."""
    if not isinstance(source, dict):
        return None
    if resource_type == CONFIGMAP:
        ref = source.get("configMap")
        return ref.get("name") if isinstance(ref, dict) else None
    if resource_type == SECRET:
        ref = source.get("secret")
        if not isinstance(ref, dict):
            return None
        # Pod volumes use secretName, projected sources use name.
        return ref.get("secretName") or ref.get("name")
    return None


def volume_name_for_resource(
    volumes: list[dict[str, Any]], resource_name: str, resource_type: str
) -> str:
    for volume in volumes or []:
        if _source_name(volume, resource_type) == resource_name:
            return volume.get("name", "")
        projected = volume.get("projected") or {}
        for source in projected.get("sources") or []:
            if _source_name(source, resource_type) == resource_name:
                return volume.get("name", "")
    return ""


def container_with_volume_mount(containers: list[Container], volume_name: str) -> Container | None:
    for container in containers or []:
        for mount in container.get("volumeMounts") or []:
            if mount.get("name") == volume_name:
                return container
    return None


def _ref_name(ref: Any) -> str | None:
    return ref.get("name") if isinstance(ref, dict) else None


def container_with_env_reference(
    containers: list[Container], resource_name: str, resource_type: str
) -> Container | None:
    key_ref, env_from_ref = (
        ("configMapKeyRef", "configMapRef") if resource_type == CONFIGMAP else ("secretKeyRef", "secretRef")
    )
    for container in containers or []:
        for env in container.get("env") or []:
            value_from = env.get("valueFrom") or {}
            if _ref_name(value_from.get(key_ref)) == resource_name:
                return container
        for env_from in container.get("envFrom") or []:
            if _ref_name(env_from.get(env_from_ref)) == resource_name:
                return container
    return None


def get_container_using_resource(
    volumes: list[dict[str, Any]],
    containers: list[Container],
    init_containers: list[Container],
    resource_name: str,
    resource_type: str,
    auto_reload: bool,
) -> Container | None:
    """Pick the container that should carry the reload signal.

    Volume mounts win over env references. A reference found only on an init
    container is redirected to the first main container. Outside auto mode
    the first main container is the fallback.
    """
    if not containers:
        return None

    volume_name = volume_name_for_resource(volumes, resource_name, resource_type)
    if volume_name:
        container = container_with_volume_mount(containers, volume_name)
        if container is not None:
            return container
        if container_with_volume_mount(init_containers, volume_name) is not None:
            return containers[0]

    container = container_with_env_reference(containers, resource_name, resource_type)
    if container is not None:
        return container
    if container_with_env_reference(init_containers, resource_name, resource_type) is not None:
        return containers[0]

    if not auto_reload:
        return containers[0]
    return None
