from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from reloader.src.config import ReloaderOptions
from reloader.src.hashing import config_map_fingerprint, secret_fingerprint

CONFIGMAP = "CONFIGMAP"
SECRET = "SECRET"

KIND_BY_TYPE = {CONFIGMAP: "ConfigMap", SECRET: "Secret"}


@dataclass(frozen=True)
class Config:
    """Per-event context handed to the reload engine.

    Built once from the watched ConfigMap or Secret and never mutated while
    the workloads of its namespace are processed.
    """

    namespace: str
    resource_name: str
    resource_type: str
    sha_value: str
    annotation: str
    typed_auto_annotation: str
    old_sha_value: str = ""
    resource_annotations: dict[str, str] = field(default_factory=dict)
    resource_labels: dict[str, str] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return KIND_BY_TYPE[self.resource_type]


def _metadata(resource: Any) -> Any:
    if isinstance(resource, dict):
        return resource.get("metadata") or {}
    return getattr(resource, "metadata", None)


def _meta_field(metadata: Any, name: str) -> Any:
    if isinstance(metadata, dict):
        return metadata.get(name)
    return getattr(metadata, name, None)


def build_config(
    resource: Any,
    resource_type: str,
    options: ReloaderOptions,
    *,
    sha_value: str | None = None,
    old_sha_value: str = "",
) -> Config:
    """Build the :class:`Config` for a ConfigMap or Secret.

    *sha_value* overrides the computed fingerprint, which the delete path
    uses to substitute the empty-data fingerprint.
    """
    keys = options.annotations
    metadata = _metadata(resource)
    if resource_type == CONFIGMAP:
        annotation, typed_auto = keys.configmap_reload, keys.configmap_auto
        computed = config_map_fingerprint
    elif resource_type == SECRET:
        annotation, typed_auto = keys.secret_reload, keys.secret_auto
        computed = secret_fingerprint
    else:
        raise ValueError(f"unknown resource type: {resource_type!r}")

    return Config(
        namespace=_meta_field(metadata, "namespace") or "",
        resource_name=_meta_field(metadata, "name") or "",
        resource_type=resource_type,
        sha_value=sha_value if sha_value is not None else computed(resource),
        old_sha_value=old_sha_value,
        annotation=annotation,
        typed_auto_annotation=typed_auto,
        resource_annotations=dict(_meta_field(metadata, "annotations") or {}),
        resource_labels=dict(_meta_field(metadata, "labels") or {}),
    )
