from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException

from reloader.src.config import AnnotationKeys, ReloaderOptions
from reloader.src.kube import MERGE_PATCH, KubeClients, to_plain

LOGGER = logging.getLogger(__name__)

Item = dict[str, Any]

_JOB_SYSTEM_LABELS = (
    "controller-uid",
    "batch.kubernetes.io/controller-uid",
    "batch.kubernetes.io/job-name",
    "job-name",
)

ROLLOUT_GROUP = "argoproj.io"
ROLLOUT_VERSION = "v1alpha1"
ROLLOUT_PLURAL = "rollouts"
KNATIVE_SERVICE_GROUP = "serving.knative.dev"
KNATIVE_SERVICE_VERSION = "v1"
KNATIVE_SERVICE_PLURAL = "services"


class ReloaderError(Exception):
    """Base class for errors raised by the reload engine."""


class PatchNotSupportedError(ReloaderError):
    """Raised by adapters whose kind cannot be patched; callers fall back to update."""


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def get_path(tree: Any, path: tuple[str, ...], default: Any = None) -> Any:
    """Walk *path* through nested dicts, returning *default* on any missing hop."""
    node = tree
    for key in path:
        if not isinstance(node, dict) or key not in node or node[key] is None:
            return default
        node = node[key]
    return node


def ensure_path(tree: Item, path: tuple[str, ...]) -> Item:
    """Return the dict at *path*, creating empty dicts for missing hops."""
    node = tree
    for key in path:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    return node


@dataclass(frozen=True)
class PatchTemplates:
    """Builders for the minimal patch bodies sent instead of a full update."""

    annotations: Callable[[dict[str, str]], Any]
    env_var: Callable[[str, str, str], Any]
    delete_env_var: Callable[[int, int], Any]


def _annotation_patch(annotations: dict[str, str]) -> Any:
    return {"spec": {"template": {"metadata": {"annotations": dict(annotations)}}}}


def _env_var_patch(container: str, name: str, value: str) -> Any:
    return {
        "spec": {
            "template": {
                "spec": {
                    "containers": [{"name": container, "env": [{"name": name, "value": value}]}]
                }
            }
        }
    }


def _delete_env_var_patch(container_index: int, env_index: int) -> Any:
    return [
        {
            "op": "remove",
            "path": f"/spec/template/spec/containers/{container_index}/env/{env_index}",
        }
    ]


POD_TEMPLATE_PATCHES = PatchTemplates(
    annotations=_annotation_patch,
    env_var=_env_var_patch,
    delete_env_var=_delete_env_var_patch,
)


@dataclass(frozen=True)
class WorkloadAdapter:
    """One row of the workload table: how to list, read and persist a kind.

    Items are plain JSON-like dicts for every kind so the reload engine can
    treat typed and custom resources the same way.
    """

    kind: str
    template_path: tuple[str, ...]
    list_items: Callable[[KubeClients, str], list[Item]]
    update: Callable[[KubeClients, str, Item], None]
    patch: Callable[[KubeClients, str, Item, str, Any], None]
    supports_patch: bool
    patch_templates: PatchTemplates = POD_TEMPLATE_PATCHES

    def name(self, item: Item) -> str:
        return get_path(item, ("metadata", "name"), "")

    def containers(self, item: Item) -> list[dict[str, Any]]:
        return get_path(item, self.template_path + ("spec", "containers"), [])

    def init_containers(self, item: Item) -> list[dict[str, Any]]:
        return get_path(item, self.template_path + ("spec", "initContainers"), [])

    def volumes(self, item: Item) -> list[dict[str, Any]]:
        return get_path(item, self.template_path + ("spec", "volumes"), [])

    def annotations(self, item: Item) -> dict[str, str]:
        return ensure_path(item, ("metadata", "annotations"))

    def pod_annotations(self, item: Item) -> dict[str, str]:
        return ensure_path(item, self.template_path + ("metadata", "annotations"))


def _unsupported_patch(kind: str) -> Callable[[KubeClients, str, Item, str, Any], None]:
    def _patch(
        clients: KubeClients, namespace: str, item: Item, patch_type: str, body: Any
    ) -> None:
        raise PatchNotSupportedError(f"not supported patching: {kind}")

    return _patch


def _plain_items(result: Any) -> list[Item]:
    return [to_plain(item) for item in (getattr(result, "items", None) or [])]


# Deployment / DaemonSet / StatefulSet


def _list_deployments(clients: KubeClients, namespace: str) -> list[Item]:
    return _plain_items(clients.apps.list_namespaced_deployment(namespace=namespace))


def _update_deployment(clients: KubeClients, namespace: str, item: Item) -> None:
    clients.apps.replace_namespaced_deployment(
        name=item["metadata"]["name"], namespace=namespace, body=item
    )


def _patch_deployment(
    clients: KubeClients, namespace: str, item: Item, patch_type: str, body: Any
) -> None:
    clients.apps.patch_namespaced_deployment(
        name=item["metadata"]["name"], namespace=namespace, body=body, _content_type=patch_type
    )


def _list_daemon_sets(clients: KubeClients, namespace: str) -> list[Item]:
    return _plain_items(clients.apps.list_namespaced_daemon_set(namespace=namespace))


def _update_daemon_set(clients: KubeClients, namespace: str, item: Item) -> None:
    clients.apps.replace_namespaced_daemon_set(
        name=item["metadata"]["name"], namespace=namespace, body=item
    )


def _patch_daemon_set(
    clients: KubeClients, namespace: str, item: Item, patch_type: str, body: Any
) -> None:
    clients.apps.patch_namespaced_daemon_set(
        name=item["metadata"]["name"], namespace=namespace, body=body, _content_type=patch_type
    )


def _list_stateful_sets(clients: KubeClients, namespace: str) -> list[Item]:
    return _plain_items(clients.apps.list_namespaced_stateful_set(namespace=namespace))


def _update_stateful_set(clients: KubeClients, namespace: str, item: Item) -> None:
    clients.apps.replace_namespaced_stateful_set(
        name=item["metadata"]["name"], namespace=namespace, body=item
    )


def _patch_stateful_set(
    clients: KubeClients, namespace: str, item: Item, patch_type: str, body: Any
) -> None:
    clients.apps.patch_namespaced_stateful_set(
        name=item["metadata"]["name"], namespace=namespace, body=body, _content_type=patch_type
    )


# Job / CronJob


def _list_jobs(clients: KubeClients, namespace: str) -> list[Item]:
    return _plain_items(clients.batch.list_namespaced_job(namespace=namespace))


def recreated_job_body(job: Item) -> Item:
    """Return a creatable copy of *job* without server-assigned fields.

    The copy gets a generated name derived from the original so the new Job
    never collides with the one still terminating in the background.
    """
    body = copy.deepcopy(job)
    body.pop("status", None)
    metadata = body.setdefault("metadata", {})
    name = metadata.pop("name", "")
    for key in ("resourceVersion", "uid", "creationTimestamp", "managedFields", "selfLink"):
        metadata.pop(key, None)
    if name:
        metadata["generateName"] = f"{name}-"
    for labels in (
        metadata.get("labels"),
        get_path(body, ("spec", "template", "metadata", "labels")),
    ):
        if isinstance(labels, dict):
            for label in _JOB_SYSTEM_LABELS:
                labels.pop(label, None)
    spec = body.get("spec")
    if isinstance(spec, dict):
        spec.pop("selector", None)
        spec.pop("manualSelector", None)
    return body


def _update_job(clients: KubeClients, namespace: str, item: Item) -> None:
    clients.batch.delete_namespaced_job(
        name=item["metadata"]["name"], namespace=namespace, propagation_policy="Background"
    )
    clients.batch.create_namespaced_job(namespace=namespace, body=recreated_job_body(item))


def _list_cron_jobs(clients: KubeClients, namespace: str) -> list[Item]:
    return _plain_items(clients.batch.list_namespaced_cron_job(namespace=namespace))


def job_from_cron_job(cron_job: Item) -> Item:
    """Build a manually instantiated Job from *cron_job*'s job template."""
    metadata = cron_job.get("metadata", {})
    job_template = get_path(cron_job, ("spec", "jobTemplate"), {})
    template_metadata = job_template.get("metadata") or {}
    annotations = {"cronjob.kubernetes.io/instantiate": "manual"}
    annotations.update(template_metadata.get("annotations") or {})
    job_metadata: Item = {
        "generateName": f"{metadata.get('name', '')}-",
        "namespace": metadata.get("namespace"),
        "annotations": annotations,
        "ownerReferences": [
            {
                "apiVersion": "batch/v1",
                "kind": "CronJob",
                "name": metadata.get("name"),
                "uid": metadata.get("uid"),
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ],
    }
    if template_metadata.get("labels"):
        job_metadata["labels"] = dict(template_metadata["labels"])
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": job_metadata,
        "spec": copy.deepcopy(job_template.get("spec") or {}),
    }


def _update_cron_job(clients: KubeClients, namespace: str, item: Item) -> None:
    clients.batch.create_namespaced_job(namespace=namespace, body=job_from_cron_job(item))


# Custom resources


def _list_custom_objects(
    clients: KubeClients, namespace: str, group: str, version: str, plural: str
) -> list[Item]:
    try:
        result = clients.custom_objects.list_namespaced_custom_object(
            group=group, version=version, namespace=namespace, plural=plural
        )
    except ApiException as exc:
        if exc.status == 404:
            LOGGER.warning(
                "%s.%s/%s not served by the API server; skipping", plural, group, version
            )
            return []
        raise
    return list((result or {}).get("items") or [])


def _list_rollouts(clients: KubeClients, namespace: str) -> list[Item]:
    return _list_custom_objects(clients, namespace, ROLLOUT_GROUP, ROLLOUT_VERSION, ROLLOUT_PLURAL)


def _rollout_updater(
    annotations: AnnotationKeys, now_fn: Callable[[], str]
) -> Callable[[KubeClients, str, Item], None]:
    def _update(clients: KubeClients, namespace: str, item: Item) -> None:
        strategy = get_path(item, ("metadata", "annotations", annotations.rollout_strategy), "")
        name = item["metadata"]["name"]
        if strategy.strip().lower() == "restart":
            clients.custom_objects.patch_namespaced_custom_object(
                group=ROLLOUT_GROUP,
                version=ROLLOUT_VERSION,
                namespace=namespace,
                plural=ROLLOUT_PLURAL,
                name=name,
                body={"spec": {"restartAt": now_fn()}},
                _content_type=MERGE_PATCH,
            )
            return
        clients.custom_objects.replace_namespaced_custom_object(
            group=ROLLOUT_GROUP,
            version=ROLLOUT_VERSION,
            namespace=namespace,
            plural=ROLLOUT_PLURAL,
            name=name,
            body=item,
        )

    return _update


def _list_knative_services(clients: KubeClients, namespace: str) -> list[Item]:
    return _list_custom_objects(
        clients, namespace, KNATIVE_SERVICE_GROUP, KNATIVE_SERVICE_VERSION, KNATIVE_SERVICE_PLURAL
    )


def _update_knative_service(clients: KubeClients, namespace: str, item: Item) -> None:
    clients.custom_objects.replace_namespaced_custom_object(
        group=KNATIVE_SERVICE_GROUP,
        version=KNATIVE_SERVICE_VERSION,
        namespace=namespace,
        plural=KNATIVE_SERVICE_PLURAL,
        name=item["metadata"]["name"],
        body=item,
    )


DEPLOYMENT = WorkloadAdapter(
    kind="Deployment",
    template_path=("spec", "template"),
    list_items=_list_deployments,
    update=_update_deployment,
    patch=_patch_deployment,
    supports_patch=True,
)
DAEMON_SET = WorkloadAdapter(
    kind="DaemonSet",
    template_path=("spec", "template"),
    list_items=_list_daemon_sets,
    update=_update_daemon_set,
    patch=_patch_daemon_set,
    supports_patch=True,
)
STATEFUL_SET = WorkloadAdapter(
    kind="StatefulSet",
    template_path=("spec", "template"),
    list_items=_list_stateful_sets,
    update=_update_stateful_set,
    patch=_patch_stateful_set,
    supports_patch=True,
)
JOB = WorkloadAdapter(
    kind="Job",
    template_path=("spec", "template"),
    list_items=_list_jobs,
    update=_update_job,
    patch=_unsupported_patch("Job"),
    supports_patch=False,
)
CRON_JOB = WorkloadAdapter(
    kind="CronJob",
    template_path=("spec", "jobTemplate", "spec", "template"),
    list_items=_list_cron_jobs,
    update=_update_cron_job,
    patch=_unsupported_patch("CronJob"),
    supports_patch=False,
)
KNATIVE_SERVICE = WorkloadAdapter(
    kind="Service",
    template_path=("spec", "template"),
    list_items=_list_knative_services,
    update=_update_knative_service,
    patch=_unsupported_patch("Service"),
    supports_patch=False,
)


def rollout_adapter(
    annotations: AnnotationKeys, now_fn: Callable[[], str] = utc_now_rfc3339
) -> WorkloadAdapter:
    return WorkloadAdapter(
        kind="Rollout",
        template_path=("spec", "template"),
        list_items=_list_rollouts,
        update=_rollout_updater(annotations, now_fn),
        patch=_unsupported_patch("Rollout"),
        supports_patch=False,
    )


def build_adapter_table(options: ReloaderOptions) -> list[WorkloadAdapter]:
    """Return the adapters enabled by *options*, in processing order."""
    table = [DEPLOYMENT]
    if "cronjobs" not in options.ignored_workload_types:
        table.append(CRON_JOB)
    if "jobs" not in options.ignored_workload_types:
        table.append(JOB)
    table.extend([DAEMON_SET, STATEFUL_SET])
    if options.argo_rollouts_enabled:
        table.append(rollout_adapter(options.annotations))
    if options.knative_services_enabled:
        table.append(KNATIVE_SERVICE)
    return table
