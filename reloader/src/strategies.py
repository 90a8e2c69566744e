from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from reloader.src.config import RELOAD_STRATEGY_ANNOTATIONS, ReloaderOptions
from reloader.src.containers import get_container_using_resource
from reloader.src.kube import JSON_PATCH, STRATEGIC_MERGE_PATCH
from reloader.src.resources import Config
from reloader.src.workloads import Item, WorkloadAdapter

ENV_VAR_PREFIX = "STAKATER_"


class ReloadResult(enum.Enum):
    UPDATED = "updated"
    NOT_UPDATED = "not-updated"
    NO_CONTAINER_FOUND = "no-container-found"


@dataclass(frozen=True)
class Patch:
    patch_type: str
    body: Any


@dataclass(frozen=True)
class StrategyResult:
    """Outcome of applying a strategy to one workload.

    ``patch`` is set only for ``UPDATED`` results on patch-capable kinds; the
    item itself has been mutated either way so a full update stays possible.
    """

    result: ReloadResult
    patch: Patch | None = None


NOT_UPDATED = StrategyResult(ReloadResult.NOT_UPDATED)
NO_CONTAINER_FOUND = StrategyResult(ReloadResult.NO_CONTAINER_FOUND)

InvokeStrategy = Callable[[WorkloadAdapter, Item, Config, bool, ReloaderOptions], StrategyResult]


def convert_to_env_var_name(text: str) -> str:
    """Upper-case *text*, collapsing every run of other characters into one ``_``.

    A leading run is dropped, e.g. ``www.stakater.com`` becomes ``WWW_STAKATER_COM``.
    """
    chars: list[str] = []
    last_valid = False
    for ch in text.upper():
        if ("A" <= ch <= "Z") or ("0" <= ch <= "9"):
            chars.append(ch)
            last_valid = True
        else:
            if last_valid:
                chars.append("_")
            last_valid = False
    return "".join(chars)


def env_var_name(resource_name: str, resource_type: str) -> str:
    return f"{ENV_VAR_PREFIX}{convert_to_env_var_name(resource_name)}_{resource_type}"


def _target_container(
    adapter: WorkloadAdapter, item: Item, config: Config, auto_reload: bool
) -> dict[str, Any] | None:
    return get_container_using_resource(
        volumes=adapter.volumes(item),
        containers=adapter.containers(item),
        init_containers=adapter.init_containers(item),
        resource_name=config.resource_name,
        resource_type=config.resource_type,
        auto_reload=auto_reload,
    )


def update_pod_annotations(
    adapter: WorkloadAdapter,
    item: Item,
    config: Config,
    auto_reload: bool,
    options: ReloaderOptions,
) -> StrategyResult:
    if _target_container(adapter, item, config, auto_reload) is None:
        return NO_CONTAINER_FOUND

    stamped = {options.annotations.last_reloaded_from: config.sha_value}
    adapter.pod_annotations(item).update(stamped)
    patch = None
    if adapter.supports_patch:
        patch = Patch(STRATEGIC_MERGE_PATCH, adapter.patch_templates.annotations(stamped))
    return StrategyResult(ReloadResult.UPDATED, patch)


def update_container_env_vars(
    adapter: WorkloadAdapter,
    item: Item,
    config: Config,
    auto_reload: bool,
    options: ReloaderOptions,
) -> StrategyResult:
    container = _target_container(adapter, item, config, auto_reload)
    if container is None:
        return NO_CONTAINER_FOUND

    name = env_var_name(config.resource_name, config.resource_type)
    envs = container.get("env") or []
    container["env"] = envs
    for env in envs:
        if env.get("name") == name:
            if env.get("value") == config.sha_value:
                return NOT_UPDATED
            env["value"] = config.sha_value
            break
    else:
        envs.append({"name": name, "value": config.sha_value})

    patch = None
    if adapter.supports_patch:
        patch = Patch(
            STRATEGIC_MERGE_PATCH,
            adapter.patch_templates.env_var(container.get("name", ""), name, config.sha_value),
        )
    return StrategyResult(ReloadResult.UPDATED, patch)


def remove_container_env_vars(
    adapter: WorkloadAdapter,
    item: Item,
    config: Config,
    auto_reload: bool,
    options: ReloaderOptions,
) -> StrategyResult:
    container = _target_container(adapter, item, config, auto_reload)
    if container is None:
        return NO_CONTAINER_FOUND

    name = env_var_name(config.resource_name, config.resource_type)
    envs = container.get("env") or []
    env_index = next((i for i, env in enumerate(envs) if env.get("name") == name), None)
    if env_index is None:
        return NOT_UPDATED

    del envs[env_index]
    patch = None
    if adapter.supports_patch:
        container_index = next(
            i for i, candidate in enumerate(adapter.containers(item)) if candidate is container
        )
        patch = Patch(JSON_PATCH, adapter.patch_templates.delete_env_var(container_index, env_index))
    return StrategyResult(ReloadResult.UPDATED, patch)


def invoke_reload_strategy(
    adapter: WorkloadAdapter,
    item: Item,
    config: Config,
    auto_reload: bool,
    options: ReloaderOptions,
) -> StrategyResult:
    if options.reload_strategy == RELOAD_STRATEGY_ANNOTATIONS:
        return update_pod_annotations(adapter, item, config, auto_reload, options)
    return update_container_env_vars(adapter, item, config, auto_reload, options)


def invoke_delete_strategy(
    adapter: WorkloadAdapter,
    item: Item,
    config: Config,
    auto_reload: bool,
    options: ReloaderOptions,
) -> StrategyResult:
    """Neutralise the reload signal after the watched resource was deleted.

    Annotations are re-stamped with *config*'s (empty-data) fingerprint while
    env vars are removed outright.
    """
    if options.reload_strategy == RELOAD_STRATEGY_ANNOTATIONS:
        return update_pod_annotations(adapter, item, config, auto_reload, options)
    return remove_container_env_vars(adapter, item, config, auto_reload, options)
