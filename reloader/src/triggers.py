from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

from reloader.src.config import ReloaderOptions
from reloader.src.resources import CONFIGMAP, Config

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReloadCheck:
    should_reload: bool
    auto_reload: bool = False


NOT_TRIGGERED = ReloadCheck(should_reload=False)


def annotation_enabled(value: str | None) -> bool:
    """Boolean annotation values follow Go's ``strconv.ParseBool`` truthy set."""
    if value is None:
        return False
    return value.strip().lower() in {"1", "t", "true"}


def _name_matches(pattern: str, resource_name: str) -> bool:
    try:
        return re.fullmatch(pattern, resource_name) is not None
    except re.error:
        LOGGER.debug("Invalid resource name pattern %r; comparing literally", pattern)
        return pattern == resource_name


def _is_excluded(resource_name: str, excluded: str) -> bool:
    return any(part.strip() == resource_name for part in excluded.split(",") if part.strip())


def should_reload(
    config: Config,
    annotations: Mapping[str, str],
    pod_annotations: Mapping[str, str],
    options: ReloaderOptions,
) -> ReloadCheck:
    """Decide whether a workload reacts to *config*, and in auto mode or not.

    Workload metadata annotations are consulted first; when none of the
    trigger keys is set there, the pod template annotations are used.
    """
    keys = options.annotations
    if config.resource_annotations.get(keys.ignore) == "true":
        return NOT_TRIGGERED

    if config.resource_type == CONFIGMAP:
        excluded = annotations.get(keys.configmap_exclude)
    else:
        excluded = annotations.get(keys.secret_exclude)
    if excluded and _is_excluded(config.resource_name, excluded):
        return NOT_TRIGGERED

    trigger_keys = (config.annotation, keys.auto, config.typed_auto_annotation, keys.search)
    source = annotations
    if not any(key in annotations for key in trigger_keys):
        source = pod_annotations

    auto_value = source.get(keys.auto, "")
    typed_auto_value = source.get(config.typed_auto_annotation, "")
    if (
        annotation_enabled(auto_value)
        or annotation_enabled(typed_auto_value)
        or (auto_value == "" and typed_auto_value == "" and options.auto_reload_all)
    ):
        return ReloadCheck(should_reload=True, auto_reload=True)

    for pattern in source.get(config.annotation, "").split(","):
        if _name_matches(pattern.strip(), config.resource_name):
            return ReloadCheck(should_reload=True, auto_reload=False)

    if source.get(keys.search) == "true" and config.resource_annotations.get(keys.match) == "true":
        return ReloadCheck(should_reload=True, auto_reload=True)

    return NOT_TRIGGERED
