from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

RELOAD_STRATEGY_ENV_VARS = "env-vars"
RELOAD_STRATEGY_ANNOTATIONS = "annotations"
_RELOAD_STRATEGIES = {RELOAD_STRATEGY_ENV_VARS, RELOAD_STRATEGY_ANNOTATIONS}
_IGNORABLE_RESOURCES = {"configmaps", "secrets"}
_IGNORABLE_WORKLOAD_TYPES = {"jobs", "cronjobs"}


class ConfigError(RuntimeError):
    """Raised when the reloader configuration is invalid."""


@dataclass(frozen=True)
class AnnotationKeys:
    """Annotation and label keys the reloader reads and writes.

    Every key can be overridden from the environment so the controller can
    coexist with a differently branded installation in the same cluster.
    """

    configmap_reload: str = "configmap.reloader.stakater.com/reload"
    secret_reload: str = "secret.reloader.stakater.com/reload"
    auto: str = "reloader.stakater.com/auto"
    configmap_auto: str = "configmap.reloader.stakater.com/auto"
    secret_auto: str = "secret.reloader.stakater.com/auto"
    configmap_exclude: str = "configmaps.exclude.reloader.stakater.com/reload"
    secret_exclude: str = "secrets.exclude.reloader.stakater.com/reload"
    ignore: str = "reloader.stakater.com/ignore"
    search: str = "reloader.stakater.com/search"
    match: str = "reloader.stakater.com/match"
    rollout_strategy: str = "reloader.stakater.com/rollout-strategy"
    pause_period: str = "deployment.reloader.stakater.com/pause-period"
    paused_at: str = "deployment.reloader.stakater.com/paused-at"
    last_reloaded_from: str = "reloader.stakater.com/last-reloaded-from"


@dataclass(frozen=True)
class AlertSettings:
    enabled: bool = False
    webhook_url: str = ""
    sink: str = "raw"
    proxy: str = ""
    additional_info: str = ""


@dataclass(frozen=True)
class ReloaderOptions:
    """Immutable process-wide reloader configuration loaded at startup.

    Attributes:
        namespace:               Namespace to watch; empty watches all namespaces.
        reload_strategy:         ``env-vars`` or ``annotations``.
        auto_reload_all:         Treat workloads without any auto annotation as auto.
        reload_on_create:        React to newly created ConfigMaps/Secrets.
        reload_on_delete:        Reverse the reload signal when a resource is deleted.
        sync_after_restart:      Replay creations seen in the initial list.
        ignored_resources:       Resource kinds not watched (``configmaps``/``secrets``).
        ignored_workload_types:  Workload kinds never reloaded (``jobs``/``cronjobs``).
        namespaces_to_ignore:    Namespaces whose resources are skipped.
        resource_label_selector: Label selector applied to watched resources.
        webhook_url:             When set, POST here instead of reloading.
    """

    namespace: str = ""
    reload_strategy: str = RELOAD_STRATEGY_ENV_VARS
    auto_reload_all: bool = False
    reload_on_create: bool = False
    reload_on_delete: bool = False
    sync_after_restart: bool = False
    argo_rollouts_enabled: bool = False
    knative_services_enabled: bool = False
    ignored_resources: frozenset[str] = frozenset()
    ignored_workload_types: frozenset[str] = frozenset()
    namespaces_to_ignore: frozenset[str] = frozenset()
    resource_label_selector: str = ""
    webhook_url: str = ""
    annotations: AnnotationKeys = field(default_factory=AnnotationKeys)
    alerts: AlertSettings = field(default_factory=AlertSettings)

    def watches(self, resource: str) -> bool:
        return resource.lower() not in self.ignored_resources


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_list(value: str | None) -> list[str]:
    """Split a comma-separated value, dropping blanks."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _load_annotation_keys(values: Mapping[str, str]) -> AnnotationKeys:
    defaults = AnnotationKeys()
    overrides = {
        "configmap_reload": "CONFIGMAP_ANNOTATION",
        "secret_reload": "SECRET_ANNOTATION",
        "auto": "AUTO_ANNOTATION",
        "configmap_auto": "CONFIGMAP_AUTO_ANNOTATION",
        "secret_auto": "SECRET_AUTO_ANNOTATION",
        "configmap_exclude": "CONFIGMAP_EXCLUDE_ANNOTATION",
        "secret_exclude": "SECRET_EXCLUDE_ANNOTATION",
        "ignore": "IGNORE_ANNOTATION",
        "search": "AUTO_SEARCH_ANNOTATION",
        "match": "SEARCH_MATCH_ANNOTATION",
        "pause_period": "PAUSE_DEPLOYMENT_ANNOTATION",
        "paused_at": "PAUSE_DEPLOYMENT_TIME_ANNOTATION",
    }
    resolved = {
        attr: values.get(env_name, "").strip() or getattr(defaults, attr)
        for attr, env_name in overrides.items()
    }
    return AnnotationKeys(**resolved)


def _load_alert_settings(values: Mapping[str, str]) -> AlertSettings:
    settings = AlertSettings(
        enabled=parse_bool(values.get("ALERT_ON_RELOAD")),
        webhook_url=values.get("ALERT_WEBHOOK_URL", "").strip(),
        sink=values.get("ALERT_SINK", "").strip().lower() or "raw",
        proxy=values.get("ALERT_WEBHOOK_PROXY", "").strip(),
        additional_info=values.get("ALERT_ADDITIONAL_INFO", "").strip(),
    )
    if settings.enabled and not settings.webhook_url:
        raise ConfigError("ALERT_WEBHOOK_URL must be set when ALERT_ON_RELOAD=true")
    return settings


def load_options(env: Mapping[str, str] | None = None) -> ReloaderOptions:
    """Load reloader options from the environment.

    Raises :class:`ConfigError` on values that would make the controller
    silently do nothing, such as ignoring both ConfigMaps and Secrets.
    """
    values = env if env is not None else os.environ

    reload_strategy = values.get("RELOAD_STRATEGY", RELOAD_STRATEGY_ENV_VARS).strip().lower()
    if reload_strategy not in _RELOAD_STRATEGIES:
        raise ConfigError(
            f"RELOAD_STRATEGY must be one of {sorted(_RELOAD_STRATEGIES)}, got: {reload_strategy!r}"
        )

    ignored_resources = frozenset(
        part.lower() for part in parse_list(values.get("IGNORED_RESOURCES"))
    )
    unknown = ignored_resources - _IGNORABLE_RESOURCES
    if unknown:
        raise ConfigError(
            f"IGNORED_RESOURCES accepts only configMaps and secrets, got: {sorted(unknown)}"
        )
    if ignored_resources == _IGNORABLE_RESOURCES:
        raise ConfigError("IGNORED_RESOURCES cannot ignore both configMaps and secrets")

    ignored_workload_types = frozenset(
        part.lower() for part in parse_list(values.get("IGNORED_WORKLOAD_TYPES"))
    )
    unknown = ignored_workload_types - _IGNORABLE_WORKLOAD_TYPES
    if unknown:
        raise ConfigError(
            f"IGNORED_WORKLOAD_TYPES accepts only jobs and cronjobs, got: {sorted(unknown)}"
        )

    return ReloaderOptions(
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        reload_strategy=reload_strategy,
        auto_reload_all=parse_bool(values.get("AUTO_RELOAD_ALL")),
        reload_on_create=parse_bool(values.get("RELOAD_ON_CREATE")),
        reload_on_delete=parse_bool(values.get("RELOAD_ON_DELETE")),
        sync_after_restart=parse_bool(values.get("SYNC_AFTER_RESTART")),
        argo_rollouts_enabled=parse_bool(values.get("ARGO_ROLLOUTS_ENABLED")),
        knative_services_enabled=parse_bool(values.get("KNATIVE_SERVICES_ENABLED")),
        ignored_resources=ignored_resources,
        ignored_workload_types=ignored_workload_types,
        namespaces_to_ignore=frozenset(parse_list(values.get("NAMESPACES_TO_IGNORE"))),
        resource_label_selector=values.get("RESOURCE_LABEL_SELECTOR", "").strip(),
        webhook_url=values.get("WEBHOOK_URL", "").strip(),
        annotations=_load_annotation_keys(values),
        alerts=_load_alert_settings(values),
    )
