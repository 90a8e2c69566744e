from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes.client import ApiException

from reloader.src.alerts import WebhookAlerter, format_reload_message
from reloader.src.config import ReloaderOptions
from reloader.src.kube import KubeClients
from reloader.src.metrics import METRICS, record_reload
from reloader.src.pause import DeploymentPauser
from reloader.src.resources import Config
from reloader.src.strategies import InvokeStrategy, ReloadResult, StrategyResult
from reloader.src.triggers import should_reload
from reloader.src.workloads import Item, PatchNotSupportedError, WorkloadAdapter


@dataclass(frozen=True)
class UpgradeSummary:
    """Immutable record of one reload pass over a namespace.

    Returned for every handled event so callers can inspect outcomes
    without querying the Kubernetes API again.
    """

    matched: int = 0
    updated: int = 0
    failed: int = 0

    def __add__(self, other: UpgradeSummary) -> UpgradeSummary:
        return UpgradeSummary(
            matched=self.matched + other.matched,
            updated=self.updated + other.updated,
            failed=self.failed + other.failed,
        )


class RollingUpgrader:
    """Applies a reload strategy to every workload that consumes a resource.

    Workloads are processed one kind at a time in adapter table order. A
    failure listing a kind or persisting one workload is logged, counted and
    skipped; it never stops the remaining workloads of the same event.
    """

    def __init__(
        self,
        clients: KubeClients,
        options: ReloaderOptions,
        adapters: list[WorkloadAdapter],
        pauser: DeploymentPauser | None = None,
        alerter: WebhookAlerter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.options = options
        self.adapters = adapters
        self.pauser = pauser
        self.alerter = alerter
        self.logger = logger or logging.getLogger(__name__)

    def do_rolling_upgrade(self, config: Config, invoke: InvokeStrategy) -> UpgradeSummary:
        summary = UpgradeSummary()
        for adapter in self.adapters:
            summary += self.perform_action(config, adapter, invoke)
        return summary

    def perform_action(
        self, config: Config, adapter: WorkloadAdapter, invoke: InvokeStrategy
    ) -> UpgradeSummary:
        try:
            items = adapter.list_items(self.clients, config.namespace)
        except ApiException:
            self.logger.exception(
                "Failed to list %s workloads in namespace %s", adapter.kind, config.namespace
            )
            return UpgradeSummary(failed=1)

        matched = updated = failed = 0
        for item in items:
            check = should_reload(
                config,
                adapter.annotations(item),
                adapter.pod_annotations(item),
                self.options,
            )
            if not check.should_reload:
                continue
            matched += 1

            outcome = invoke(adapter, item, config, check.auto_reload, self.options)
            if outcome.result is not ReloadResult.UPDATED:
                self.logger.debug(
                    "No change for %s %s from %s %s (%s)",
                    adapter.kind,
                    adapter.name(item),
                    config.kind,
                    config.resource_name,
                    outcome.result.value,
                )
                METRICS.skipped_total.labels(reason=outcome.result.value).inc()
                continue

            if self._persist(config, adapter, item, outcome):
                updated += 1
            else:
                failed += 1
        return UpgradeSummary(matched=matched, updated=updated, failed=failed)

    def _persist(
        self, config: Config, adapter: WorkloadAdapter, item: Item, outcome: StrategyResult
    ) -> bool:
        name = adapter.name(item)
        try:
            if outcome.patch is not None and adapter.supports_patch:
                try:
                    adapter.patch(
                        self.clients,
                        config.namespace,
                        item,
                        outcome.patch.patch_type,
                        outcome.patch.body,
                    )
                except PatchNotSupportedError:
                    adapter.update(self.clients, config.namespace, item)
            else:
                adapter.update(self.clients, config.namespace, item)
        except ApiException:
            self.logger.exception(
                "Update for %s of type %s in namespace %s failed",
                name,
                adapter.kind,
                config.namespace,
            )
            record_reload(success=False, namespace=config.namespace)
            return False

        self.logger.info(
            "Changes detected in %s of type %s in namespace %s; updated %s of type %s",
            config.resource_name,
            config.resource_type,
            config.namespace,
            name,
            adapter.kind,
        )
        record_reload(success=True, namespace=config.namespace)
        if self.alerter is not None and self.alerter.enabled:
            self.alerter.send(
                format_reload_message(
                    config.resource_name,
                    config.resource_type,
                    config.namespace,
                    name,
                    adapter.kind,
                )
            )
        if adapter.kind == "Deployment" and self.pauser is not None:
            period = self.pauser.pause_period(item)
            if period:
                self.pauser.pause_deployment(item, period)
        return True
