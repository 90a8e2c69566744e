from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from reloader.src.alerts import send_upgrade_webhook
from reloader.src.config import ReloaderOptions
from reloader.src.hashing import EMPTY_DATA_FINGERPRINT
from reloader.src.metrics import METRICS
from reloader.src.resources import Config, build_config
from reloader.src.strategies import invoke_delete_strategy, invoke_reload_strategy
from reloader.src.upgrade import RollingUpgrader, UpgradeSummary


class ResourceEventHandler:
    """Turns ConfigMap/Secret lifecycle events into reload passes.

    With ``webhook_url`` configured, changes are announced to that URL and
    no workload is touched.
    """

    def __init__(
        self,
        upgrader: RollingUpgrader,
        options: ReloaderOptions,
        webhook_sender: Callable[[str], bool] = send_upgrade_webhook,
        logger: logging.Logger | None = None,
    ) -> None:
        self.upgrader = upgrader
        self.options = options
        self.webhook_sender = webhook_sender
        self.logger = logger or logging.getLogger(__name__)

    def _dispatch(self, config: Config, action: str) -> UpgradeSummary | None:
        METRICS.events_total.labels(kind=config.kind, action=action).inc()
        if self.options.webhook_url:
            self.logger.info(
                "Changes detected in %s of type %s in namespace %s; sending webhook",
                config.resource_name,
                config.resource_type,
                config.namespace,
            )
            self.webhook_sender(self.options.webhook_url)
            return None
        invoke = invoke_delete_strategy if action == "delete" else invoke_reload_strategy
        return self.upgrader.do_rolling_upgrade(config, invoke)

    def handle_created(self, resource: Any, resource_type: str) -> UpgradeSummary | None:
        config = build_config(resource, resource_type, self.options)
        self.logger.info(
            "Resource %s of type %s created in namespace %s",
            config.resource_name,
            config.resource_type,
            config.namespace,
        )
        return self._dispatch(config, "create")

    def handle_updated(
        self, resource: Any, resource_type: str, old_sha_value: str
    ) -> UpgradeSummary | None:
        config = build_config(resource, resource_type, self.options, old_sha_value=old_sha_value)
        if config.sha_value == config.old_sha_value:
            self.logger.debug(
                "Data of %s %s unchanged; skipping", config.kind, config.resource_name
            )
            return None
        self.logger.info(
            "Changes detected in %s of type %s in namespace %s",
            config.resource_name,
            config.resource_type,
            config.namespace,
        )
        return self._dispatch(config, "update")

    def handle_deleted(self, resource: Any, resource_type: str) -> UpgradeSummary | None:
        config = build_config(
            resource, resource_type, self.options, sha_value=EMPTY_DATA_FINGERPRINT
        )
        self.logger.info(
            "Resource %s of type %s deleted from namespace %s",
            config.resource_name,
            config.resource_type,
            config.namespace,
        )
        return self._dispatch(config, "delete")
