from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any

from reloader.src.config import AlertSettings
from reloader.src.metrics import METRICS

HTTP_TIMEOUT_SECONDS = 10
WEBHOOK_BODY = {"webhook": "update successful"}


class _RefuseRedirects(urllib.request.HTTPRedirectHandler):
    """Turn any 3xx into an error; a redirected webhook usually means a bad token."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[no-untyped-def]
        return None


def build_opener(proxy: str = "") -> urllib.request.OpenerDirector:
    handlers: list[Any] = [_RefuseRedirects()]
    if proxy:
        handlers.append(urllib.request.ProxyHandler({"http": proxy, "https": proxy}))
    return urllib.request.build_opener(*handlers)


def format_reload_message(
    resource_name: str,
    resource_type: str,
    namespace: str,
    workload_name: str,
    workload_kind: str,
) -> str:
    return (
        f"Reloader detected changes in *{resource_name}* of type *{resource_type}* in namespace "
        f"*{namespace}*. Hence reloaded *{workload_name}* of type *{workload_kind}* in namespace "
        f"*{namespace}*"
    )


def build_alert_payload(sink: str, message: str) -> tuple[bytes, str]:
    """Render *message* for *sink*, returning the body and its content type."""
    if sink == "slack":
        payload: Any = {
            "attachments": [{"text": message, "color": "good", "author_name": "Reloader"}]
        }
    elif sink in {"teams", "gchat"}:
        payload = {"text": message}
    else:
        return message.replace("*", "").encode("utf-8"), "text/plain"
    return json.dumps(payload).encode("utf-8"), "application/json"


def _post(
    opener: urllib.request.OpenerDirector, url: str, body: bytes, content_type: str
) -> int:
    request = urllib.request.Request(  # noqa: S310
        url=url, data=body, method="POST", headers={"Content-Type": content_type}
    )
    with opener.open(request, timeout=HTTP_TIMEOUT_SECONDS) as resp:
        return resp.status


class WebhookAlerter:
    """Posts a chat notification for every successful reload.

    Delivery failures are logged and counted but never raised, so an
    unreachable chat service cannot stall reload processing.
    """

    def __init__(
        self,
        settings: AlertSettings,
        opener: urllib.request.OpenerDirector | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.opener = opener or build_opener(settings.proxy)
        self.logger = logger or logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and bool(self.settings.webhook_url)

    def send(self, message: str) -> bool:
        if not self.enabled:
            return False
        if self.settings.additional_info:
            message = f"{self.settings.additional_info} : {message}"
        body, content_type = build_alert_payload(self.settings.sink, message)
        try:
            status = _post(self.opener, self.settings.webhook_url, body, content_type)
        except (urllib.error.URLError, OSError) as exc:
            self.logger.error("Failed to send %s reload alert: %s", self.settings.sink, exc)
            METRICS.alerts_total.labels(sink=self.settings.sink, success="false").inc()
            return False
        if status >= 300:
            self.logger.error("Reload alert to %s returned status %d", self.settings.sink, status)
            METRICS.alerts_total.labels(sink=self.settings.sink, success="false").inc()
            return False
        METRICS.alerts_total.labels(sink=self.settings.sink, success="true").inc()
        return True


def send_upgrade_webhook(
    url: str,
    opener: urllib.request.OpenerDirector | None = None,
    logger: logging.Logger | None = None,
) -> bool:
    """POST the fixed webhook notification used instead of reloading workloads."""
    log = logger or logging.getLogger(__name__)
    try:
        status = _post(
            opener or build_opener(),
            url,
            json.dumps(WEBHOOK_BODY).encode("utf-8"),
            "application/json",
        )
    except (urllib.error.URLError, OSError) as exc:
        log.error("Failed to send reload webhook: %s", exc)
        return False
    log.info("Reload webhook delivered (status=%d)", status)
    return status < 300
