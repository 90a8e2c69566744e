from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from kubernetes.client import ApiException, AppsV1Api

from reloader.src.config import AnnotationKeys
from reloader.src.kube import STRATEGIC_MERGE_PATCH, to_plain
from reloader.src.metrics import METRICS
from reloader.src.workloads import Item, ReloaderError, get_path

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
RESUME_RETRY_DELAY = timedelta(seconds=30)


class DurationParseError(ReloaderError, ValueError):
    """Raised for pause periods that are not Go-style duration strings."""


def parse_duration(value: str) -> timedelta:
    """Parse a Go duration string such as ``300ms``, ``1.5h`` or ``1h30m``."""
    text = (value or "").strip()
    if not text:
        raise DurationParseError("empty duration")
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)

    seconds = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise DurationParseError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return timedelta(seconds=sign * seconds)


def format_rfc3339(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def timer_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class PauseTimerRegistry:
    """Process-local resume timers keyed by ``namespace/name``.

    At most one timer exists per key; the first one created wins. All access
    goes through one lock because timers fire on their own threads.
    """

    def __init__(
        self,
        timer_factory: Callable[[float, Callable[[], None]], Any] = threading.Timer,
    ) -> None:
        self._timer_factory = timer_factory
        self._timers: dict[str, Any] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._timers

    def create(self, key: str, delay_seconds: float, callback: Callable[[], None]) -> bool:
        with self._lock:
            if key in self._timers:
                return False
            timer = self._timer_factory(max(0.0, delay_seconds), callback)
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._timers[key] = timer
            METRICS.paused_deployments.set(len(self._timers))
        timer.start()
        return True

    def cancel(self, key: str) -> bool:
        """Stop the pending timer for *key*, then forget it."""
        with self._lock:
            timer = self._timers.pop(key, None)
            METRICS.paused_deployments.set(len(self._timers))
        if timer is None:
            return False
        timer.cancel()
        return True

    def discard(self, key: str) -> None:
        with self._lock:
            self._timers.pop(key, None)
            METRICS.paused_deployments.set(len(self._timers))

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            METRICS.paused_deployments.set(0)
        for timer in timers:
            timer.cancel()


class DeploymentPauser:
    """Pauses Deployment rollouts for a bounded period and resumes them.

    The Deployment itself is the source of truth: ``spec.paused`` together
    with the paused-at annotation marks a pause owned by the reloader, so a
    new process or a new leader can re-arm the resume timer from it.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        registry: PauseTimerRegistry,
        annotations: AnnotationKeys,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.registry = registry
        self.annotations = annotations
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def is_paused(deployment: Item) -> bool:
        return bool(get_path(deployment, ("spec", "paused"), False))

    def is_paused_by_reloader(self, deployment: Item) -> bool:
        if not self.is_paused(deployment):
            return False
        return bool(get_path(deployment, ("metadata", "annotations", self.annotations.paused_at)))

    def pause_start_time(self, deployment: Item) -> datetime | None:
        """Return when the reloader paused *deployment*; ``ValueError`` on a bad stamp."""
        if not self.is_paused_by_reloader(deployment):
            return None
        raw = deployment["metadata"]["annotations"][self.annotations.paused_at]
        started = datetime.fromisoformat(raw.strip())
        if started.tzinfo is None:
            started = started.replace(tzinfo=UTC)
        return started

    def pause_period(self, deployment: Item) -> str:
        return get_path(deployment, ("metadata", "annotations", self.annotations.pause_period), "")

    def pause_deployment(self, deployment: Item, duration: str | None = None) -> bool:
        """Pause *deployment* and arm its resume timer.

        A Deployment paused by the user is left alone. One already paused by the
        reloader only gets its resume timer re-armed when this process lost it.
        """
        period = duration if duration is not None else self.pause_period(deployment)
        if not period:
            return False
        if self.is_paused(deployment):
            metadata = deployment["metadata"]
            key = timer_key(metadata.get("namespace", ""), metadata["name"])
            if self.is_paused_by_reloader(deployment) and not self.registry.exists(key):
                self.handle_missing_timer(deployment, period)
            return False
        try:
            pause_for = parse_duration(period)
        except DurationParseError:
            self.logger.warning(
                "Invalid pause period %r on deployment %s; not pausing",
                period,
                get_path(deployment, ("metadata", "name")),
            )
            return False

        name = deployment["metadata"]["name"]
        namespace = deployment["metadata"].get("namespace", "")
        paused_at = format_rfc3339(self.now_fn())
        body = {
            "spec": {"paused": True},
            "metadata": {"annotations": {self.annotations.paused_at: paused_at}},
        }
        self.logger.info("Pausing deployment %s in namespace %s for %s", name, namespace, period)
        try:
            self.apps_api.patch_namespaced_deployment(
                name=name, namespace=namespace, body=body, _content_type=STRATEGIC_MERGE_PATCH
            )
        except ApiException:
            self.logger.warning(
                "Pause patch for deployment %s failed; falling back to update", name, exc_info=True
            )
            deployment.setdefault("spec", {})["paused"] = True
            deployment.setdefault("metadata", {}).setdefault("annotations", {})[
                self.annotations.paused_at
            ] = paused_at
            try:
                self.apps_api.replace_namespaced_deployment(
                    name=name, namespace=namespace, body=deployment
                )
            except ApiException:
                self.logger.exception("Failed to pause deployment %s in namespace %s", name, namespace)
                return False

        self.create_resume_timer(namespace, name, pause_for)
        return True

    def create_resume_timer(self, namespace: str, name: str, delay: timedelta) -> bool:
        key = timer_key(namespace, name)
        created = self.registry.create(
            key, delay.total_seconds(), lambda: self._on_timer_fired(namespace, name)
        )
        if created:
            self.logger.debug("Created resume timer for %s in %s", key, delay)
        else:
            self.logger.debug("Resume timer for %s already exists; skipping", key)
        return created

    def _on_timer_fired(self, namespace: str, name: str) -> None:
        self.registry.discard(timer_key(namespace, name))
        try:
            self.resume_deployment(name, namespace)
        except Exception:
            self.logger.exception("Resume timer for deployment %s/%s failed", namespace, name)

    def resume_deployment(self, name: str, namespace: str) -> bool:
        """Resume *name* if, after re-reading it, it is still paused by the reloader."""
        try:
            deployment = to_plain(
                self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)
            )
        except ApiException as exc:
            self.logger.exception("Failed to get deployment %s in namespace %s", name, namespace)
            if exc.status != 404:
                self.create_resume_timer(namespace, name, RESUME_RETRY_DELAY)
            return False

        if not self.is_paused_by_reloader(deployment):
            self.logger.info(
                "Deployment %s in namespace %s not paused by reloader; skipping resume",
                name,
                namespace,
            )
            self.registry.cancel(timer_key(namespace, name))
            return False

        body = {
            "spec": {"paused": False},
            "metadata": {"annotations": {self.annotations.paused_at: None}},
        }
        try:
            self.apps_api.patch_namespaced_deployment(
                name=name, namespace=namespace, body=body, _content_type=STRATEGIC_MERGE_PATCH
            )
        except ApiException:
            self.logger.exception(
                "Failed to resume deployment %s in namespace %s; retrying in %s",
                name,
                namespace,
                RESUME_RETRY_DELAY,
            )
            # No-op when a timer is still pending.
            self.create_resume_timer(namespace, name, RESUME_RETRY_DELAY)
            return False

        self.registry.cancel(timer_key(namespace, name))
        self.logger.info("Resumed deployment %s in namespace %s", name, namespace)
        return True

    def handle_missing_timer(self, deployment: Item, configured: timedelta | str) -> None:
        """Re-arm or settle a reloader pause that has no local timer.

        Unreadable timestamps or periods resume immediately so a Deployment is
        never left paused forever.
        """
        name = deployment["metadata"]["name"]
        namespace = deployment["metadata"].get("namespace", "")
        try:
            started = self.pause_start_time(deployment)
        except ValueError:
            self.logger.error(
                "Unparsable pause start time on deployment %s in namespace %s; resuming now",
                name,
                namespace,
            )
            self.resume_deployment(name, namespace)
            return
        if started is None:
            return

        if isinstance(configured, str):
            try:
                configured = parse_duration(configured)
            except DurationParseError:
                self.logger.error(
                    "Unparsable pause period on deployment %s in namespace %s; resuming now",
                    name,
                    namespace,
                )
                self.resume_deployment(name, namespace)
                return

        remaining = configured - (self.now_fn() - started)
        if remaining <= timedelta(0):
            self.logger.info(
                "Pause period for deployment %s in namespace %s has expired; resuming now",
                name,
                namespace,
            )
            self.resume_deployment(name, namespace)
            return

        self.logger.info(
            "Re-arming resume timer for deployment %s in namespace %s (%s left)",
            name,
            namespace,
            remaining,
        )
        self.create_resume_timer(namespace, name, remaining)

    def reconcile_paused_deployments(self, namespace: str = "") -> int:
        """Recover every reloader-paused Deployment lacking a timer; return how many."""
        try:
            if namespace:
                result = self.apps_api.list_namespaced_deployment(namespace=namespace)
            else:
                result = self.apps_api.list_deployment_for_all_namespaces()
        except ApiException:
            self.logger.exception("Failed to list deployments for pause recovery")
            return 0

        recovered = 0
        for raw in getattr(result, "items", None) or []:
            deployment = to_plain(raw)
            if not self.is_paused_by_reloader(deployment):
                continue
            key = timer_key(
                deployment["metadata"].get("namespace", ""), deployment["metadata"]["name"]
            )
            if self.registry.exists(key):
                continue
            self.handle_missing_timer(deployment, self.pause_period(deployment))
            recovered += 1
        return recovered
