from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from reloader.src.config import ReloaderOptions
from reloader.src.handlers import ResourceEventHandler
from reloader.src.hashing import config_map_fingerprint, secret_fingerprint
from reloader.src.metrics import METRICS
from reloader.src.pause import DeploymentPauser
from reloader.src.resources import CONFIGMAP, KIND_BY_TYPE, SECRET
from reloader.src.upgrade import UpgradeSummary

_FINGERPRINTS: dict[str, Callable[[Any], str]] = {
    CONFIGMAP: config_map_fingerprint,
    SECRET: secret_fingerprint,
}


class ResourceWatcher:
    """Watches ConfigMaps or Secrets and feeds lifecycle events to the handler.

    The watcher keeps the last fingerprint of every object it has seen,
    keyed by ``(namespace, name)``. That baseline supplies the previous
    fingerprint for updates, so metadata-only edits and re-delivered events
    never trigger a reload.

    Key internal state:
        ``_last_sha``
            Maps ``(namespace, name)`` to the last-seen fingerprint.
        ``_active_watcher``
            The open watch stream, stopped by :meth:`request_stop`.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        handler: ResourceEventHandler,
        options: ReloaderOptions,
        resource_type: str,
        logger: logging.Logger | None = None,
    ) -> None:
        if resource_type not in _FINGERPRINTS:
            raise ValueError(f"unknown resource type: {resource_type!r}")
        self.core_api = core_api
        self.handler = handler
        self.options = options
        self.resource_type = resource_type
        self.kind = KIND_BY_TYPE[resource_type]
        self.logger = logger or logging.getLogger(__name__)
        self._fingerprint = _FINGERPRINTS[resource_type]

        self._last_sha: dict[tuple[str, str], str] = {}
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and its kwargs for the watched scope."""
        kwargs: dict[str, Any] = {}
        if self.options.resource_label_selector:
            kwargs["label_selector"] = self.options.resource_label_selector
        if self.options.namespace:
            kwargs["namespace"] = self.options.namespace
            if self.resource_type == CONFIGMAP:
                return self.core_api.list_namespaced_config_map, kwargs
            return self.core_api.list_namespaced_secret, kwargs
        if self.resource_type == CONFIGMAP:
            return self.core_api.list_config_map_for_all_namespaces, kwargs
        return self.core_api.list_secret_for_all_namespaces, kwargs

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    @staticmethod
    def _identity(obj: Any) -> tuple[str, str] | None:
        metadata = getattr(obj, "metadata", None)
        if metadata is None:
            return None
        name = getattr(metadata, "name", None)
        if not name:
            return None
        return getattr(metadata, "namespace", None) or "", name

    def _ignored(self, namespace: str) -> bool:
        return namespace in self.options.namespaces_to_ignore

    def handle_event(self, event_type: str, obj: Any) -> UpgradeSummary | None:
        """Process a single watch event.

        ``ADDED`` only reloads when creation events are enabled, ``MODIFIED``
        only when the fingerprint moved, and ``DELETED`` only when deletion
        events are enabled. Returns the reload summary, or ``None`` when the
        event was filtered.
        """
        identity = self._identity(obj)
        if identity is None:
            return None
        namespace, name = identity
        if self._ignored(namespace):
            self.logger.debug("Ignoring %s %s/%s in ignored namespace", self.kind, namespace, name)
            return None

        if event_type == "DELETED":
            self._last_sha.pop(identity, None)
            if not self.options.reload_on_delete:
                return None
            return self.handler.handle_deleted(obj, self.resource_type)

        current = self._fingerprint(obj)
        previous = self._last_sha.get(identity)
        self._last_sha[identity] = current

        if event_type == "ADDED" and previous is None:
            if not self.options.reload_on_create:
                return None
            return self.handler.handle_created(obj, self.resource_type)

        if event_type in {"ADDED", "MODIFIED"}:
            if previous == current:
                self.logger.debug("Ignoring unchanged data for %s %s/%s", self.kind, namespace, name)
                return None
            return self.handler.handle_updated(obj, self.resource_type, previous or "")
        return None

    def _sync_cache_from_list(self, listing: Any, *, initial: bool) -> None:
        """Seed or refresh the fingerprint cache from a full listing.

        The initial listing only replays creations when both
        ``sync_after_restart`` and ``reload_on_create`` are set. A re-list
        after ``410 Gone`` reconciles whatever happened while disconnected.
        """
        items = getattr(listing, "items", None) or []
        seen: set[tuple[str, str]] = set()
        for obj in items:
            identity = self._identity(obj)
            if identity is None or self._ignored(identity[0]):
                continue
            seen.add(identity)
            if initial:
                self._last_sha[identity] = self._fingerprint(obj)
                if self.options.sync_after_restart and self.options.reload_on_create:
                    self.handler.handle_created(obj, self.resource_type)
                continue
            event_type = "MODIFIED" if identity in self._last_sha else "ADDED"
            self.handle_event(event_type, obj)

        if initial:
            return
        for identity in set(self._last_sha) - seen:
            self.logger.info(
                "%s %s/%s disappeared while the watch was disconnected", self.kind, *identity
            )
            self._last_sha.pop(identity, None)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch until shutdown.

        1. Retries the initial list with exponential backoff so transient API
           startup failures do not crash-loop the controller.
        2. Opens a streaming watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` (etcd compaction), re-lists and resumes.
        4. On transient errors, applies exponential backoff with jitter
           (capped at 30 s) to avoid thundering-herd reconnects.

        ``401`` / ``403`` responses from the Kubernetes API are treated as
        configuration errors (RBAC/auth) and terminate the loop immediately
        with a clear log message rather than retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        list_fn, list_kwargs = self._list_call()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = list_fn(**list_kwargs)
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._sync_cache_from_list(initial, initial=True)
                self.ready.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.kind, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check reloader RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial Kubernetes %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        # Reset to 1 on every successful watch iteration; doubled on error
        # up to a 30 s cap. Jitter is applied at sleep time.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_event(event_type=str(event.get("type", "")), obj=obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        fresh = list_fn(**list_kwargs)
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._sync_cache_from_list(fresh, initial=False)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check reloader RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check reloader RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


class ReloaderController:
    """Runs one :class:`ResourceWatcher` per watched kind.

    On every start (process start or newly won leadership) Deployments left
    paused by a previous holder are recovered before the watchers open.
    ``ready`` is set while every watcher is ready.
    """

    def __init__(
        self,
        watchers: list[ResourceWatcher],
        pauser: DeploymentPauser | None = None,
        namespace: str = "",
        poll_interval_seconds: float = 1.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if not watchers:
            raise ValueError("at least one resource watcher is required")
        self.watchers = watchers
        self.pauser = pauser
        self.namespace = namespace
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def request_stop(self) -> None:
        self._external_stop.set()
        for watcher in self.watchers:
            watcher.request_stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the watchers and supervise them until shutdown.

        Returns early when a watcher exits on its own (for example on an
        RBAC denial) so the caller can decide to terminate the process.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        if self.pauser is not None:
            recovered = self.pauser.reconcile_paused_deployments(self.namespace)
            if recovered:
                self.logger.info("Recovered %d paused deployment(s)", recovered)

        threads = [
            threading.Thread(
                target=watcher.run_forever,
                kwargs={"shutdown_event": stop},
                name=f"watch-{watcher.kind.lower()}",
                daemon=True,
            )
            for watcher in self.watchers
        ]
        for thread in threads:
            thread.start()

        try:
            while not stop.is_set() and not self._external_stop.is_set():
                if not all(thread.is_alive() for thread in threads):
                    self.logger.error("A resource watcher exited unexpectedly; stopping")
                    break
                if all(watcher.ready.is_set() for watcher in self.watchers):
                    self.ready.set()
                else:
                    self.ready.clear()
                stop.wait(timeout=self.poll_interval_seconds)
        finally:
            self.ready.clear()
            for watcher in self.watchers:
                watcher.request_stop()
            for thread in threads:
                thread.join(timeout=5)
            if self.pauser is not None:
                self.pauser.registry.cancel_all()


def build_controller_from_env(
    core_api: CoreV1Api,
    handler: ResourceEventHandler,
    options: ReloaderOptions,
    pauser: DeploymentPauser | None = None,
) -> ReloaderController:
    """Construct a :class:`ReloaderController` watching every kind *options* allows."""
    watchers = [
        ResourceWatcher(core_api=core_api, handler=handler, options=options, resource_type=kind)
        for kind, resource in ((CONFIGMAP, "configmaps"), (SECRET, "secrets"))
        if options.watches(resource)
    ]
    return ReloaderController(watchers=watchers, pauser=pauser, namespace=options.namespace)
