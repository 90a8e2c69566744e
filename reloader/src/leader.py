from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from reloader.src.config import env_int, parse_bool
from reloader.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_LEASE_NAME = "stakater-reloader-lock"


def default_identity() -> str:
    """Return a unique identity for this replica, defaulting to the pod name."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))


@dataclass(frozen=True)
class LeaderElectionSettings:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    stop_timeout_seconds: int


def load_leader_settings(env: Mapping[str, str] | None = None) -> LeaderElectionSettings:
    """Read ``LEADER_ELECTION_*`` settings, validating their timing relationship.

    The Lease lives in ``POD_NAMESPACE`` (the reloader's own namespace), or in
    the watched namespace when that is unset.
    """
    values = env if env is not None else os.environ
    lease_duration = env_int(
        "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
    )
    renew_deadline = env_int(
        "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
    )
    retry_period = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values)
    if renew_deadline >= lease_duration:
        raise ValueError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ValueError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )
    raw_enabled = values.get("LEADER_ELECTION_ENABLED")
    return LeaderElectionSettings(
        enabled=True if raw_enabled is None else parse_bool(raw_enabled),
        namespace=(
            values.get("POD_NAMESPACE", "").strip()
            or values.get("WATCH_NAMESPACE", "").strip()
            or "default"
        ),
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "").strip() or DEFAULT_LEASE_NAME,
        identity=values.get("LEADER_ELECTION_IDENTITY", "").strip() or default_identity(),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        # Must exceed the watch timeout.
        stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    )


class LeaseLeaderElector:
    """Leader election over a ``coordination.k8s.io/v1`` Lease.

    Only the leader watches ConfigMaps and Secrets, so two replicas never
    reload the same workloads or arm duplicate resume timers.

    Each cycle reads the Lease and either creates it, renews it when this
    identity holds it, or takes it over once the holder has missed
    ``leaseDurationSeconds``. ``409 Conflict`` means another replica won the
    race and is retried on the next cycle. Leadership is given up only after
    renewals have failed for ``renew_deadline_seconds``.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False

    @classmethod
    def from_settings(
        cls, coordination_api: CoordinationV1Api, settings: LeaderElectionSettings
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=settings.namespace,
            lease_name=settings.lease_name,
            identity=settings.identity,
            lease_duration_seconds=settings.lease_duration_seconds,
            renew_deadline_seconds=settings.renew_deadline_seconds,
            retry_period_seconds=settings.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _try_acquire_or_renew(self) -> bool:
        """Run a single acquire-or-renew cycle; True when this identity holds the Lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in (None, "", self.identity):
            return self._write_lease(lease, now)

        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        if spec.renew_time is not None:
            renewed = spec.renew_time
            if renewed.tzinfo is None:
                renewed = renewed.replace(tzinfo=UTC)
            if (now - renewed).total_seconds() < duration:
                return False
        LOGGER.info("Lease %s held by %s expired; taking over", self.lease_name, spec.holder_identity)
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s already exists, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Acquired leader lease %s", self.lease_name)
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Renew *lease*, or claim it; ``acquireTime`` moves only on a change of holder."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        if lease.spec.acquire_time is None or previous_holder != self.identity:
            lease.spec.acquire_time = now
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _release_lease(self) -> None:
        """Clear holderIdentity on the Lease so a standby replica can take over at once."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _lose_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until *stop_event*, calling the callbacks on each leadership change."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        acquire_wait_started = time.monotonic()
        last_renew_success = acquire_wait_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                acquired = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                acquired = False

            if acquired:
                last_renew_success = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(
                        last_renew_success - acquire_wait_started
                    )
                    on_started_leading()
            elif self._is_leader:
                since_renew = time.monotonic() - last_renew_success
                if since_renew < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        since_renew,
                    )
                else:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", since_renew
                    )
                    acquire_wait_started = time.monotonic()
                    self._lose_leadership(on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._lose_leadership(on_stopped_leading)
