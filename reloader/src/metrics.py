from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported by the reloader on ``/metrics``.

    Reload counters carry a ``success`` label; the by-namespace variant adds
    ``namespace`` so operators can alert on a single tenant's failures.
    """

    reload_executed_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_reload_executed_total",
            "Total workload reloads attempted",
            ["success"],
        )
    )
    reload_executed_by_namespace_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_reload_executed_by_namespace_total",
            "Total workload reloads attempted, by namespace",
            ["success", "namespace"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_events_total",
            "Total ConfigMap and Secret events handled",
            ["kind", "action"],
        )
    )
    skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_skipped_total",
            "Total workloads skipped without a reload",
            ["reason"],
        )
    )
    paused_deployments: Gauge = field(
        default_factory=lambda: Gauge(
            "reloader_paused_deployments",
            "Deployments currently paused with a pending resume timer",
        )
    )
    alerts_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_alerts_total",
            "Total reload alerts delivered",
            ["sink", "success"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "reloader_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "reloader_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "reloader",
            "Build information for the reloader",
        )
    )


METRICS = ReloaderMetrics()


def record_reload(success: bool, namespace: str) -> None:
    label = "true" if success else "false"
    METRICS.reload_executed_total.labels(success=label).inc()
    METRICS.reload_executed_by_namespace_total.labels(success=label, namespace=namespace).inc()
