from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile series are labelled by workload ``kind`` so operators can tell
    a misbehaving StatefulSet rollout apart from Deployment churn.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_reconcile_total",
            "Total completed reconciliations by outcome",
            ["kind", "outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_reconcile_errors_total",
            "Total failed reconciliations by error reason",
            ["kind", "reason"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configwave_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            ["kind"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    hash_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_hash_updates_total",
            "Total pod template config-hash updates (each one rolls the workload)",
            ["kind"],
        )
    )
    ownership_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_ownership_updates_total",
            "Total ConfigMap/Secret ownership updates written",
            ["dependency_kind", "action"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "configwave_queue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_requeues_total",
            "Total keys requeued with backoff after a failed reconciliation",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configwave_build",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
