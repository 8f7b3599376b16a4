from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconciliation metrics carry a ``controller`` label (the controller's
    registered name) so a single process hosting several controllers can be
    alerted on per resource type.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "operator_reconcile_total",
            "Total reconcile callback invocations by outcome",
            ["controller", "callback", "outcome"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "operator_reconcile_duration_seconds",
            "Seconds spent inside reconcile callbacks",
            ["controller"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    requeue_total: Counter = field(
        default_factory=lambda: Counter(
            "operator_requeue_total",
            "Total delayed requeues scheduled",
            ["controller", "reason"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "operator_queue_depth",
            "Resource identities with queued or running work",
            ["controller"],
        )
    )
    held_events: Gauge = field(
        default_factory=lambda: Gauge(
            "operator_held_events",
            "Events held while this replica is not leader",
            ["controller"],
        )
    )
    finalize_total: Counter = field(
        default_factory=lambda: Counter(
            "operator_finalize_total",
            "Total finalizer cleanup runs by outcome",
            ["controller", "finalizer", "outcome"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "operator_watch_errors_total",
            "Total Kubernetes watch errors",
            ["controller"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["controller"],
        )
    )
    watch_relists_total: Counter = field(
        default_factory=lambda: Counter(
            "operator_watch_relists_total",
            "Total full relists triggered by expired resource versions",
            ["controller"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "operator_leader_transitions_total",
            "Total leadership state transitions",
            ["lease", "transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "operator_leader_state",
            "Whether this replica currently holds the lease (1=yes, 0=no)",
            ["lease"],
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "operator_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            ["lease"],
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "operator",
            "Build information for the operator runtime",
        )
    )


METRICS = OperatorMetrics()
