from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``."""

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_events_total",
            "Watch notifications seen by the event router",
            ["kind", "event", "outcome"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_queue_adds_total",
            "Total keys added to the work queue (including coalesced duplicates)",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "ingress_operator_queue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_reconcile_total",
            "Total successful syncs by resulting action",
            ["action"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_reconcile_errors_total",
            "Total failed syncs by attempted operation",
            ["operation"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ingress_operator_reconcile_duration_seconds",
            "Time spent in a single sync call",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_retries_total",
            "Total keys re-admitted to the queue with backoff",
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_dropped_keys_total",
            "Total keys dropped after exhausting retries",
        )
    )
    errors_reported_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_errors_reported_total",
            "Total errors surfaced to the process-wide error sink",
            ["error"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ingress_operator",
            "Build information for the operator",
        )
    )


METRICS = ControllerMetrics()
