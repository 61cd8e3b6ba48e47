from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the service controller on ``/metrics``."""

    reconcile_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "service_lb_reconcile_latency_seconds",
            "Seconds spent per reconcile phase",
            ["phase"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "service_lb_reconcile_total",
            "Total service reconciles by result",
            ["result"],
        )
    )
    requeue_total: Counter = field(
        default_factory=lambda: Counter(
            "service_lb_requeue_total",
            "Total service keys requeued after a failed reconcile",
            ["reason"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "service_lb_queue_depth",
            "Number of keys waiting in the work queue",
            ["queue"],
        )
    )
    throttle_delay_seconds: Gauge = field(
        default_factory=lambda: Gauge(
            "service_lb_throttle_delay_seconds",
            "Current requeue delay applied to throttled reconciles",
            ["worker"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "service_lb_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "service_lb_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    events_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "service_lb_events_dropped_total",
            "Total Kubernetes events dropped because the recorder queue was full",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "service_lb_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
