from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Work queue series carry a ``queue`` label (``ingress-sync`` or
    ``provider-sync``) so operators can alert on a starving or failing
    worker independently of the other one.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "alb_controller_queue_depth",
            "Current number of distinct keys waiting in a work queue",
            ["queue"],
        )
    )
    queue_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "alb_controller_queue_skipped_total",
            "Total skippable enqueues dropped because the key was already pending",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "alb_controller_queue_retries_total",
            "Total handler retries scheduled after a failed sync",
            ["queue"],
        )
    )
    queue_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "alb_controller_queue_dropped_total",
            "Total work items dropped after exhausting the retry budget",
            ["queue"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "alb_controller_sync_duration_seconds",
            "Seconds spent in a single work queue handler invocation",
            ["queue"],
            buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    coalescer_dropped_events_total: Counter = field(
        default_factory=lambda: Counter(
            "alb_controller_coalescer_dropped_events_total",
            "Total change events evicted from the ring buffer before being consumed",
        )
    )
    provider_sync_total: Counter = field(
        default_factory=lambda: Counter(
            "alb_controller_provider_sync_total",
            "Total provider state synchronization passes",
            ["result"],
        )
    )
    running_ingresses: Gauge = field(
        default_factory=lambda: Gauge(
            "alb_controller_running_ingresses",
            "Number of ingress bindings in the running configuration",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "alb_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    status_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "alb_controller_status_updates_total",
            "Total ingress status patches",
            ["result"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "alb_controller_leader_state",
            "Whether this replica currently holds the status election lease (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "alb_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
