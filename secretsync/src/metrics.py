from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Cache-level series carry a ``kind`` label (``secret`` or ``namespace``) so
    watch health can be alerted on per informer.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_events_total",
            "Total cache notifications received by the event router",
            ["kind", "event"],
        )
    )
    events_discarded_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_events_discarded_total",
            "Total notifications discarded because they could not be routed",
            ["reason"],
        )
    )
    replica_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_replica_writes_total",
            "Total replica outcomes by action",
            ["action"],
        )
    )
    write_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_write_conflicts_total",
            "Total 409 conflicts observed while writing replicas",
        )
    )
    replications_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_replications_total",
            "Total replication or retraction passes by result",
            ["operation", "result"],
        )
    )
    fanout_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "secretsync_fanout_duration_seconds",
            "Seconds spent fanning a secret out to its target namespaces",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "secretsync_queue_depth",
            "Current number of keys with pending work",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_retry_total",
            "Total work items requeued after a failed reconciliation",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "secretsync_relists_total",
            "Total full re-lists after the watch resource version expired",
            ["kind"],
        )
    )
    cached_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "secretsync_cached_objects",
            "Current number of objects held in the local cache",
            ["kind"],
        )
    )
    controller_state: Gauge = field(
        default_factory=lambda: Gauge(
            "secretsync_controller_state",
            "Current controller lifecycle state (1 for the active state)",
            ["state"],
        )
    )
    cache_sync_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "secretsync_cache_sync_seconds",
            "Seconds spent waiting for the initial cache sync",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "secretsync",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
