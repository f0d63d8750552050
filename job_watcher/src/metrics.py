from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    ``reconcile_total`` is labelled by outcome so operators can tell ignored
    notifications apart from restarts and failures; a persistently missing
    target deployment shows up as a climbing ``reconcile_errors_total``.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_reconcile_total",
            "Total reconcile invocations by outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_reconcile_errors_total",
            "Total reconcile invocations that failed and were requeued",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "job_watcher_reconcile_duration_seconds",
            "Seconds spent in a single reconcile invocation",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_restarts_total",
            "Total target deployment restarts triggered by completed Jobs",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "job_watcher_queue_depth",
            "Current number of keys ready to be processed",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_queue_adds_total",
            "Total keys accepted by the work queue",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_queue_retries_total",
            "Total keys requeued with backoff after a failed reconcile",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "job_watcher_resyncs_total",
            "Total periodic resyncs of the Job cache into the work queue",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "job_watcher_build",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
