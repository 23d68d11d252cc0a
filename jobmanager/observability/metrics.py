"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobmanager.constants import (
    METRIC_CLAIM_ERRORS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_NOTIFICATION_ERRORS,
    METRIC_QUEUE_DEPTH,
    METRIC_STALE_RECLAIMED,
    METRIC_WORKER_BUSY,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job manager.

    Collects metrics for:
    - Backlog depth
    - Job enqueues and terminal outcomes
    - Job execution duration
    - Claims, stale reclaims and claim failures
    - Notification delivery failures
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending jobs",
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["priority"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of jobs that reached a terminal status",
            ["status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs leased to a worker",
            ["worker_id"],
            registry=self._registry,
        )

        self.stale_reclaimed = Counter(
            METRIC_STALE_RECLAIMED,
            "Total number of jobs reclaimed from a stale lease",
            registry=self._registry,
        )

        self.claim_errors = Counter(
            METRIC_CLAIM_ERRORS,
            "Total number of claim attempts that failed in the store",
            registry=self._registry,
        )

        self.notification_errors = Counter(
            METRIC_NOTIFICATION_ERRORS,
            "Total number of notifications that could not be delivered",
            ["kind"],
            registry=self._registry,
        )

        self.worker_busy = Gauge(
            METRIC_WORKER_BUSY,
            "Number of jobs this process is currently executing",
            registry=self._registry,
        )

    def record_job_enqueued(self, priority: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(priority=priority).inc()

    def record_job_finished(self, status: str, duration_seconds: float) -> None:
        """Record a job reaching a terminal status."""
        self.jobs_finished.labels(status=status).inc()
        self.job_duration.labels(status=status).observe(duration_seconds)

    def record_claim(self, worker_id: str, count: int = 1, reclaimed: int = 0) -> None:
        """Record jobs leased in one claim."""
        self.jobs_claimed.labels(worker_id=worker_id).inc(count)
        if reclaimed:
            self.stale_reclaimed.inc(reclaimed)

    def record_claim_error(self) -> None:
        self.claim_errors.inc()

    def record_notification_error(self, kind: str) -> None:
        self.notification_errors.labels(kind=kind).inc()

    def update_queue_depth(self, depth: int) -> None:
        """Update the pending job gauge."""
        self.queue_depth.set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
