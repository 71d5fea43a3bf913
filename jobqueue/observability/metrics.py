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

from jobqueue.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_PROMOTED,
    METRIC_JOBS_SUBMITTED,
    METRIC_LEASE_EXPIRED,
    METRIC_NOTIFICATIONS,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Queue counters and histograms, one set per process.

    The lifecycle manager records every state change it wins, along with
    the handler wall time a worker reports. The API middleware records
    requests.
    ``queue_depth`` is a snapshot refreshed by the reaper and the stats route.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs by status",
            ["status"],
            registry=self._registry,
        )

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["job_type", "initial_status"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of successful claims",
            ["worker_id"],
            registry=self._registry,
        )

        self.jobs_promoted = Counter(
            METRIC_JOBS_PROMOTED,
            "Total number of delayed jobs promoted to waiting",
            registry=self._registry,
        )

        # Outcome of each processing attempt: completed, retried, failed
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of finished processing attempts",
            ["job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases recovered",
            registry=self._registry,
        )

        self.notifications = Counter(
            METRIC_NOTIFICATIONS,
            "Total number of terminal-state notifications emitted",
            ["status"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_job_submitted(self, job_type: str, initial_status: str) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(job_type=job_type, initial_status=initial_status).inc()

    def record_job_claimed(self, worker_id: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(worker_id=worker_id).inc()

    def record_jobs_promoted(self, count: int) -> None:
        """Record delayed jobs promoted to the ready index."""
        if count > 0:
            self.jobs_promoted.inc(count)

    def record_job_completed(
        self,
        job_type: str,
        status: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record the outcome of a processing attempt."""
        self.jobs_completed.labels(job_type=job_type, status=status).inc()
        if duration_seconds is not None:
            self.job_duration.labels(job_type=job_type, status=status).observe(
                duration_seconds
            )

    def record_lease_expired(self, count: int = 1) -> None:
        """Record expired leases."""
        self.lease_expired.inc(count)

    def record_notification(self, status: str) -> None:
        """Record an emitted terminal notification."""
        self.notifications.labels(status=status).inc()

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Update job counts by status."""
        for status, count in counts.items():
            self.queue_depth.labels(status=status).set(count)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Create the process-wide collector on first call.

    Prometheus refuses duplicate metric names on one registry, so the API,
    worker and reaper entrypoints (and the test suite) all share this
    single instance; later calls return it unchanged.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    return _metrics if _metrics is not None else setup_metrics()
