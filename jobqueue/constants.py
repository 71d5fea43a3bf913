"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> PROCESSING (claim)
    - DELAYED -> WAITING (promotion once available_at has passed)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> DELAYED (failure, attempts remain)
    - PROCESSING -> FAILED (failure, attempts exhausted)
    - WAITING/DELAYED -> CANCELED (cancel request)
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class RetryAction(StrEnum):
    """Outcome of the retry policy for a failed attempt."""

    RETRY = "retry"
    FAIL = "fail"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}
)
CANCELABLE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.WAITING, JobStatus.DELAYED}
)

# Submission bounds
MIN_PRIORITY = -10
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 0
MAX_DELAY_MS = 86_400_000  # 24 hours
JOB_TYPE_PATTERN = r"^[a-zA-Z0-9_-]+$"
JOB_TYPE_MAX_LENGTH = 255

# Retry policy bounds
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 10
DEFAULT_MAX_ATTEMPTS = 3
MIN_BACKOFF_BASE_MS = 100
MAX_BACKOFF_BASE_MS = 60_000
DEFAULT_BACKOFF_BASE_MS = 1000

# Error messages stored on terminal records
CANCELED_ERROR = "Job canceled before it was processed"
LEASE_EXPIRED_ERROR = "Lease expired before the worker reported a result"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_SUBMITTED = "jobs_submitted_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOBS_PROMOTED = "jobs_promoted_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_NOTIFICATIONS = "job_notifications_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_SUBMIT_JOB = "submit_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_REPORT_JOB = "report_job"
SPAN_CANCEL_JOB = "cancel_job"
SPAN_RECOVER_LEASES = "recover_expired_leases"
