"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobqueue.types.api import (
    CancelJobResponse,
    CreateJobRequest,
    CreateJobResponse,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    RetryOptions,
)
from jobqueue.types.events import JobNotification
from jobqueue.types.job import (
    Job,
    JobContext,
    JobResult,
    RetryPolicyConfig,
    SubmitRequest,
    WebhookConfig,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "CreateJobResponse",
    "CancelJobResponse",
    "JobResponse",
    "JobListResponse",
    "JobStatsResponse",
    "RetryOptions",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "Job",
    "JobContext",
    "JobResult",
    "RetryPolicyConfig",
    "SubmitRequest",
    "WebhookConfig",
    # Event types
    "JobNotification",
]
