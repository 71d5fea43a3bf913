"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jobqueue.constants import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    JOB_TYPE_PATTERN,
    MAX_BACKOFF_BASE_MS,
    MAX_DELAY_MS,
    MAX_MAX_ATTEMPTS,
    MAX_PRIORITY,
    MIN_BACKOFF_BASE_MS,
    MIN_MAX_ATTEMPTS,
    MIN_PRIORITY,
    JobStatus,
)
from jobqueue.types.job import Job, RetryPolicyConfig, WebhookConfig


class RetryOptions(BaseModel):
    """Retry options as accepted on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS,
        ge=MIN_MAX_ATTEMPTS,
        le=MAX_MAX_ATTEMPTS,
        alias="maxAttempts",
        description="Maximum number of attempts",
    )
    backoff: int = Field(
        default=DEFAULT_BACKOFF_BASE_MS,
        ge=MIN_BACKOFF_BASE_MS,
        le=MAX_BACKOFF_BASE_MS,
        description="Base delay in milliseconds for exponential backoff",
    )

    def to_policy(self) -> RetryPolicyConfig:
        return RetryPolicyConfig(max_attempts=self.max_attempts, backoff_base_ms=self.backoff)


class CreateJobRequest(BaseModel):
    """Request body for creating a new job."""

    type: str = Field(..., min_length=1, pattern=JOB_TYPE_PATTERN, description="Handler name")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    priority: int = Field(
        default=DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY, description="Job priority"
    )
    delay: int = Field(
        default=0, ge=0, le=MAX_DELAY_MS, description="Delay in milliseconds before the job is available"
    )
    retry: RetryOptions | None = None
    webhook: WebhookConfig | None = None


class CreateJobResponse(BaseModel):
    """Response body after creating a job."""

    id: str
    type: str
    status: JobStatus
    created_at: datetime = Field(serialization_alias="createdAt")


class JobResponse(BaseModel):
    """Full job details response."""

    id: str
    type: str
    payload: dict[str, Any]
    priority: int
    status: JobStatus
    available_at: datetime
    attempt: int
    max_attempts: int
    backoff_base_ms: int
    webhook: WebhookConfig | None
    lease_owner: str | None
    lease_expires_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    result: Any = None
    error: str | None = None
    last_error: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        """Convert a Job record to a JobResponse."""
        return cls(
            id=job.id,
            type=job.type,
            payload=job.payload,
            priority=job.priority,
            status=job.status,
            available_at=job.available_at,
            attempt=job.attempt,
            max_attempts=job.retry_policy.max_attempts,
            backoff_base_ms=job.retry_policy.backoff_base_ms,
            webhook=job.webhook,
            lease_owner=job.lease_owner,
            lease_expires_at=job.lease_expires_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            result=job.result,
            error=job.error,
            last_error=job.last_error,
        )


class CancelJobResponse(BaseModel):
    """Response body after canceling a job."""

    message: str
    job: JobResponse


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class JobStatsResponse(BaseModel):
    """Job counts by status."""

    stats: dict[str, int]
    queue_depth: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    store: str
    store_backend: str
    queue_depth: int | None = None
    pending_notifications: int = 0
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    status_code: int = Field(serialization_alias="statusCode")
    error: str
    message: str
