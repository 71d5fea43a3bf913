"""
Job-related type definitions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from jobqueue.constants import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    JOB_TYPE_MAX_LENGTH,
    JOB_TYPE_PATTERN,
    MAX_BACKOFF_BASE_MS,
    MAX_DELAY_MS,
    MAX_MAX_ATTEMPTS,
    MAX_PRIORITY,
    MIN_BACKOFF_BASE_MS,
    MIN_MAX_ATTEMPTS,
    MIN_PRIORITY,
    TERMINAL_STATUSES,
    JobStatus,
)


class RetryPolicyConfig(BaseModel):
    """Per-job retry configuration."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS, ge=MIN_MAX_ATTEMPTS, le=MAX_MAX_ATTEMPTS
    )
    backoff_base_ms: int = Field(
        default=DEFAULT_BACKOFF_BASE_MS, ge=MIN_BACKOFF_BASE_MS, le=MAX_BACKOFF_BASE_MS
    )


class WebhookConfig(BaseModel):
    """Where to send terminal-state notifications."""

    model_config = ConfigDict(frozen=True)

    url: HttpUrl
    headers: dict[str, str] = Field(default_factory=dict)


class SubmitRequest(BaseModel):
    """
    Validated submit parameters.

    Built by the lifecycle manager from the arguments of ``submit``; a
    pydantic validation failure here is reported as ``ValidationError``.
    """

    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=1, max_length=JOB_TYPE_MAX_LENGTH, pattern=JOB_TYPE_PATTERN)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    delay_ms: int = Field(default=0, ge=0, le=MAX_DELAY_MS)
    retry: RetryPolicyConfig | None = None
    webhook: WebhookConfig | None = None


class Job(BaseModel):
    """
    A unit of work.

    Records are immutable snapshots; every change produces a new copy
    through the job store's compare-and-set primitive.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY
    status: JobStatus
    available_at: datetime
    attempt: int = 0
    retry_policy: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    webhook: WebhookConfig | None = None

    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    result: Any = None
    error: str | None = None
    last_error: str | None = None

    # Lease management
    lease_owner: str | None = None
    lease_started_at: datetime | None = None
    lease_expires_at: datetime | None = None

    # Store bookkeeping: submission order and optimistic concurrency token
    seq: int = 0
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a terminal state."""
        return self.status in TERMINAL_STATUSES

    @property
    def max_attempts(self) -> int:
        return self.retry_policy.max_attempts

    def is_lease_expired(self, now: datetime) -> bool:
        """Check if the job's lease has expired at ``now``."""
        if self.lease_expires_at is None:
            return False
        return self.lease_expires_at <= now


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: str
    job_type: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    lease_owner: str
    lease_expires_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobContext":
        return cls(
            job_id=job.id,
            job_type=job.type,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            payload=job.payload,
            lease_owner=job.lease_owner or "",
            lease_expires_at=job.lease_expires_at,
        )

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
