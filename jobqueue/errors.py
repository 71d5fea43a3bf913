"""
Error taxonomy for the job queue core.

The taxonomy is closed:

- NotFoundError: unknown job id (recoverable, API 404)
- ConflictError: illegal state transition such as cancel-too-late, a lost
  claim race or a report from a worker that does not hold the lease
  (recoverable, API 409)
- ValidationError: malformed submit parameters (recoverable, API 422)
- StoreError: the underlying storage is unavailable. Retried a bounded
  number of times at the claim and lifecycle boundaries, then surfaced as a
  fatal operational error (API 503).
"""

from typing import Any


class JobQueueError(Exception):
    """
    Base exception for all job queue errors.

    Attributes:
        message: Human-readable error message.
        job_id: The job the error refers to, if any.
        recoverable: Whether callers are expected to handle the error.
    """

    recoverable: bool = True

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API responses and logs."""
        data: dict[str, Any] = {
            "error": type(self).__name__,
            "message": self.message,
        }
        if self.job_id is not None:
            data["job_id"] = self.job_id
        return data


class NotFoundError(JobQueueError):
    """Raised when a job id does not exist in the store."""


class ConflictError(JobQueueError):
    """Raised when a requested transition is not allowed from the current state."""

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
        current_status: str | None = None,
    ):
        super().__init__(message, job_id=job_id)
        self.current_status = current_status

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.current_status is not None:
            data["current_status"] = self.current_status
        return data


class ValidationError(JobQueueError):
    """Raised when submit parameters are malformed."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class StoreError(JobQueueError):
    """Raised when the job store cannot complete an operation."""

    recoverable = False
