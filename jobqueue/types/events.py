"""
Event type definitions for terminal-state notifications.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jobqueue.constants import JobStatus
from jobqueue.types.job import Job


class JobNotification(BaseModel):
    """
    Notification emitted when a job reaches a terminal state.

    Serialized with the wire names ``jobId`` and ``completedAt``; exactly one
    of ``result`` / ``error`` is sent depending on the status.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(serialization_alias="jobId")
    status: JobStatus
    type: str
    completed_at: datetime | None = Field(default=None, serialization_alias="completedAt")
    result: Any = None
    error: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobNotification":
        """Create a notification from a terminal job record."""
        return cls(
            job_id=job.id,
            status=job.status,
            type=job.type,
            completed_at=job.completed_at,
            result=job.result,
            error=job.error,
        )

    def to_payload(self) -> dict[str, Any]:
        """Render the JSON body sent to the webhook."""
        data = self.model_dump(mode="json", by_alias=True)
        if self.status == JobStatus.COMPLETED:
            data.pop("error", None)
        else:
            data.pop("result", None)
        return data
