"""
Job store contract.

The store keeps job records and the two scheduling indexes (ready and
delayed). ``compare_and_set_status`` is the only way a record's status
changes; every higher-level transition is built on it, which gives the
store linearizable semantics per job id.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from jobqueue.config import Settings
from jobqueue.constants import JobStatus
from jobqueue.errors import StoreError
from jobqueue.types.job import Job

# Computes field updates from the current record
Mutator = Callable[[Job], dict[str, Any]]
# Extra precondition evaluated on the current record, atomically with the status check
Guard = Callable[[Job], bool]

_PROTECTED_FIELDS = frozenset({"id", "status", "seq", "version", "created_at", "updated_at"})


def apply_transition(
    job: Job,
    new_status: JobStatus,
    mutator: Mutator | None,
    now: datetime,
) -> Job:
    """
    Build the record that results from a successful compare-and-set.

    Sets the new status, bumps the version and moves ``updated_at`` forward
    (never backwards).

    Raises:
        ValueError: If the mutator tries to overwrite a store-managed field.
    """
    updates = dict(mutator(job)) if mutator is not None else {}
    protected = _PROTECTED_FIELDS.intersection(updates)
    if protected:
        raise ValueError(f"Mutator may not change store-managed fields: {sorted(protected)}")

    updates["status"] = new_status
    updates["updated_at"] = max(now, job.updated_at)
    updates["version"] = job.version + 1
    return job.model_copy(update=updates)


class JobStore(ABC):
    """
    Durable keyed storage for job records plus the ready/delay indexes.

    Ready index order: priority desc, created_at asc, seq asc.
    Delay index order: available_at asc.
    """

    @abstractmethod
    async def put(self, job: Job) -> Job:
        """
        Insert a new job record.

        Returns:
            The stored record with its submission sequence number assigned.
        """

    @abstractmethod
    async def get(self, job_id: str) -> Job:
        """
        Get a job by ID.

        Raises:
            NotFoundError: If the job does not exist.
        """

    @abstractmethod
    async def compare_and_set_status(
        self,
        job_id: str,
        expected: JobStatus,
        new: JobStatus,
        mutator: Mutator | None = None,
        *,
        when: Guard | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Atomically transition a job from ``expected`` to ``new``.

        Args:
            job_id: The job ID.
            expected: Status the stored record must currently have.
            new: Status to write.
            mutator: Computes additional field updates from the current record.
            when: Extra precondition on the current record.
            now: Transition time used for ``updated_at``.

        Returns:
            The updated record, or None if the stored status did not match
            or the guard rejected the record. Nothing is written in that case.

        Raises:
            NotFoundError: If the job does not exist.
        """

    @abstractmethod
    async def push_ready(self, job: Job) -> None:
        """Add a waiting job to the ready index."""

    @abstractmethod
    async def pop_ready(self, now: datetime) -> str | None:
        """Take the best ready job id, or None if the ready index is empty."""

    @abstractmethod
    async def push_delayed(self, job: Job) -> None:
        """Add a delayed job to the delay index."""

    @abstractmethod
    async def pop_due_delayed(self, now: datetime, limit: int) -> list[str]:
        """Take up to ``limit`` delayed job ids whose ``available_at <= now``."""

    @abstractmethod
    async def remove_from_indexes(self, job_id: str) -> None:
        """Drop a job from both indexes."""

    @abstractmethod
    async def expired_leases(self, now: datetime, limit: int) -> list[Job]:
        """Get processing jobs whose lease expired at or before ``now``."""

    @abstractmethod
    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs, newest first, with optional status filtering.

        Returns:
            Tuple of (jobs, total_count).
        """

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        """Get job counts keyed by status value."""

    async def close(self) -> None:
        """Release store resources."""


def store_retrying(settings: Settings, logger: logging.Logger) -> AsyncRetrying:
    """
    Build the bounded retry used at the claim and lifecycle boundaries.

    Only ``StoreError`` is retried; the last one is re-raised.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(StoreError),
        stop=stop_after_attempt(max(1, settings.store_retry_attempts)),
        wait=wait_exponential(multiplier=settings.store_retry_wait_seconds, max=2.0),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
