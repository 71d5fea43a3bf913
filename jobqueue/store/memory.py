"""
In-process job store.

A dict of records plus two heaps, all guarded by one asyncio lock. Suitable
for single-process deployments and tests; multi-process deployments use
the SQL store.
"""

import asyncio
import heapq
import itertools
import logging
from collections import Counter
from collections.abc import Sequence
from datetime import datetime

from jobqueue.clock import utcnow
from jobqueue.constants import JobStatus
from jobqueue.errors import ConflictError, NotFoundError
from jobqueue.store.base import Guard, JobStore, Mutator, apply_transition
from jobqueue.types.job import Job

logger = logging.getLogger(__name__)


class MemoryJobStore(JobStore):
    """
    Job store backed by in-memory structures.

    Index entries are removed lazily: membership sets decide whether a heap
    entry is still live when it reaches the top.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._ready: list[tuple[int, datetime, int, str]] = []
        self._ready_members: set[str] = set()
        self._delayed: list[tuple[datetime, int, str]] = []
        self._delayed_members: set[str] = set()
        self._seq = itertools.count(1)
        self._lock = asyncio.Lock()

    async def put(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise ConflictError(f"Job '{job.id}' already exists", job_id=job.id)
            stored = job.model_copy(update={"seq": next(self._seq)}, deep=True)
            self._jobs[job.id] = stored
            return stored.model_copy(deep=True)

    async def get(self, job_id: str) -> Job:
        async with self._lock:
            return self._require(job_id).model_copy(deep=True)

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
        async with self._lock:
            current = self._require(job_id)
            if current.status != expected:
                return None
            if when is not None and not when(current):
                return None

            updated = apply_transition(current, new, mutator, now or utcnow())
            self._jobs[job_id] = updated

        logger.debug(
            "Job status transition",
            extra={"job_id": job_id, "from": expected.value, "to": new.value},
        )
        return updated.model_copy(deep=True)

    async def push_ready(self, job: Job) -> None:
        async with self._lock:
            if job.id in self._ready_members:
                return
            self._ready_members.add(job.id)
            heapq.heappush(self._ready, (-job.priority, job.created_at, job.seq, job.id))

    async def pop_ready(self, now: datetime) -> str | None:
        async with self._lock:
            while self._ready:
                _, _, _, job_id = heapq.heappop(self._ready)
                if job_id in self._ready_members:
                    self._ready_members.discard(job_id)
                    return job_id
            return None

    async def push_delayed(self, job: Job) -> None:
        async with self._lock:
            if job.id in self._delayed_members:
                return
            self._delayed_members.add(job.id)
            heapq.heappush(self._delayed, (job.available_at, job.seq, job.id))

    async def pop_due_delayed(self, now: datetime, limit: int) -> list[str]:
        due: list[str] = []
        async with self._lock:
            while self._delayed and len(due) < limit:
                available_at, _, job_id = self._delayed[0]
                if available_at > now:
                    break
                heapq.heappop(self._delayed)
                if job_id in self._delayed_members:
                    self._delayed_members.discard(job_id)
                    due.append(job_id)
        return due

    async def remove_from_indexes(self, job_id: str) -> None:
        async with self._lock:
            self._ready_members.discard(job_id)
            self._delayed_members.discard(job_id)

    async def expired_leases(self, now: datetime, limit: int) -> list[Job]:
        async with self._lock:
            expired = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PROCESSING and job.is_lease_expired(now)
            ]
        expired.sort(key=lambda job: job.lease_expires_at)
        return [job.model_copy(deep=True) for job in expired[:limit]]

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        async with self._lock:
            jobs = [
                job for job in self._jobs.values() if status is None or job.status == status
            ]
        jobs.sort(key=lambda job: (job.created_at, job.seq), reverse=True)
        page = jobs[offset : offset + limit]
        return [job.model_copy(deep=True) for job in page], len(jobs)

    async def count_by_status(self) -> dict[str, int]:
        async with self._lock:
            counts = Counter(job.status.value for job in self._jobs.values())
        return dict(counts)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job with ID '{job_id}' not found.", job_id=job_id)
        return job
