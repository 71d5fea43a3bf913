"""
Claim protocol.

A worker takes the best ready job by winning a ``waiting -> processing``
compare-and-set. Losing the race is not an error: the claimer simply moves
on to the next candidate.
"""

import logging
from datetime import datetime, timedelta

from jobqueue.clock import Clock, utcnow
from jobqueue.config import Settings, get_settings
from jobqueue.constants import SPAN_CLAIM_JOB, JobStatus
from jobqueue.errors import NotFoundError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import queue_span
from jobqueue.store.base import JobStore, Mutator, store_retrying
from jobqueue.types.job import Job


class ClaimProtocol:
    """Hands out ready jobs to workers under a lease."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self._settings.worker_lease_duration_seconds)

    async def claim(self, worker_id: str) -> Job | None:
        """
        Claim the next ready job for a worker.

        Args:
            worker_id: The claiming worker; becomes the lease owner.

        Returns:
            The claimed job in ``processing`` state, or None if nothing is ready.

        Raises:
            StoreError: If the store stays unavailable after bounded retries.
        """
        with queue_span(SPAN_CLAIM_JOB, worker_id=worker_id) as span:
            async for attempt in store_retrying(self._settings, self._logger):
                with attempt:
                    job = await self._claim_once(worker_id)

            if job is None:
                return None

            span.set_attribute("job_id", job.id)
            span.set_attribute("attempt", job.attempt)
            self._metrics.record_job_claimed(worker_id)
            self._logger.info(
                "Job claimed",
                extra={
                    "job_id": job.id,
                    "worker_id": worker_id,
                    "attempt": job.attempt,
                    "lease_expires_at": job.lease_expires_at.isoformat()
                    if job.lease_expires_at
                    else None,
                },
            )
            return job

    async def _claim_once(self, worker_id: str) -> Job | None:
        for _ in range(max(1, self._settings.claim_max_candidates)):
            now = self._clock()
            job_id = await self._store.pop_ready(now)
            if job_id is None:
                return None

            try:
                job = await self._store.compare_and_set_status(
                    job_id,
                    JobStatus.WAITING,
                    JobStatus.PROCESSING,
                    self._lease_mutator(worker_id, now),
                    now=now,
                )
            except NotFoundError:
                continue

            if job is not None:
                return job

            self._logger.debug(
                "Lost claim race, trying next candidate",
                extra={"job_id": job_id, "worker_id": worker_id},
            )
        return None

    def _lease_mutator(self, worker_id: str, now: datetime) -> Mutator:
        expires_at = now + self.lease_duration

        def mutate(current: Job) -> dict:
            return {
                "lease_owner": worker_id,
                "lease_started_at": now,
                "lease_expires_at": expires_at,
                "attempt": current.attempt + 1,
            }

        return mutate
