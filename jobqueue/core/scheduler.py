"""
Priority/delay scheduler.

Keeps the store's ready and delay indexes in step with job status and
promotes delayed jobs once their ``available_at`` has passed.
"""

import logging
from datetime import datetime

from jobqueue.clock import Clock, utcnow
from jobqueue.config import Settings, get_settings
from jobqueue.constants import JobStatus
from jobqueue.errors import NotFoundError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.store.base import JobStore
from jobqueue.types.job import Job


class Scheduler:
    """
    Maintains the ready and delay indexes.

    Ready order is priority desc, then created_at asc, then submission
    sequence; the delay index is ordered by available_at.
    """

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

    async def enqueue_waiting(self, job: Job) -> None:
        """Make a waiting job claimable."""
        await self._store.push_ready(job)

    async def enqueue_delayed(self, job: Job) -> None:
        """Park a delayed job until its available_at."""
        await self._store.push_delayed(job)

    async def remove_from_indexes(self, job_id: str) -> None:
        await self._store.remove_from_indexes(job_id)

    async def promote_due_delayed(self, now: datetime | None = None) -> list[str]:
        """
        Move every due delayed job to the ready index.

        Each job goes through a ``delayed -> waiting`` compare-and-set before
        it is pushed; jobs that changed in the meantime (canceled, say) are
        dropped from the batch.

        Args:
            now: Promotion time. Defaults to the scheduler's clock.

        Returns:
            IDs of the jobs that were promoted.
        """
        now = now or self._clock()
        promoted: list[str] = []

        due = await self._store.pop_due_delayed(now, self._settings.promotion_batch_size)
        for job_id in due:
            try:
                job = await self._store.compare_and_set_status(
                    job_id,
                    JobStatus.DELAYED,
                    JobStatus.WAITING,
                    when=lambda current: current.available_at <= now,
                    now=now,
                )
            except NotFoundError:
                continue
            if job is None:
                continue

            await self._store.push_ready(job)
            promoted.append(job_id)

        if promoted:
            self._metrics.record_jobs_promoted(len(promoted))
            self._logger.info(
                "Promoted delayed jobs",
                extra={"count": len(promoted)},
            )
        return promoted
