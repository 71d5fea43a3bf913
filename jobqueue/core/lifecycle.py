"""
Job lifecycle manager.

Owns the job state machine. Every transition is a compare-and-set on the
job store, so concurrent workers, the API and the maintenance process can
act on the same job without further coordination:

- submit                  -> waiting | delayed
- delayed  (promotion)    -> waiting
- waiting  (claim)        -> processing
- processing (success)    -> completed
- processing (failure)    -> delayed (retry) | failed
- waiting|delayed (cancel)-> canceled

Only the caller that wins the transition into a terminal state emits the
job's notification.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from jobqueue.clock import Clock, utcnow
from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    CANCELABLE_STATUSES,
    CANCELED_ERROR,
    DEFAULT_PRIORITY,
    LEASE_EXPIRED_ERROR,
    SPAN_CANCEL_JOB,
    SPAN_RECOVER_LEASES,
    SPAN_REPORT_JOB,
    SPAN_SUBMIT_JOB,
    JobStatus,
)
from jobqueue.core.claim import ClaimProtocol
from jobqueue.core.notifications import NotificationDispatcher
from jobqueue.core.retry import RetryPolicy
from jobqueue.core.scheduler import Scheduler
from jobqueue.errors import ConflictError, NotFoundError, ValidationError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import queue_span
from jobqueue.store.base import Guard, JobStore, store_retrying
from jobqueue.types.job import Job, RetryPolicyConfig, SubmitRequest, WebhookConfig

T = TypeVar("T")

# Cancel retries only when the job moved between cancelable states
_CANCEL_ATTEMPTS = 3

# lease_started_at is kept as the start of the last attempt
_CLEARED_LEASE: dict[str, Any] = {
    "lease_owner": None,
    "lease_expires_at": None,
}


class LifecycleManager:
    """
    Entry point for every job operation.

    Composes the scheduler, claim protocol and retry policy on top of a
    job store. Store outages are retried a bounded number of times and then
    surface as ``StoreError``.
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: NotificationDispatcher | None = None,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
        logger: logging.Logger | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        """
        Initialize the lifecycle manager.

        Args:
            store: The job store.
            dispatcher: Notification dispatcher; terminal notifications are
                dropped when omitted.
            settings: Application settings.
            clock: Time source.
            metrics: Metrics collector.
            logger: Logger used by the manager and its collaborators.
            retry_policy: Retry decision logic.
        """
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._logger = logger or logging.getLogger(__name__)
        self._dispatcher = dispatcher or NotificationDispatcher(
            None, metrics=self._metrics, logger=self._logger
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self.scheduler = Scheduler(
            store,
            settings=self._settings,
            clock=clock,
            metrics=self._metrics,
            logger=self._logger,
        )
        self.claims = ClaimProtocol(
            store,
            settings=self._settings,
            clock=clock,
            metrics=self._metrics,
            logger=self._logger,
        )

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------

    async def submit(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int = DEFAULT_PRIORITY,
        delay_ms: int = 0,
        retry: RetryPolicyConfig | dict[str, Any] | None = None,
        webhook: WebhookConfig | dict[str, Any] | None = None,
    ) -> Job:
        """
        Submit a new job.

        Args:
            type: Handler name.
            payload: Opaque job data.
            priority: Higher values are claimed first (-10..10).
            delay_ms: Milliseconds before the job becomes claimable.
            retry: Retry policy; settings defaults apply when omitted.
            webhook: Where to send the terminal notification.

        Returns:
            The stored job in ``waiting`` or ``delayed`` state.

        Raises:
            ValidationError: If any parameter is out of bounds.
        """
        try:
            request = SubmitRequest(
                type=type,
                payload=payload if payload is not None else {},
                priority=priority,
                delay_ms=delay_ms,
                retry=retry,
                webhook=webhook,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid job submission",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

        now = self._clock()
        policy = request.retry or RetryPolicyConfig(
            max_attempts=self._settings.default_max_attempts,
            backoff_base_ms=self._settings.default_backoff_base_ms,
        )
        status = JobStatus.DELAYED if request.delay_ms > 0 else JobStatus.WAITING
        job = Job(
            id=str(uuid4()),
            type=request.type,
            payload=request.payload,
            priority=request.priority,
            status=status,
            available_at=now + timedelta(milliseconds=request.delay_ms),
            retry_policy=policy,
            webhook=request.webhook,
            created_at=now,
            updated_at=now,
        )

        with queue_span(SPAN_SUBMIT_JOB, job_id=job.id, job_type=job.type):
            job = await self._with_retries(self._store.put, job)
            if status == JobStatus.DELAYED:
                await self._with_retries(self.scheduler.enqueue_delayed, job)
            else:
                await self._with_retries(self.scheduler.enqueue_waiting, job)

        self._metrics.record_job_submitted(job.type, job.status.value)
        self._logger.info(
            "Job submitted",
            extra={
                "job_id": job.id,
                "job_type": job.type,
                "priority": job.priority,
                "status": job.status.value,
            },
        )
        return job

    async def get_status(self, job_id: str) -> Job:
        """
        Get a job by ID.

        Raises:
            NotFoundError: If the job does not exist.
        """
        return await self._with_retries(self._store.get, job_id)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """List jobs, newest first. Returns (jobs, total)."""
        return await self._with_retries(self._store.list_jobs, status, limit, offset)

    async def stats(self) -> dict[str, int]:
        """Get job counts for every status."""
        counts = await self._with_retries(self._store.count_by_status)
        stats = {status.value: counts.get(status.value, 0) for status in JobStatus}
        self._metrics.update_queue_depth(stats)
        return stats

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a job that has not started processing.

        Only the status read and compare-and-set are retried on ``StoreError``;
        once the cancel has committed it is notified before the job leaves
        the indexes.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the job is processing or already terminal.
        """
        with queue_span(SPAN_CANCEL_JOB, job_id=job_id):
            canceled, previous_status = await self._with_retries(self._cancel_once, job_id)

            self._dispatcher.emit(canceled)
            self._logger.info(
                "Job canceled",
                extra={"job_id": job_id, "previous_status": previous_status.value},
            )
            await self._with_retries(self.scheduler.remove_from_indexes, job_id)
            return canceled

    async def _cancel_once(self, job_id: str) -> tuple[Job, JobStatus]:
        for _ in range(_CANCEL_ATTEMPTS):
            current = await self._store.get(job_id)
            if current.status not in CANCELABLE_STATUSES:
                raise ConflictError(
                    f"Cannot cancel job in '{current.status.value}' state",
                    job_id=job_id,
                    current_status=current.status.value,
                )

            now = self._clock()
            canceled = await self._store.compare_and_set_status(
                job_id,
                current.status,
                JobStatus.CANCELED,
                lambda _: {"error": CANCELED_ERROR, "completed_at": now},
                now=now,
            )
            if canceled is not None:
                return canceled, current.status
            # Promoted or claimed meanwhile; re-read and decide again

        current = await self._store.get(job_id)
        raise ConflictError(
            f"Job '{job_id}' changed state while being canceled",
            job_id=job_id,
            current_status=current.status.value,
        )

    async def claim(self, worker_id: str) -> Job | None:
        """Claim the next ready job for a worker, or None if nothing is ready."""
        return await self.claims.claim(worker_id)

    async def report_success(self, job_id: str, worker_id: str, result: Any) -> Job:
        """
        Mark a processing job as completed.

        A completed job always carries a result; ``None`` is stored as an
        empty object so the record never ends with neither result nor error.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the job is not leased to ``worker_id``.
        """
        with queue_span(
            SPAN_REPORT_JOB,
            job_id=job_id,
            worker_id=worker_id,
            outcome=JobStatus.COMPLETED.value,
        ):
            return await self._with_retries(self._complete, job_id, worker_id, result)

    async def _complete(self, job_id: str, worker_id: str, result: Any) -> Job:
        now = self._clock()
        job = await self._store.compare_and_set_status(
            job_id,
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
            lambda _: {
                "result": {} if result is None else result,
                "error": None,
                "completed_at": now,
                **_CLEARED_LEASE,
            },
            when=lambda current: current.lease_owner == worker_id,
            now=now,
        )
        if job is None:
            raise await self._not_leased(job_id, worker_id)

        self._dispatcher.emit(job)
        self._metrics.record_job_completed(
            job.type, JobStatus.COMPLETED.value, self._elapsed(job, now)
        )
        self._logger.info(
            "Job completed",
            extra={"job_id": job_id, "worker_id": worker_id, "attempt": job.attempt},
        )
        return job

    async def report_failure(self, job_id: str, worker_id: str, error: str) -> Job:
        """
        Record a failed attempt; the job is retried or marked failed.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the job is not leased to ``worker_id``.
        """
        with queue_span(SPAN_REPORT_JOB, job_id=job_id, worker_id=worker_id) as span:
            job = await self._with_retries(self._fail, job_id, worker_id, error)
            span.set_attribute("outcome", job.status.value)
            return job

    async def _fail(self, job_id: str, worker_id: str, error: str) -> Job:
        current = await self._store.get(job_id)
        if current.status != JobStatus.PROCESSING or current.lease_owner != worker_id:
            raise self._conflict_for(current, worker_id)

        attempt = current.attempt
        job = await self._fail_attempt(
            current,
            error,
            when=lambda j: j.lease_owner == worker_id and j.attempt == attempt,
            now=self._clock(),
        )
        if job is None:
            raise await self._not_leased(job_id, worker_id)
        return job

    async def extend_lease(self, job_id: str, worker_id: str) -> Job:
        """
        Push a processing job's lease expiry forward by the lease duration.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the job is not leased to ``worker_id``.
        """
        return await self._with_retries(self._extend_lease, job_id, worker_id)

    async def _extend_lease(self, job_id: str, worker_id: str) -> Job:
        now = self._clock()
        expires_at = now + self.claims.lease_duration
        job = await self._store.compare_and_set_status(
            job_id,
            JobStatus.PROCESSING,
            JobStatus.PROCESSING,
            lambda _: {"lease_expires_at": expires_at},
            when=lambda current: current.lease_owner == worker_id,
            now=now,
        )
        if job is None:
            raise await self._not_leased(job_id, worker_id)

        self._logger.debug(
            "Extended lease",
            extra={"job_id": job_id, "lease_expires_at": expires_at.isoformat()},
        )
        return job

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def promote_due_delayed(self, now: datetime | None = None) -> list[str]:
        """Promote delayed jobs whose available_at has passed."""
        return await self._with_retries(self.scheduler.promote_due_delayed, now)

    async def recover_expired_leases(self, now: datetime | None = None) -> list[str]:
        """
        Treat processing jobs with an expired lease as failed attempts.

        A late report from the original worker and this sweep race on the
        same compare-and-set; whichever loses leaves the job untouched.

        Returns:
            IDs of the recovered jobs.
        """
        with queue_span(SPAN_RECOVER_LEASES) as span:
            recovered = await self._with_retries(self._recover, now or self._clock())
            span.set_attribute("recovered", len(recovered))
            return recovered

    async def _recover(self, now: datetime) -> list[str]:
        expired = await self._store.expired_leases(now, self._settings.reaper_batch_size)
        recovered: list[str] = []

        for job in expired:
            owner, attempt = job.lease_owner, job.attempt
            try:
                updated = await self._fail_attempt(
                    job,
                    LEASE_EXPIRED_ERROR,
                    when=lambda j, owner=owner, attempt=attempt: (
                        j.lease_owner == owner and j.attempt == attempt and j.is_lease_expired(now)
                    ),
                    now=now,
                )
            except NotFoundError:
                continue
            if updated is None:
                continue

            recovered.append(job.id)
            self._logger.warning(
                "Recovered expired lease",
                extra={
                    "job_id": job.id,
                    "worker_id": owner,
                    "attempt": attempt,
                    "status": updated.status.value,
                },
            )

        if recovered:
            self._metrics.record_lease_expired(len(recovered))
        return recovered

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fail_attempt(
        self,
        current: Job,
        error: str,
        *,
        when: Guard,
        now: datetime,
    ) -> Job | None:
        decision = self.retry_policy.on_failure(current, error, now)
        duration = self._elapsed(current, now)

        if decision.should_retry:
            job = await self._store.compare_and_set_status(
                current.id,
                JobStatus.PROCESSING,
                JobStatus.DELAYED,
                lambda _: {
                    "available_at": decision.next_available_at,
                    "last_error": error,
                    **_CLEARED_LEASE,
                },
                when=when,
                now=now,
            )
            if job is None:
                return None

            await self.scheduler.enqueue_delayed(job)
            self._metrics.record_job_completed(job.type, "retried", duration)
            self._logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": job.id,
                    "attempt": job.attempt,
                    "max_attempts": job.max_attempts,
                    "available_at": job.available_at.isoformat(),
                    "error": error,
                },
            )
            return job

        job = await self._store.compare_and_set_status(
            current.id,
            JobStatus.PROCESSING,
            JobStatus.FAILED,
            lambda _: {
                "error": error,
                "last_error": error,
                "completed_at": now,
                **_CLEARED_LEASE,
            },
            when=when,
            now=now,
        )
        if job is None:
            return None

        self._dispatcher.emit(job)
        self._metrics.record_job_completed(job.type, JobStatus.FAILED.value, duration)
        self._logger.warning(
            "Job failed permanently",
            extra={"job_id": job.id, "attempt": job.attempt, "error": error},
        )
        return job

    async def _not_leased(self, job_id: str, worker_id: str) -> ConflictError:
        current = await self._store.get(job_id)
        return self._conflict_for(current, worker_id)

    @staticmethod
    def _conflict_for(current: Job, worker_id: str) -> ConflictError:
        return ConflictError(
            f"Job '{current.id}' is not leased to worker '{worker_id}'",
            job_id=current.id,
            current_status=current.status.value,
        )

    @staticmethod
    def _elapsed(job: Job, now: datetime) -> float | None:
        if job.lease_started_at is None:
            return None
        return max((now - job.lease_started_at).total_seconds(), 0.0)

    async def _with_retries(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        async for attempt in store_retrying(self._settings, self._logger):
            with attempt:
                return await operation(*args)
