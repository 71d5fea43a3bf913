"""
Worker process for executing jobs.

The worker claims jobs from the queue, executes them with the registered
handler, and reports the outcome back to the lifecycle manager, which
decides between completion, retry and failure.
"""

import asyncio
import logging
import os
import signal
import time

from jobqueue.bootstrap import open_runtime
from jobqueue.config import Settings, get_settings
from jobqueue.constants import SPAN_EXECUTE_JOB
from jobqueue.core.lifecycle import LifecycleManager
from jobqueue.errors import ConflictError, NotFoundError
from jobqueue.observability.logging import (
    bind_context,
    clear_context,
    job_log_context,
    setup_logging,
)
from jobqueue.observability.tracing import queue_span, setup_tracing
from jobqueue.types.job import Job, JobContext
from jobqueue.worker.handlers import execute_job

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that claims and executes jobs.

    Features:
    - Concurrent claim loops coordinated only through the job store
    - Heartbeat to extend leases for long-running jobs
    - Graceful shutdown on SIGTERM/SIGINT with a bounded wait
    """

    def __init__(
        self,
        lifecycle: LifecycleManager,
        worker_id: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the worker.

        Args:
            lifecycle: The lifecycle manager used for claims and reports.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            concurrency: Number of claim loops.
            poll_interval: Seconds to wait after an empty claim.
            settings: Application settings.
        """
        settings = settings or get_settings()

        self.lifecycle = lifecycle
        self.worker_id = (
            worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.concurrency = max(1, concurrency or settings.worker_concurrency)
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        self.heartbeat_interval = settings.worker_heartbeat_interval_seconds
        self.shutdown_timeout = settings.worker_shutdown_timeout_seconds

        self._running = False
        self._stop_event = asyncio.Event()
        self._current_jobs: dict[str, Job] = {}
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def current_jobs(self) -> list[str]:
        return list(self._current_jobs)

    async def start(self) -> None:
        """Run the claim loops until ``stop`` is called."""
        bind_context(worker_id=self.worker_id)
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency},
        )

        self._running = True
        self._stop_event.clear()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        loops = [asyncio.create_task(self._claim_loop()) for _ in range(self.concurrency)]

        try:
            await self._stop_event.wait()

            # Let in-flight jobs finish, bounded by the shutdown timeout
            _, pending = await asyncio.wait(loops, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(
                    "Shutdown timeout reached, interrupting jobs",
                    extra={"worker_id": self.worker_id, "jobs": self.current_jobs},
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self._running = False
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})
        clear_context()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> Job | None:
        """
        Claim and process a single job.

        Returns:
            The job as reported, or None if nothing was ready.
        """
        job = await self.lifecycle.claim(self.worker_id)
        if job is None:
            return None

        self._current_jobs[job.id] = job
        try:
            return await self._execute_job(job)
        finally:
            self._current_jobs.pop(job.id, None)

    async def _claim_loop(self) -> None:
        while self._running:
            try:
                job = await self.run_once()
            except Exception as e:
                logger.exception(
                    "Error in worker loop",
                    extra={"worker_id": self.worker_id, "error": str(e)},
                )
                job = None

            if job is None and self._running:
                await self._idle()

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def _execute_job(self, job: Job) -> Job:
        """
        Execute a claimed job and report its outcome.

        A report rejected with ``ConflictError`` means the lease was lost
        (recovered by the sweep or canceled); the result is dropped.

        Args:
            job: The claimed job.

        Returns:
            The job after the report, or the claimed job if the report was rejected.
        """
        start_time = time.monotonic()
        context = JobContext.from_job(job)

        with (
            job_log_context(job),
            queue_span(
                SPAN_EXECUTE_JOB,
                job_id=job.id,
                job_type=job.type,
                attempt=context.attempt,
            ) as span,
        ):
            logger.info("Executing job", extra={"max_attempts": context.max_attempts})
            result = await execute_job(context)
            span.set_attribute("success", result.success)

        duration = time.monotonic() - start_time

        try:
            if result.success:
                reported = await self.lifecycle.report_success(
                    job.id, self.worker_id, result.output
                )
            else:
                reported = await self.lifecycle.report_failure(
                    job.id, self.worker_id, result.error or "Unknown error"
                )
        except (ConflictError, NotFoundError) as e:
            logger.warning(
                "Report rejected, lease no longer held",
                extra={"job_id": job.id, "worker_id": self.worker_id, "error": e.message},
            )
            return job

        logger.info(
            "Job processed",
            extra={
                "job_id": job.id,
                "status": reported.status.value,
                "duration": f"{duration:.2f}s",
            },
        )
        return reported

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being recovered by the lease sweep
        while they're still being executed.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for job_id in list(self._current_jobs):
                    try:
                        await self.lifecycle.extend_lease(job_id, self.worker_id)
                    except (ConflictError, NotFoundError):
                        logger.warning(
                            "Lease lost while job is running",
                            extra={"job_id": job_id, "worker_id": self.worker_id},
                        )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in heartbeat loop", extra={"error": str(e)})


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings, process="worker")
    if settings.tracing_enabled:
        setup_tracing(settings)

    runtime = await open_runtime(settings)
    worker = Worker(runtime.lifecycle, settings=settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await runtime.aclose()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
