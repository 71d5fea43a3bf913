"""
Job handlers, keyed by job type.

A claimed job may run more than once (its lease can expire while the
worker is still busy), so handlers should be safe to repeat. A handler
returns a ``JobResult``; a raised exception counts as a failed attempt.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from jobqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobContext], Awaitable[JobResult]]

_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Register the decorated coroutine as the handler for ``job_type``.

    Registering a type twice replaces the earlier handler.

    Example:
        @register_handler("send_email")
        async def handle_send_email(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        if job_type in _handlers:
            logger.warning("Replacing job handler", extra={"job_type": job_type})
        _handlers[job_type] = handler
        return handler
    return decorator


def get_handler(job_type: str) -> JobHandler | None:
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """Job types with a registered handler, sorted."""
    return sorted(_handlers)


# Built-in handlers


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """Return the payload unchanged."""
    return JobResult(success=True, output={"echo": context.payload})


@register_handler("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """Sleep for ``payload.duration_seconds`` (default 1); exercises lease heartbeats."""
    duration = float(context.payload.get("duration_seconds", 1))
    await asyncio.sleep(duration)
    return JobResult(success=True, output={"slept_for": duration})


@register_handler("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """Fail every attempt; exercises retries and backoff."""
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )


@register_handler("simulate")
async def handle_simulate(context: JobContext) -> JobResult:
    """
    Simulated unit of work.

    Payload:
    - executionTime: milliseconds of simulated work (default 1000)
    - shouldFail: fail once the work is done
    """
    execution_ms = context.payload.get("executionTime", 1000)
    await asyncio.sleep(execution_ms / 1000)

    if context.payload.get("shouldFail") is True:
        return JobResult(
            success=False,
            error=f"Job {context.job_id} failed as requested by payload.",
        )

    return JobResult(
        success=True,
        output={"success": True, "message": f"Job {context.job_id} completed successfully."},
    )


async def execute_job(context: JobContext) -> JobResult:
    """
    Run the handler registered for ``context.job_type``.

    An unknown job type and a handler exception both produce a failed
    result, which the lifecycle manager feeds through the retry policy.
    The returned result carries the handler's wall time in ``duration_ms``.
    """
    handler = get_handler(context.job_type)
    if handler is None:
        logger.error("No handler for job type", extra={"job_type": context.job_type})
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {context.job_type}",
        )

    started = time.monotonic()
    try:
        result = await handler(context)
    except Exception as e:
        logger.exception("Job handler raised", extra={"job_type": context.job_type})
        result = JobResult(success=False, error=f"Handler exception: {e}")

    return result.model_copy(update={"duration_ms": (time.monotonic() - started) * 1000})
