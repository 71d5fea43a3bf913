"""
Job management routes.
"""

import logging
from http import HTTPStatus

from fastapi import APIRouter, Query, Response, status

from jobqueue.api.dependencies import Lifecycle
from jobqueue.constants import API_V1_PREFIX, JobStatus
from jobqueue.types.api import (
    CancelJobResponse,
    CreateJobRequest,
    CreateJobResponse,
    ErrorResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])

_NOT_FOUND = {status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}}


@router.post(
    "",
    response_model=CreateJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a job",
    description="Submit a new job to the queue.",
    responses={HTTPStatus.UNPROCESSABLE_ENTITY.value: {"model": ErrorResponse}},
)
async def create_job(
    request: CreateJobRequest,
    response: Response,
    lifecycle: Lifecycle,
) -> CreateJobResponse:
    """
    Create a new job.

    Jobs with a delay start in ``delayed`` state, all others in ``waiting``.

    Args:
        request: Job creation request.
        response: Outgoing response, used to set the Location header.
        lifecycle: The lifecycle manager.

    Returns:
        CreateJobResponse with the new job's ID and status.
    """
    job = await lifecycle.submit(
        request.type,
        request.payload,
        priority=request.priority,
        delay_ms=request.delay,
        retry=request.retry.to_policy() if request.retry else None,
        webhook=request.webhook,
    )

    response.headers["Location"] = f"{router.prefix}/{job.id}"
    return CreateJobResponse(
        id=job.id,
        type=job.type,
        status=job.status,
        created_at=job.created_at,
    )


@router.get(
    "/stats/summary",
    response_model=JobStatsResponse,
    summary="Get job statistics",
    description="Get job counts by status.",
)
async def get_job_stats(lifecycle: Lifecycle) -> JobStatsResponse:
    """
    Get job statistics.

    Args:
        lifecycle: The lifecycle manager.

    Returns:
        Counts by status and the number of jobs not yet processed.
    """
    stats = await lifecycle.stats()
    return JobStatsResponse(
        stats=stats,
        queue_depth=stats[JobStatus.WAITING.value] + stats[JobStatus.DELAYED.value],
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
    responses=_NOT_FOUND,
)
async def get_job(job_id: str, lifecycle: Lifecycle) -> JobResponse:
    """
    Get job details by ID.

    Args:
        job_id: The job ID.
        lifecycle: The lifecycle manager.

    Returns:
        JobResponse with full job details.
    """
    job = await lifecycle.get_status(job_id)
    return JobResponse.from_job(job)


@router.delete(
    "/{job_id}",
    response_model=CancelJobResponse,
    summary="Cancel a job",
    description="Cancel a job that has not started processing.",
    responses={
        **_NOT_FOUND,
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
)
async def cancel_job(job_id: str, lifecycle: Lifecycle) -> CancelJobResponse:
    """
    Cancel a waiting or delayed job.

    Args:
        job_id: The job ID.
        lifecycle: The lifecycle manager.

    Returns:
        CancelJobResponse with the canceled job.
    """
    job = await lifecycle.cancel(job_id)
    return CancelJobResponse(
        message="Job canceled successfully.",
        job=JobResponse.from_job(job),
    )


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs, newest first, with optional status filtering.",
)
async def list_jobs(
    lifecycle: Lifecycle,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
) -> JobListResponse:
    """
    List jobs.

    Args:
        lifecycle: The lifecycle manager.
        page: Page number (1-indexed).
        page_size: Number of items per page.
        status: Optional status filter.

    Returns:
        JobListResponse with paginated jobs.
    """
    offset = (page - 1) * page_size
    jobs, total = await lifecycle.list_jobs(status=status, limit=page_size, offset=offset)

    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )
