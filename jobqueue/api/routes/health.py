"""
Health, readiness and metrics routes.
"""

import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse, Response

from jobqueue import __version__
from jobqueue.api.dependencies import Runtime
from jobqueue.bootstrap import QueueRuntime
from jobqueue.clock import utcnow
from jobqueue.constants import JobStatus
from jobqueue.errors import StoreError
from jobqueue.observability.metrics import get_metrics
from jobqueue.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _queue_counts(runtime: QueueRuntime) -> dict[str, int] | None:
    """Job counts by status, or None when the store is unreachable."""
    try:
        return await runtime.store.count_by_status()
    except StoreError as e:
        logger.warning("Job store health check failed", extra={"error": e.message})
        return None


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Report job store connectivity, queue depth and pending notifications.",
)
async def health_check(runtime: Runtime) -> HealthResponse:
    """
    Report service health.

    The service is ``degraded`` while the job store is unreachable; the API
    keeps answering so the outage is visible.
    """
    counts = await _queue_counts(runtime)
    queue_depth = None
    if counts is not None:
        queue_depth = counts.get(JobStatus.WAITING.value, 0) + counts.get(
            JobStatus.DELAYED.value, 0
        )

    return HealthResponse(
        status="healthy" if counts is not None else "degraded",
        version=__version__,
        store="healthy" if counts is not None else "unhealthy",
        store_backend=runtime.settings.store_backend,
        queue_depth=queue_depth,
        pending_notifications=runtime.dispatcher.pending,
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Ready once the job store answers; 503 otherwise.",
)
async def readiness_check(runtime: Runtime) -> JSONResponse:
    ready = await _queue_counts(runtime) is not None
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ready": ready},
    )


@router.get("/live", summary="Liveness check")
async def liveness_check() -> dict:
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose queue and API metrics in the Prometheus text format.",
)
async def metrics() -> Response:
    collector = get_metrics()
    return Response(content=collector.get_metrics(), media_type=collector.get_content_type())
