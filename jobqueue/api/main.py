"""
FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager
from http import HTTPStatus

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from jobqueue import __version__
from jobqueue.api.routes import health_router, jobs_router
from jobqueue.bootstrap import QueueRuntime, open_runtime
from jobqueue.config import get_settings
from jobqueue.errors import (
    ConflictError,
    JobQueueError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import instrument_fastapi, setup_tracing
from jobqueue.types.api import ErrorResponse

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[JobQueueError], int] = {
    NotFoundError: HTTPStatus.NOT_FOUND,
    ConflictError: HTTPStatus.CONFLICT,
    ValidationError: HTTPStatus.UNPROCESSABLE_ENTITY,
    StoreError: HTTPStatus.SERVICE_UNAVAILABLE,
}


def error_response(status_code: int, message: str) -> JSONResponse:
    """Build the standard ``{statusCode, error, message}`` error body."""
    body = ErrorResponse(
        status_code=int(status_code),
        error=HTTPStatus(status_code).phrase,
        message=message,
    )
    return JSONResponse(status_code=int(status_code), content=body.model_dump(by_alias=True))


async def job_queue_error_handler(request: Request, exc: JobQueueError) -> JSONResponse:
    """Map the queue's error taxonomy to HTTP responses."""
    status_code = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        HTTPStatus.INTERNAL_SERVER_ERROR,
    )
    if status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
        logger.error(
            "Request failed",
            extra={"path": request.url.path, "error_type": type(exc).__name__, "error": exc.message},
        )
    return error_response(status_code, exc.message)


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies and parameters."""
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return error_response(HTTPStatus.UNPROCESSABLE_ENTITY, details or "Invalid request")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render framework HTTP errors (unknown routes and methods) in the same shape."""
    return error_response(exc.status_code, str(exc.detail))


async def metrics_middleware(request: Request, call_next):
    """Record request counts and latency per route."""
    start = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    get_metrics().record_api_request(
        method=request.method,
        endpoint=getattr(route, "path", request.url.path),
        status=response.status_code,
        duration_seconds=time.perf_counter() - start,
    )
    return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Opens the queue runtime on startup unless one was supplied to
    ``create_app``, and closes the runtime it opened on shutdown.
    """
    # Startup
    owned: QueueRuntime | None = None
    if getattr(app.state, "runtime", None) is None:
        settings = get_settings()
        setup_logging(settings, process="api")
        if settings.tracing_enabled:
            setup_tracing(settings)
        owned = await open_runtime(settings)
        app.state.runtime = owned

    logger.info("Application started")

    yield

    # Shutdown
    if owned is not None:
        await owned.aclose()
        app.state.runtime = None
    logger.info("Application shutdown")


def create_app(runtime: QueueRuntime | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        runtime: An already opened queue runtime. When omitted, the
            lifespan opens one from settings.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = runtime.settings if runtime is not None else get_settings()
    setup_metrics()

    app = FastAPI(
        title="Job Queue API",
        description="Persistent multi-worker job queue",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.runtime = runtime

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(BaseHTTPMiddleware, dispatch=metrics_middleware)

    app.add_exception_handler(JobQueueError, job_queue_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)

    # Instrument with OpenTelemetry
    if settings.tracing_enabled:
        instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
