"""FastAPI application entry point for the Data Lineage Pipeline.

This module initializes the FastAPI application with all routes, middleware,
and lifecycle management for the lineage ingress and admin API.
"""

import asyncio
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from opentelemetry.trace import SpanKind, Status, StatusCode
from prometheus_client import CONTENT_TYPE_LATEST

from lineage_pipeline.api.routes import dlq_router, health_router, lineage_router
from lineage_pipeline.config import settings
from lineage_pipeline.core.pipeline import LineagePipeline, set_pipeline
from lineage_pipeline.observability.logging import correlation_id_scope, get_logger, setup_logging
from lineage_pipeline.observability.metrics import SYSTEM_INFO, get_metrics_manager
from lineage_pipeline.observability.tracing import get_tracer, setup_tracing, shutdown_tracing
from lineage_pipeline.worker.main import WorkerService

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events:
    - Configure logging and tracing
    - Build the pipeline (channels, store, archive)
    - Optionally run the consumers in-process
    - Release connections on shutdown

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    setup_logging(
        json_format=settings.observability.log_format == "json",
        log_level=settings.observability.log_level,
    )
    setup_tracing(settings.observability)

    SYSTEM_INFO.info({
        "app_name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.env,
    })

    logger.info(
        "starting_application",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.env,
        channel_backend=settings.channel.backend,
        store_backend=settings.store.backend,
    )

    pipeline = LineagePipeline.from_settings(settings)
    set_pipeline(pipeline)

    worker_task: asyncio.Task | None = None
    worker: WorkerService | None = None
    if settings.embedded_worker:
        worker = WorkerService(pipeline=pipeline, worker_id="embedded")
        worker_task = asyncio.create_task(worker.start())
        logger.info("embedded_worker_started")

    logger.info("application_startup_complete")

    yield

    logger.info("shutting_down_application")
    if worker is not None and worker_task is not None:
        await worker.stop()
        await worker_task
    await pipeline.close()
    set_pipeline(None)
    shutdown_tracing()
    logger.info("application_shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Records data lineage events and reconstructs lineage trees",
        docs_url="/docs" if settings.env != "production" else None,
        redoc_url="/redoc" if settings.env != "production" else None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    _add_middleware(app)

    app.include_router(health_router)
    app.include_router(lineage_router, prefix="/api/v1")
    app.include_router(dlq_router, prefix="/api/v1")

    @app.get("/metrics", tags=["System"])
    async def get_metrics() -> PlainTextResponse:
        """Prometheus metrics endpoint."""
        return PlainTextResponse(
            content=get_metrics_manager().get_metrics().decode("utf-8"),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app


def _add_middleware(app: FastAPI) -> None:
    """Add middleware to the application.

    Args:
        app: FastAPI application
    """

    @app.middleware("http")
    async def observability_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Trace each request and tag its logs with a request id."""
        request_id = request.headers.get("x-request-id") or uuid4().hex
        tracer = get_tracer("fastapi")
        start_time = time.time()

        with correlation_id_scope(request_id), tracer.start_as_current_span(
            name=f"{request.method} {request.url.path}",
            kind=SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.target": request.url.path,
                "http.scheme": request.url.scheme,
            },
        ) as span:
            response = await call_next(request)
            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR))
            response.headers["X-Request-ID"] = request_id
            logger.debug(
                "http_request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return response


def cli() -> None:
    """Command-line entry point (``lineage-api``)."""
    import uvicorn

    uvicorn.run(
        "lineage_pipeline.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=settings.workers if not settings.debug else 1,
    )


# Create the application instance
app = create_app()

if __name__ == "__main__":
    cli()
