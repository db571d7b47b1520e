import contextlib
import json
import logging
import os
import platform
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.gzip import GZipMiddleware

from render_service import prometheus_metrics
from render_service.context import RenderContext
from render_service.errors import PoolExhausted, RenderServiceError, ValidationError
from render_service.job_scheduler import Job, JobState
from render_service.render_request import build_render_request
from render_service.sanitization import describe_request_source
from render_service.schemas import (
    CacheHealthSchema,
    ErrorSchema,
    HealthSchema,
    JobAcceptedSchema,
    JobSchema,
    MemoryHealthSchema,
    PoolHealthSchema,
    SchedulerHealthSchema,
    VersionSchema,
)

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=3600"
RETRY_AFTER_SECONDS = "1"
GZIP_MINIMUM_SIZE = 1000

router = APIRouter()


def get_render_context(request: Request) -> RenderContext:
    """FastAPI dependency returning the RenderContext of the running app."""
    return request.app.state.render_context


def worker_id() -> str:
    return f"Worker-{os.getpid()}"


def create_app(context: RenderContext | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        context: Pre-built RenderContext, e.g. with a fake engine in tests. When None,
            a Chromium-backed context is created at startup.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app_instance: FastAPI) -> AsyncGenerator[None]:
        """
        Start the render context before serving and stop it on shutdown.

        If Chromium fails to start, the application will not start and the
        worker terminates (fail-fast behavior for containerized environments).
        """
        render_context = context or RenderContext()
        app_instance.state.render_context = render_context

        logger.info("Prepare render context for %s...", worker_id())
        await render_context.start()
        logger.info("Render context prepared successfully")

        yield  # Application runs here

        try:
            logger.info("Stopping render context...")
            await render_context.stop()
        except Exception as e:  # noqa: BLE001
            logger.error("Error stopping render context: %s", e)

    app_instance = FastAPI(
        title="Render Service API",
        version="1.0.0",
        openapi_url="/static/openapi.json",
        docs_url="/api/docs",
        openapi_version="3.1.0",
        lifespan=lifespan,
    )
    app_instance.middleware("http")(record_request_metrics)
    app_instance.add_middleware(GZipMiddleware, minimum_size=GZIP_MINIMUM_SIZE)
    app_instance.include_router(router)
    return app_instance


async def record_request_metrics(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start_time = time.monotonic()
    response = await call_next(request)
    # Label by route template to keep job ids out of the label set
    route = request.scope.get("route")
    path = getattr(route, "path", "unmatched")
    prometheus_metrics.http_requests_total.labels(method=request.method, path=path, status=str(response.status_code)).inc()
    prometheus_metrics.http_request_duration_seconds.labels(method=request.method, path=path).observe(time.monotonic() - start_time)
    return response


@router.get(
    "/health",
    summary="Health check",
    description="Returns health status with optional detailed snapshot. Use ?detailed=true for JSON response.",
    operation_id="getHealth",
    tags=["meta"],
    response_model=None,
    responses={
        200: {
            "content": {"text/plain": {"example": "OK"}, "application/json": {"schema": HealthSchema.model_json_schema()}},
            "description": "Service is healthy",
        },
        503: {
            "content": {"text/plain": {"example": "Service Unavailable"}, "application/json": {"schema": HealthSchema.model_json_schema()}},
            "description": "Service is unhealthy",
        },
    },
)
async def health(
    context: Annotated[RenderContext, Depends(get_render_context)],
    detailed: bool = Query(False, description="Return detailed JSON response with pool, cache, scheduler and memory state"),
) -> Response:
    """
    Health check endpoint that verifies the render context and the Chromium browser.

    Returns:
        - Simple mode: 200 with "OK" text or 503 with "Service Unavailable" text
        - Detailed mode: 200/503 with JSON snapshot of every component
    """
    healthy = context.is_running() and context.pool.is_running() and context.engine.health_check()
    status_code = 200 if healthy else 503

    if detailed:
        health_response = HealthSchema(
            status="healthy" if healthy else "unhealthy",
            version=os.environ.get("RENDER_SERVICE_VERSION", "unknown"),
            worker=worker_id(),
            uptime_seconds=round(context.uptime_seconds(), 2),
            chromium_running=context.engine.is_running(),
            chromium_version=context.engine.get_version(),
            memory=MemoryHealthSchema(**context.monitor.stats()),
            pool=PoolHealthSchema(**context.pool.stats()),  # type: ignore[arg-type]
            cache=CacheHealthSchema(**context.cache.stats()),  # type: ignore[arg-type]
            scheduler=SchedulerHealthSchema(**context.scheduler.stats()),
        )
        return Response(content=health_response.model_dump_json(), media_type="application/json", status_code=status_code)

    if healthy:
        return Response("OK", media_type="text/plain", status_code=200)
    return Response("Service Unavailable", media_type="text/plain", status_code=503)


@router.get(
    "/version",
    response_model=VersionSchema,
    summary="Service version information",
    description="Returns versions of Python, Playwright, the service itself, build timestamp, and Chromium.",
    operation_id="getVersion",
    tags=["meta"],
)
async def version(context: Annotated[RenderContext, Depends(get_render_context)]) -> dict[str, str | None]:
    """
    Get version information
    """
    logger.info("Version endpoint called")
    try:
        playwright_version: str | None = package_version("playwright")
    except PackageNotFoundError:
        playwright_version = None
    version_info = {
        "python": platform.python_version(),
        "playwright": playwright_version,
        "renderService": os.environ.get("RENDER_SERVICE_VERSION"),
        "timestamp": os.environ.get("RENDER_SERVICE_BUILD_TIMESTAMP"),
        "chromium": context.engine.get_version(),
    }
    logger.debug("Version info: %s", version_info)
    return version_info


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Metrics of this worker in Prometheus text format.",
    operation_id="getMetrics",
    tags=["meta"],
    response_class=Response,
)
async def metrics(context: Annotated[RenderContext, Depends(get_render_context)]) -> Response:
    """
    Expose Prometheus metrics endpoint.

    Counters are incremented when events occur. This endpoint only refreshes gauges
    to reflect current state (pool, cache, queue, memory).
    """
    prometheus_metrics.update_gauges_from_context(context)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


IMAGE_RESPONSES: dict[int | str, dict[str, Any]] = {
    200: {
        "content": {"image/jpeg": {}, "image/png": {}, "application/pdf": {}},
        "description": "Rendered output. X-Cache tells whether it was served from cache.",
    },
    202: {"model": JobAcceptedSchema, "description": "Job accepted (async=true)"},
    400: {"model": ErrorSchema, "description": "Invalid input"},
    502: {"model": ErrorSchema, "description": "Rendering engine failure"},
    503: {"model": ErrorSchema, "description": "No rendering handle available"},
    504: {"model": ErrorSchema, "description": "Render or request timeout"},
}


@router.post(
    "/image",
    responses=IMAGE_RESPONSES,
    summary="Render HTML or a URL",
    description="Accepts a JSON body with `html` (or `content`) or `url` plus rendering options and returns the rendered image or PDF.",
    operation_id="renderImagePost",
    tags=["render"],
    response_class=Response,
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {
                "application/json": {
                    "schema": {
                        "type": "object",
                        "properties": {
                            "html": {"type": "string", "example": "<html><body><h1>Hello</h1></body></html>"},
                            "content": {"type": "string", "description": "Alias of html"},
                            "url": {"type": "string", "format": "uri"},
                            "width": {"type": "integer", "minimum": 1, "maximum": 4000, "default": 800},
                            "height": {"type": "integer", "minimum": 1, "maximum": 4000, "default": 600},
                            "quality": {"type": "integer", "minimum": 1, "maximum": 100, "default": 80},
                            "format": {"type": "string", "enum": ["jpeg", "png", "pdf"], "default": "jpeg"},
                            "fullPage": {"type": "boolean", "default": False},
                        },
                    }
                }
            },
        }
    },
)
async def render_image_post(
    request: Request,
    context: Annotated[RenderContext, Depends(get_render_context)],
    run_async: bool = Query(False, alias="async", description="Return 202 with a job id instead of waiting for the result"),
) -> Response:
    """
    Render the JSON body to an image or PDF.
    """
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error_response(ValidationError("Request body must be valid JSON"))
    if not isinstance(data, dict):
        return _error_response(ValidationError("Request body must be a JSON object"))
    return await _render(request, context, data, run_async)


@router.get(
    "/image",
    responses=IMAGE_RESPONSES,
    summary="Render HTML or a URL from query parameters",
    description="Same as POST /image with the input given as query parameters (`content`/`html` or `url`).",
    operation_id="renderImageGet",
    tags=["render"],
    response_class=Response,
)
async def render_image_get(
    request: Request,
    context: Annotated[RenderContext, Depends(get_render_context)],
    run_async: bool = Query(False, alias="async", description="Return 202 with a job id instead of waiting for the result"),
) -> Response:
    """
    Render the query parameters to an image or PDF.
    """
    data = {key: value for key, value in request.query_params.items() if key != "async"}
    return await _render(request, context, data, run_async)


@router.get(
    "/job/{job_id}",
    name="get_job",
    response_model=JobSchema,
    responses={404: {"model": ErrorSchema, "description": "Unknown job"}},
    summary="Job status",
    description="Returns the state of a render job. Use ?consume=true to forget a finished job after reading it.",
    operation_id="getJob",
    tags=["render"],
)
async def get_job(
    job_id: str,
    request: Request,
    context: Annotated[RenderContext, Depends(get_render_context)],
    consume: bool = Query(False, description="Forget the job after reading it if it is finished"),
) -> Response:
    job = context.scheduler.poll(job_id, consume=consume)
    if job is None:
        return _not_found(job_id)
    return JSONResponse(_job_to_schema(job, request).model_dump())


@router.get(
    "/job/{job_id}/result",
    name="get_job_result",
    responses={
        200: {"content": {"image/jpeg": {}, "image/png": {}, "application/pdf": {}}, "description": "Rendered output"},
        404: {"model": ErrorSchema, "description": "Unknown job"},
        409: {"model": ErrorSchema, "description": "Job not completed"},
    },
    summary="Job result",
    description="Returns the rendered bytes of a completed job.",
    operation_id="getJobResult",
    tags=["render"],
    response_class=Response,
)
async def get_job_result(
    job_id: str,
    context: Annotated[RenderContext, Depends(get_render_context)],
) -> Response:
    job = context.scheduler.poll(job_id)
    if job is None:
        return _not_found(job_id)
    if job.state != JobState.COMPLETED:
        return JSONResponse({"error": f"Job {job_id} is {job.state.value}", "kind": job.error_kind, "id": job_id}, status_code=status.HTTP_409_CONFLICT)
    return _result_response(job)


async def _render(request: Request, context: RenderContext, data: dict[str, Any], run_async: bool) -> Response:
    try:
        render_request = build_render_request(data)
        logger.info("Render requested (%s, format=%s, %dx%d)", describe_request_source(render_request.source, render_request.content), render_request.options.format, render_request.options.width, render_request.options.height)

        job = await context.scheduler.submit(render_request, retain=run_async)
        if run_async:
            status_url = str(request.url_for("get_job", job_id=job.id))
            accepted = JobAcceptedSchema(id=job.id, state=job.state.value, status_url=status_url)
            return JSONResponse(accepted.model_dump(), status_code=status.HTTP_202_ACCEPTED, headers={"Location": status_url})

        try:
            await context.scheduler.wait(job)
        except TimeoutError:
            logger.warning("Job %s did not finish within %.1fs", job.id, context.scheduler.request_timeout)
            context.scheduler.retain(job)
            return JSONResponse(
                {"error": f"Render did not finish within {context.scheduler.request_timeout}s", "kind": "RequestTimeout", "id": job.id},
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            )

        context.scheduler.release(job)
        if job.error is not None:
            return _error_response(job.error, job_id=job.id)
        return _result_response(job)

    except RenderServiceError as e:
        return _error_response(e)
    except Exception as e:
        logger.error("Unexpected error while rendering: %s", e, exc_info=True)
        return JSONResponse({"error": "Unexpected error while rendering", "kind": "InternalError"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def _result_response(job: Job) -> Response:
    response = Response(job.result, media_type=job.request.options.media_type, status_code=200)
    response.headers["Content-Disposition"] = f"inline; filename={job.request.options.filename}"
    response.headers["Cache-Control"] = CACHE_CONTROL
    response.headers["X-Cache"] = "HIT" if job.cached else "MISS"
    response.headers["X-Generated-By"] = worker_id()
    response.headers["X-Job-Id"] = job.id
    return response


def _error_response(error: RenderServiceError, job_id: str | None = None) -> JSONResponse:
    if error.status_code >= 500:
        logger.error("Render failed: %s: %s", error.kind, error.message)
    else:
        logger.warning("Render rejected: %s: %s", error.kind, error.message)
    body: dict[str, Any] = {"error": error.message, "kind": error.kind}
    if job_id is not None:
        body["id"] = job_id
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if isinstance(error, PoolExhausted) else None
    return JSONResponse(body, status_code=error.status_code, headers=headers)


def _not_found(job_id: str) -> JSONResponse:
    return JSONResponse({"error": f"Unknown job {job_id}", "kind": "NotFound", "id": job_id}, status_code=status.HTTP_404_NOT_FOUND)


def _job_to_schema(job: Job, request: Request) -> JobSchema:
    error = ErrorSchema(error=job.error.message, kind=job.error.kind, id=job.id) if job.error is not None else None
    result = str(request.url_for("get_job_result", job_id=job.id)) if job.state == JobState.COMPLETED else None
    return JobSchema(
        id=job.id,
        state=job.state.value,
        fingerprint=job.fingerprint,
        format=job.request.options.format,
        cached=job.cached,
        attempts=job.attempts,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        error=error,
        result=result,
    )


app = create_app()
