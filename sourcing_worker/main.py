from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.requests import Request

from sourcing_worker.api.router import api_router
from sourcing_worker.core.config import get_settings
from sourcing_worker.core.telemetry import (
    TelemetryRuntime,
    configure_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from sourcing_worker.schemas.jobs import QUEUE_NAMES
from sourcing_worker.services.job_queue import get_job_queue
from sourcing_worker.services.repository import RepositoryUnavailableError, get_repository

REQUEST_ID_HEADER = "X-Request-ID"

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


async def release_resources() -> None:
    """Close the pool only if a request opened one, then drop the cached singletons."""
    if get_repository.cache_info().currsize:
        await get_repository().close()
    get_job_queue.cache_clear()
    get_repository.cache_clear()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    logger.info("trigger api starting environment=%s queues=%s", settings.environment, ",".join(QUEUE_NAMES))
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await release_resources()
        logger.info("trigger api stopped")


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.exception_handler(RepositoryUnavailableError)
async def repository_unavailable_handler(request: Request, exc: RepositoryUnavailableError) -> JSONResponse:
    logger.warning("repository unavailable path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "http request id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
