from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from planbridge.api.router import api_router
from planbridge.core.config import get_settings
from planbridge.core.telemetry import (
    TelemetryRuntime,
    configure_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from planbridge.services.pipeline import get_pipeline

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _telemetry_runtime
    # Resolve the graph the way routes do so dependency overrides apply here too.
    pipeline = app.dependency_overrides.get(get_pipeline, get_pipeline)()
    await pipeline.start()
    try:
        yield
    finally:
        await pipeline.aclose()
        get_pipeline.cache_clear()
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
            _telemetry_runtime = None


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
