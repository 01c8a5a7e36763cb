from contextlib import asynccontextmanager
import asyncio
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from harvester.api.router import api_router
from harvester.core.config import get_settings
from harvester.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from harvester.main import run_loop
from harvester.services.runtime import get_runtime

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    stop = asyncio.Event()
    loop_task: asyncio.Task | None = None
    if settings.serve_loop:
        loop_task = asyncio.create_task(run_loop(get_runtime(), settings, stop))
    try:
        yield
    finally:
        stop.set()
        if loop_task is not None:
            await loop_task
        for task in list(app.state.background_tasks):
            await task
        await get_runtime().close()
        get_runtime.cache_clear()
        shutdown_telemetry(telemetry_runtime)


app = FastAPI(title=settings.otel_service_name, lifespan=lifespan)
app.state.background_tasks = set()


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
