from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from authflow.api.error_handling import register_exception_handlers
from authflow.api.routes import DEVICE_ID_HEADER, router
from authflow.api.schemas import HealthResponse
from authflow.config import get_settings
from authflow.logging import get_logger, set_correlation_id
from authflow.service.scheduler import AsyncioScheduler

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the store sweeper on startup and stop it on shutdown."""
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    sweeper = runtime.build_sweeper(AsyncioScheduler())
    sweeper.start()
    logger.info("backend_started", port=runtime.settings.port, environment=runtime.settings.environment)

    yield

    try:
        sweeper.stop()
        logger.info("backend_stopped")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Authflow Backend", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    # Refresh cookies ride on cross-origin requests from the frontends
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", DEVICE_ID_HEADER, "X-Request-ID", "X-Admin-Key"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every log line of a request with its X-Request-ID and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, str] = {}
    healthy = True
    verify = getattr(runtime.kv, "verify_connection", None)
    if verify is not None:
        try:
            await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["store"] = "ok"
        except Exception as exc:
            logger.error("health_check_store_failed", error_type=type(exc).__name__, error=str(exc))
            checks["store"] = "unavailable"
            healthy = False
    else:
        checks["store"] = "ok"
    checks["sweeper"] = "running" if runtime.sweeper and runtime.sweeper.running else "stopped"
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=__version__,
        store_backend=runtime.settings.store_backend.value,
        checks=checks,
    )
