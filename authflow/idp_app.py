"""Mock OAuth 2.0 / OpenID Connect identity provider.

Serves the consent page and the authorize, token and userinfo endpoints for
the ``google``, ``microsoft``, ``strava`` and ``company`` demo providers.
Run it next to the backend with ``uvicorn authflow.idp_app:app --port 3002``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from authflow.api.error_handling import register_exception_handlers
from authflow.api.idp_routes import router
from authflow.app import __version__
from authflow.config import SUPPORTED_PROVIDERS, get_settings
from authflow.logging import get_logger, set_correlation_id
from authflow.service.scheduler import AsyncioScheduler, PeriodicSweeper, SweepJob

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    sweeper = PeriodicSweeper(
        AsyncioScheduler(),
        runtime.settings.sweep_interval_seconds,
        [
            SweepJob("authorization_codes", runtime.authorization_codes.sweep),
            SweepJob("sso_sessions", runtime.sso_sessions.sweep),
        ],
    )
    sweeper.start()
    logger.info(
        "idp_started",
        port=runtime.settings.idp_port,
        providers=list(SUPPORTED_PROVIDERS),
    )
    yield
    sweeper.stop()
    logger.info("idp_stopped")


app = FastAPI(title="Authflow Mock Identity Provider", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_url, get_settings().backend_base_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "providers": list(SUPPORTED_PROVIDERS),
        "sso_sessions": runtime.sso_sessions.stats(),
    }
