from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_sync.config import get_settings
from crm_sync.db import AsyncSessionLocal, engine, init_models
from crm_sync.errors import CircuitOpenError, IntegrationError, RateLimitExceededError
from crm_sync.api import health, integrations, sync
from crm_sync.api.deps import create_services

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CRM Sync API")

# CORS setup
origins = [settings.frontend_origin]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    headers = {}
    if isinstance(exc, (CircuitOpenError, RateLimitExceededError)) and exc.retry_after is not None:
        headers["Retry-After"] = str(max(1, int(round(exc.retry_after))))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ---------------------------------------------------------------------------
# Startup / shutdown hooks
# ---------------------------------------------------------------------------


@app.on_event("startup")
async def startup_event():
    """Wire services and start the scheduler."""
    if settings.database_url.startswith("sqlite"):
        # Local runs have no migrations step
        await init_models(engine)
        logger.info("[Startup] Created tables on SQLite")
    else:
        logger.info("[Startup] Using Alembic for database migrations")

    if getattr(app.state, "services", None) is None:
        app.state.services = create_services(settings, AsyncSessionLocal)

    if settings.scheduler_enabled:
        await app.state.services.scheduler.start()
        logger.info("[Startup] Scheduler service started")


@app.on_event("shutdown")
async def shutdown_event():
    """Drain the scheduler, close the provider client and the engine."""
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.aclose()
        logger.info("[Shutdown] Scheduler service stopped")

    await engine.dispose()


# Include API routers
app.include_router(health.router)
app.include_router(integrations.router)
app.include_router(sync.router)
