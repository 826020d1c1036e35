"""
FastAPI application entry point.

Run with:
    uvicorn hazardwatch.main:app --reload --port 8000

Tests and embedders build their own instance:
    app = create_app(build_services(directory=..., sender=...))
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from hazardwatch.core.config import settings
from hazardwatch.core.logging_config import setup_logging, get_logger
from hazardwatch.core.errors import register_error_handlers
from hazardwatch.core.health import HealthStatus, run_health_check
from hazardwatch.services import Services, build_services

# ── API routers ──
from hazardwatch.api.v1 import dispatch, hazards, subscribers, watch

setup_logging()
logger = get_logger(__name__)

ROUTERS = (hazards.router, subscribers.router, watch.router, dispatch.router)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    services: Services = app.state.services
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    await services.start()
    try:
        yield
    finally:
        await services.shutdown()
        logger.info("Stopped %s", settings.APP_NAME)


def _register_meta_routes(app: FastAPI) -> None:

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": ["hazard-feed", "live-matching", "fanout-dispatch"],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Feed, directory, fan-out worker and recent dropped batches."""
        return (await run_health_check(app.state.services)).to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """503 while any component is unhealthy (e.g. worker lost the feed)."""
        report = await run_health_check(app.state.services)
        code = 503 if report.status is HealthStatus.UNHEALTHY else 200
        return JSONResponse(status_code=code, content=report.to_dict())


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application; pass ``services`` to inject collaborators."""
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Real-time road hazard alerts. Devices report classified "
            "hazards (potholes, speed bumps) to a shared feed; watchers "
            "get live alerts for new hazards within their radius, and "
            "push subscribers are notified through batched fan-out."
        ),
        version=settings.APP_VERSION,
        lifespan=_lifespan,
    )
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    for router in ROUTERS:
        app.include_router(router)
    _register_meta_routes(app)
    return app


app = create_app()
