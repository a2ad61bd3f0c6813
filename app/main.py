"""Render Loop Supervisor - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.api.v1 import events as events_api
from app.api.v1 import health as health_api
from app.api.v1 import render as render_api
from app.api.v1 import workers as workers_api
from app.services import Services, build_services

logger = logging.getLogger(__name__)


def wire_services(services) -> None:
    """Hand the services to the API modules (None unwires them)."""
    health_api.set_services(services)
    render_api.set_services(services)
    workers_api.set_services(services)
    events_api.set_services(services)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting %s on port %d", settings.service_name, settings.service_port)

    services: Services = build_services(settings)
    engine_spec = services.engine.spec()
    if not settings.engine_command:
        logger.warning("No engine_command configured; render loops will fail until one is set")
    logger.info("Render engine: %s (%s)", engine_spec.name, engine_spec.engine_id)
    logger.info("Settings temp root: %s", services.settings_store.temp_root)
    logger.info("Reaper patterns: %d", len(services.reaper.patterns))

    wire_services(services)

    yield

    # Shutdown: no render job may outlive the supervisor
    logger.info("Shutting down %s", settings.service_name)
    drained = await services.bus.graceful_shutdown(settings.graceful_shutdown_timeout_ms, "service_shutdown")
    if not drained:
        logger.warning("Render workers had to be force-stopped during shutdown")
    services.progress.detach()
    wire_services(None)


app = FastAPI(
    title=settings.service_name,
    description="Supervises long-running render loops and guarantees their processes are stopped",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the desktop/web frontend dev servers
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
