"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from app.api.v1.health import router as health_router
from app.api.v1.render import router as render_router
from app.api.v1.workers import router as workers_router
from app.api.v1.events import router as events_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(render_router, tags=["render"])
v1_router.include_router(workers_router, tags=["workers"])
v1_router.include_router(events_router, tags=["events"])
