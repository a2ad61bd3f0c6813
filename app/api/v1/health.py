"""Health check endpoint."""

from fastapi import APIRouter
import os
import platform
import sys

import psutil

router = APIRouter()

# Set by main.py during lifespan
_services = None


def set_services(services):
    global _services
    _services = services


@router.get("/health")
async def health_check():
    """Service health, supervisor state, and system info."""
    supervisor = None
    if _services is not None:
        status = _services.coordinator.get_render_status()
        engine_spec = _services.engine.spec()
        supervisor = {
            "render_active": status.is_active,
            "current_loop_id": status.current_loop_id,
            "active_workers": _services.registry.count(),
            "tracked_pids": len(_services.reaper.tracked()),
            "engine": engine_spec.name,
            "reaper_patterns": len(_services.reaper.patterns),
        }

    memory = psutil.virtual_memory()
    return {
        "status": "healthy" if _services is not None else "starting",
        "supervisor": supervisor,
        "pid": os.getpid(),
        "cpu_count": psutil.cpu_count(),
        "memory_total_mb": round(memory.total / 1024 / 1024),
        "memory_available_mb": round(memory.available / 1024 / 1024),
        "psutil_version": psutil.__version__,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
