"""Worker and termination API: inspect workers, kill, emergency stop, shutdown."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Optional

from app.config import settings
from app.jobs.models import TerminationSignal

router = APIRouter()

# Set by main.py during lifespan
_services = None


def set_services(services):
    global _services
    _services = services


def _require_services():
    if _services is None:
        raise HTTPException(status_code=503, detail="Termination bus not initialized")
    return _services


class ShutdownRequest(BaseModel):
    timeout_ms: int = Field(default_factory=lambda: settings.graceful_shutdown_timeout_ms, ge=0)
    reason: str = "graceful_shutdown"


@router.get("/workers")
async def list_workers():
    """Registry snapshot: live workers and loops."""
    services = _require_services()
    status = services.registry.status()
    status["count"] = services.registry.count()
    status["tracked_pids"] = services.reaper.tracked()
    return status


@router.post("/workers/kill-all")
async def kill_all_workers(signal: TerminationSignal = TerminationSignal.GRACEFUL):
    services = _require_services()
    delivered = services.bus.kill_all_workers(signal)
    return {"success": True, "workers_signalled": delivered, "signal": signal.value}


@router.post("/workers/{worker_id}/kill")
async def kill_worker(worker_id: str, signal: TerminationSignal = TerminationSignal.GRACEFUL):
    """Kill one worker. Unknown workers are reported as already terminated."""
    services = _require_services()
    delivered = services.bus.kill_worker(worker_id, signal)
    return {
        "success": True,
        "worker_id": worker_id,
        "signal": signal.value,
        "message": "Kill request delivered" if delivered else "Worker not found; already terminated",
    }


@router.post("/loops/terminate-all")
async def terminate_all_loops(reason: str = "user_requested"):
    services = _require_services()
    delivered = services.bus.terminate_all_loops(reason)
    return {"success": True, "workers_signalled": delivered}


@router.post("/loops/{loop_id}/terminate")
async def terminate_loop(loop_id: str, reason: str = "user_requested"):
    services = _require_services()
    delivered = services.bus.terminate_loop(loop_id, reason)
    return {"success": True, "loop_id": loop_id, "workers_signalled": delivered}


@router.post("/system/emergency-stop")
async def emergency_stop(reason: str = "emergency"):
    """SIGKILL every worker and sweep all matching processes."""
    services = _require_services()
    killed = await services.bus.emergency_stop(reason)
    return {"success": True, "processes_killed": killed}


@router.post("/system/graceful-shutdown")
async def graceful_shutdown(request: Optional[ShutdownRequest] = None):
    services = _require_services()
    request = request or ShutdownRequest()
    drained = await services.bus.graceful_shutdown(request.timeout_ms, request.reason)
    return {
        "success": True,
        "graceful": drained,
        "message": "All workers drained" if drained else "Timeout exceeded; workers force-stopped",
    }
