"""Render loop control API: start, resume, stop, status, single frames, pin."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Optional

from app.jobs.models import FrameResult, RenderJob, RenderStatus, StartResult, StopResult

router = APIRouter()

# Set by main.py during lifespan
_services = None


def set_services(services):
    global _services
    _services = services


def _require_services():
    if _services is None:
        raise HTTPException(status_code=503, detail="Render coordinator not initialized")
    return _services


class StartRequest(BaseModel):
    job: RenderJob
    settings_path: Optional[str] = None  # pinned settings


class ResumeRequest(BaseModel):
    job: RenderJob


class FrameRequest(BaseModel):
    job: RenderJob
    frame_number: int = Field(ge=0)
    settings_path: Optional[str] = None  # pinned settings


class PinRequest(BaseModel):
    job: RenderJob


class PinResponse(BaseModel):
    success: bool
    settings_path: Optional[str] = None
    error: Optional[str] = None


@router.post("/render/start", response_model=StartResult)
async def start_render_loop(request: StartRequest):
    """Start a new render loop, optionally from pinned settings."""
    services = _require_services()
    return await services.coordinator.start_render_loop(request.job, request.settings_path)


@router.post("/render/resume", response_model=StartResult)
async def start_resume_loop(request: ResumeRequest):
    """Resume an interrupted render from its settings file."""
    services = _require_services()
    return await services.coordinator.start_resume_loop(request.job)


@router.post("/render/stop", response_model=StopResult)
async def stop_render_loop():
    """Stop the active loop. Succeeds even when nothing is running."""
    services = _require_services()
    return await services.coordinator.stop_render_loop()


@router.post("/render/pause", response_model=StopResult)
async def pause_render():
    services = _require_services()
    return await services.coordinator.pause_render()


@router.get("/render/status", response_model=RenderStatus)
async def get_render_status():
    services = _require_services()
    return services.coordinator.get_render_status()


@router.get("/render/progress")
async def get_render_progress():
    """Frame progress, FPS and ETA for the current (or last) loop."""
    services = _require_services()
    return services.progress.get_progress()


@router.post("/render/pin", response_model=PinResponse)
async def capture_pinned_settings(request: PinRequest):
    """Write the job's current settings to a pinned file that cleanup never deletes."""
    services = _require_services()
    try:
        snapshot = services.engine.generate_settings_snapshot(request.job)
        settings_file = await services.settings_store.capture_pinned(request.job, snapshot)
    except Exception as e:
        return PinResponse(success=False, error=f"{type(e).__name__}: {e}")
    return PinResponse(success=True, settings_path=settings_file.path)


@router.post("/render/frame", response_model=FrameResult)
async def render_frame(request: FrameRequest):
    """Render one preview frame, optionally from pinned settings."""
    services = _require_services()
    return await services.coordinator.render_frame(request.job, request.frame_number, request.settings_path)
