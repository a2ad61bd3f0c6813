"""Worker, loop and termination data models for supervised render loops."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class WorkerStatus(str, Enum):
    ACTIVE = "active"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class LoopKind(str, Enum):
    FRESH = "fresh"
    RESUME = "resume"


class LoopState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETING = "completing"
    CANCELLING = "cancelling"
    FAILING = "failing"


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    TERMINATED_BY_USER = "terminated_by_user"
    FAILED = "failed"


class TerminationSignal(str, Enum):
    GRACEFUL = "SIGTERM"
    FORCEFUL = "SIGKILL"


class TerminationScope(str, Enum):
    ONE_WORKER = "one-worker"
    ALL_WORKERS = "all-workers"


class RenderJob(BaseModel):
    """Parameters for one render loop, handed to the engine as-is."""
    project_name: str = "project"
    total_frames: Optional[int] = Field(default=None, ge=1)
    output_directory: Optional[str] = None
    settings_path: Optional[str] = None  # required for resume
    params: Dict[str, Any] = Field(default_factory=dict)


class Worker(BaseModel):
    """One supervised execution unit. Exactly one per loop."""
    worker_id: str
    loop_id: str
    started_at: datetime = Field(default_factory=datetime.utcnow)
    status: WorkerStatus = WorkerStatus.ACTIVE


class Loop(BaseModel):
    """The logical job. `active` is what the stop watcher observes."""
    loop_id: str
    kind: LoopKind
    total_frames: int
    output_directory: Optional[str] = None
    settings_path: Optional[str] = None
    is_pinned: bool = False
    active: bool = True


class TerminationRequest(BaseModel):
    """An intent; never stored, consumed by bus subscribers on delivery."""
    scope: TerminationScope
    signal: TerminationSignal = TerminationSignal.GRACEFUL
    worker_id: Optional[str] = None
    reason: str = "user_requested"


class LoopResult(BaseModel):
    """Terminal outcome of one loop."""
    loop_id: str
    worker_id: str
    kind: LoopKind
    outcome: LoopOutcome
    error: Optional[str] = None
    processes_killed: int = 0
    finished_at: datetime = Field(default_factory=datetime.utcnow)


class StartResult(BaseModel):
    success: bool
    message: str = ""
    loop_id: Optional[str] = None
    worker_id: Optional[str] = None
    is_pinned: bool = False
    settings_path: Optional[str] = None
    error: Optional[str] = None


class StopResult(BaseModel):
    success: bool = True
    message: str = ""
    forced: bool = False


class RenderStatus(BaseModel):
    is_active: bool
    current_loop_id: Optional[str] = None
    current_worker_id: Optional[str] = None
    state: LoopState = LoopState.IDLE
    kind: Optional[LoopKind] = None
    is_pinned: bool = False
    last_result: Optional[LoopResult] = None


class FrameResult(BaseModel):
    """Outcome of a single-frame preview render."""
    success: bool
    frame_number: int
    total_frames: Optional[int] = None
    settings_path: Optional[str] = None
    is_pinned: bool = False
    output_path: Optional[str] = None
    render_time_ms: int = 0
    error: Optional[str] = None
