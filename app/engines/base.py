"""Render engine interface consumed by the render loop coordinator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.jobs.models import RenderJob


@dataclass
class EngineSpec:
    """Metadata describing the engine behind the coordinator."""
    engine_id: str
    name: str
    supports_resume: bool = True
    supports_pause: bool = False
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


class RenderEngine(ABC):
    """Opaque generation engine.

    None of the run methods can be cancelled: once started they run until
    they finish or their processes are killed from outside. Any of them may
    raise; a UserCancellation (or the "terminated by user" sentinel in the
    message) means the run ended because it was stopped.
    """

    @abstractmethod
    def spec(self) -> EngineSpec:
        ...

    @abstractmethod
    async def run_fresh(self, job: RenderJob, settings_path: Optional[str] = None) -> None:
        """Generate a new loop, optionally from pinned settings."""
        ...

    @abstractmethod
    async def resume(self, settings_path: str, job: RenderJob) -> None:
        """Continue an interrupted loop from its saved settings."""
        ...

    @abstractmethod
    async def render_frame(self, job: RenderJob, frame_number: int, settings_path: Optional[str] = None) -> Optional[str]:
        """Render one frame; returns the produced file path when the engine reports it."""
        ...

    @abstractmethod
    def generate_settings_snapshot(self, job: RenderJob) -> Dict[str, Any]:
        """Serializable settings that would reproduce this job."""
        ...

    def spawned_pids(self) -> List[int]:
        """PIDs the engine started directly, if it knows them."""
        return []
