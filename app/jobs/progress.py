"""Render progress tracking: percentage, FPS and ETA from frame events."""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from app.events.notifier import InProcessEventBus, now_ms

logger = logging.getLogger(__name__)

_START_EVENTS = ("render.loop.start", "project.resume.start")
_END_EVENTS = (
    "render.loop.complete",
    "project.resume.complete",
    "render.loop.error",
    "project.resume.error",
    "render.loop.terminated",
    "project.resume.terminated",
)


def format_eta(seconds: float) -> str:
    """42 -> '42s', 125 -> '2m 5s', <=0 -> ''."""
    seconds = int(round(seconds))
    if seconds <= 0:
        return ""
    if seconds >= 60:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds}s"


class ProgressTracker:
    """Keeps a progress snapshot up to date from notifier events."""

    def __init__(self, default_total_frames: int = 100, clock: Callable[[], float] = time.monotonic):
        self._default_total = default_total_frames
        self._clock = clock
        self._unsubscribers: List[Callable[[], None]] = []
        self.reset()

    def reset(self) -> None:
        self._progress: Dict[str, Any] = {
            "is_rendering": False,
            "current_frame": 0,
            "total_frames": self._default_total,
            "progress": 0,
            "project_name": "",
            "fps": 0.0,
            "eta": "",
            "avg_render_time_ms": 0.0,
            "last_frame_time_ms": 0,
            "outcome": None,
            "started_at": None,
        }
        self._started_at: Optional[float] = None
        self._frames_done = 0

    def get_progress(self) -> Dict[str, Any]:
        return dict(self._progress)

    def attach(self, bus: InProcessEventBus) -> None:
        for name in _START_EVENTS:
            self._unsubscribers.append(bus.subscribe(name, self._on_start))
        for name in _END_EVENTS:
            self._unsubscribers.append(bus.subscribe(name, self._on_end))
        self._unsubscribers.append(bus.subscribe("frameCompleted", self._on_frame_completed))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_start(self, event_name: str, data: Dict[str, Any]) -> None:
        self.reset()
        self._started_at = self._clock()
        self._progress.update(
            is_rendering=True,
            started_at=data.get("timestamp") or now_ms(),
            project_name=data.get("projectName") or "",
            total_frames=data.get("totalFrames") or self._default_total,
        )

    def _on_end(self, event_name: str, data: Dict[str, Any]) -> None:
        outcome = event_name.rsplit(".", 1)[-1]
        self._progress["is_rendering"] = False
        self._progress["outcome"] = outcome
        self._progress["eta"] = ""
        if outcome == "complete":
            self._progress["progress"] = 100
        if outcome == "error":
            logger.info("Progress tracking stopped on error: %s", data.get("error"))

    def _on_frame_completed(self, event_name: str, data: Dict[str, Any]) -> None:
        if data.get("singleFrame"):
            return  # preview renders are not part of a loop
        frame_number = data.get("frameNumber")
        total_frames = data.get("totalFrames") or self._progress["total_frames"]
        render_time = data.get("renderTime") or 0
        now = self._clock()

        if not self._progress["is_rendering"]:
            # Frames can arrive before (or without) a start event.
            self._progress["is_rendering"] = True
            self._started_at = now - render_time / 1000.0
            self._progress["started_at"] = now_ms() - int(render_time)

        self._frames_done += 1
        frames_completed = (frame_number + 1) if frame_number is not None else self._frames_done
        elapsed = max(now - (self._started_at or now), 1e-6)
        avg = self._progress["avg_render_time_ms"]
        avg = avg + (render_time - avg) / self._frames_done

        remaining = max(total_frames - frames_completed, 0)
        seconds_per_frame = elapsed / max(frames_completed, 1)

        self._progress.update(
            current_frame=frames_completed,
            total_frames=total_frames,
            progress=min(100, max(1, round(frames_completed / total_frames * 100))),
            fps=round(frames_completed / elapsed, 2),
            eta=format_eta(remaining * seconds_per_frame),
            avg_render_time_ms=round(avg, 1),
            last_frame_time_ms=render_time,
        )
        if data.get("projectName"):
            self._progress["project_name"] = data["projectName"]
