"""Render engine that drives an external renderer command.

The renderer is launched as:

    <engine_command> --settings <path> --frames <n> --output <dir> [--resume | --frame <i>]

and may report progress by printing JSON lines on stdout, e.g.
``{"event": "frameCompleted", "frameNumber": 3, "totalFrames": 100, "renderTime": 812}``.
Those lines are re-emitted on the notifier; anything else is logged. A line
carrying ``outputPath`` names the file a single-frame render produced.
"""

import asyncio
import json
import logging
import shlex
import signal
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from app.engines.base import EngineSpec, RenderEngine
from app.events.notifier import EventNotifier, NullNotifier
from app.jobs.errors import EngineNotConfigured, GenerationFailure, UserCancellation
from app.jobs.models import RenderJob

logger = logging.getLogger(__name__)

_KILL_RETURN_CODES = (-signal.SIGTERM, -getattr(signal, "SIGKILL", signal.SIGTERM))


class CommandRenderEngine(RenderEngine):
    """Drives an external renderer process and relays its progress lines."""

    def __init__(
        self,
        command: str,
        notifier: Optional[EventNotifier] = None,
        on_spawn: Optional[Callable[[int], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
        default_total_frames: int = 100,
        output_tail_lines: int = 20,
    ):
        self._argv = shlex.split(command) if command else []
        self._notifier = notifier or NullNotifier()
        self._on_spawn = on_spawn
        self._on_exit = on_exit
        self._default_total_frames = default_total_frames
        self._tail_lines = output_tail_lines
        self._pids: List[int] = []

    def spec(self) -> EngineSpec:
        return EngineSpec(
            engine_id="command",
            name=self._argv[0] if self._argv else "unconfigured",
            description="External renderer process driven over argv and JSON-lines stdout",
        )

    def spawned_pids(self) -> List[int]:
        return list(self._pids)

    def generate_settings_snapshot(self, job: RenderJob) -> Dict[str, Any]:
        return {
            "engine": self.spec().engine_id,
            "settings": {
                "projectConfig": {
                    "projectName": job.project_name,
                    "numberOfFrame": job.total_frames or self._default_total_frames,
                    "outputDirectory": job.output_directory,
                    "params": job.params,
                },
            },
        }

    async def run_fresh(self, job: RenderJob, settings_path: Optional[str] = None) -> None:
        await self._run(self._build_argv(job, settings_path, resume=False))

    async def resume(self, settings_path: str, job: RenderJob) -> None:
        await self._run(self._build_argv(job, settings_path, resume=True))

    async def render_frame(self, job: RenderJob, frame_number: int, settings_path: Optional[str] = None) -> Optional[str]:
        argv = self._build_argv(job, settings_path, resume=False)
        argv += ["--frame", str(frame_number)]
        return await self._run(argv)

    def _build_argv(self, job: RenderJob, settings_path: Optional[str], resume: bool) -> List[str]:
        if not self._argv:
            raise EngineNotConfigured("No engine_command configured for the render engine")
        argv = list(self._argv)
        if settings_path:
            argv += ["--settings", settings_path]
        argv += ["--frames", str(job.total_frames or self._default_total_frames)]
        if job.output_directory:
            argv += ["--output", job.output_directory]
        if resume:
            argv.append("--resume")
        return argv

    async def _run(self, argv: List[str]) -> Optional[str]:
        logger.info("Launching renderer: %s", " ".join(shlex.quote(a) for a in argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise GenerationFailure(f"Could not start renderer: {e}") from e

        self._pids.append(proc.pid)
        if self._on_spawn:
            self._on_spawn(proc.pid)

        tail: Deque[str] = deque(maxlen=self._tail_lines)
        reported: Dict[str, Any] = {}
        try:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._handle_output_line(line, tail, reported)
            returncode = await proc.wait()
        finally:
            if proc.pid in self._pids:
                self._pids.remove(proc.pid)
            if self._on_exit:
                self._on_exit(proc.pid)

        if returncode == 0:
            return reported.get("output_path")
        if returncode in _KILL_RETURN_CODES:
            raise UserCancellation(f"Renderer {proc.pid} terminated by user (exit {returncode})")
        detail = "\n".join(tail) or "no output"
        raise GenerationFailure(f"Renderer exited with code {returncode}: {detail}")

    def _handle_output_line(self, line: str, tail: Deque[str], reported: Dict[str, Any]) -> None:
        if line.startswith("{"):
            try:
                message = json.loads(line)
            except ValueError:
                message = None
            if isinstance(message, dict) and message.get("outputPath"):
                reported["output_path"] = message["outputPath"]
            if isinstance(message, dict) and "event" in message:
                event_name = message.pop("event")
                self._notifier.emit(event_name, message)
                return
        tail.append(line)
        logger.debug("renderer: %s", line)
