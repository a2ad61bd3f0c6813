"""Render loop coordinator: start, race, cancel and clean up render loops.

One loop runs at a time, in a background asyncio task. The engine call has
no cancellation hook, so each run races it against a stop watcher; when the
watcher wins, the engine call is abandoned and the reaper kills the engine's
processes, which is the only thing that actually stops a render.

Every run ends in exactly one of completed / terminated_by_user / failed,
and the worker is unregistered exactly once, after all reaping has finished.
"""

import asyncio
import logging
import os
import time
from typing import Any, Callable, Dict, Optional

from app.engines.base import RenderEngine
from app.events.notifier import EventNotifier, NullNotifier, now_ms
from app.jobs.errors import GenerationFailure, is_user_cancellation
from app.jobs.models import (
    FrameResult,
    Loop,
    LoopKind,
    LoopOutcome,
    LoopResult,
    LoopState,
    RenderJob,
    RenderStatus,
    StartResult,
    StopResult,
    TerminationRequest,
    TerminationSignal,
    Worker,
    WorkerStatus,
)
from app.jobs.registry import WorkerRegistry
from app.jobs.termination import TerminationBus
from app.processes.reaper import ProcessReaper
from app.storage.settings_files import SettingsLifecycleManager

logger = logging.getLogger(__name__)

_EVENT_PREFIX = {
    LoopKind.FRESH: "render.loop",
    LoopKind.RESUME: "project.resume",
}


class _LoopRun:
    """Bookkeeping for one in-flight loop."""

    def __init__(self, loop: Loop, worker: Worker, job: RenderJob):
        self.loop = loop
        self.worker = worker
        self.job = job
        self.state = LoopState.STARTING
        self.stop_event = asyncio.Event()
        self.signal = TerminationSignal.FORCEFUL
        self.stop_reason: Optional[str] = None
        self.task: Optional[asyncio.Task] = None
        self.unsubscribe: Optional[Callable[[], None]] = None
        self.finalized = False
        self.result: Optional[LoopResult] = None
        self.force_stop: Optional[asyncio.Future] = None
        self.pinned_source: Optional[str] = None

    @property
    def worker_id(self) -> str:
        return self.worker.worker_id

    @property
    def loop_id(self) -> str:
        return self.loop.loop_id


class RenderLoopCoordinator:
    """Runs one render loop at a time and owns its stop and cleanup path."""

    def __init__(
        self,
        engine: RenderEngine,
        registry: WorkerRegistry,
        bus: TerminationBus,
        reaper: ProcessReaper,
        settings_store: SettingsLifecycleManager,
        notifier: Optional[EventNotifier] = None,
        poll_interval_s: float = 0.05,
        settle_delay_s: float = 0.5,
        reaper_passes: int = 2,
        stop_timeout_s: float = 10.0,
        default_total_frames: int = 100,
    ):
        self._engine = engine
        self._registry = registry
        self._bus = bus
        self._reaper = reaper
        self._settings = settings_store
        self._notifier = notifier or NullNotifier()
        self._poll_interval = poll_interval_s
        self._settle_delay = settle_delay_s
        self._passes = max(2, reaper_passes)
        self._stop_timeout = stop_timeout_s
        self._default_total_frames = default_total_frames
        self._current: Optional[_LoopRun] = None
        self._last_result: Optional[LoopResult] = None
        self._frame_in_progress = False

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def start_render_loop(self, job: RenderJob, settings_path: Optional[str] = None) -> StartResult:
        """Start a fresh loop. A settings_path means a pinned run from saved settings."""
        if self._is_busy():
            return self._busy_result()
        try:
            run = self._launch(LoopKind.FRESH, job, settings_path)
        except Exception as e:
            logger.exception("Render loop failed to start")
            return StartResult(success=False, error=str(e), message="Render loop failed to start")
        return StartResult(
            success=True,
            message="New render loop started",
            loop_id=run.loop_id,
            worker_id=run.worker_id,
            is_pinned=run.loop.is_pinned,
            settings_path=settings_path,
        )

    async def start_resume_loop(self, job: RenderJob) -> StartResult:
        """Resume an interrupted loop from job.settings_path."""
        if not job.settings_path:
            return StartResult(
                success=False,
                message="Resume requires a settings file",
                error="No settings_path provided for resume",
            )
        if self._is_busy():
            return self._busy_result()
        try:
            run = self._launch(LoopKind.RESUME, job, job.settings_path)
        except Exception as e:
            logger.exception("Project resume failed to start")
            return StartResult(success=False, error=str(e), message="Project resume failed to start")
        return StartResult(
            success=True,
            message="Project resume started",
            loop_id=run.loop_id,
            worker_id=run.worker_id,
            settings_path=job.settings_path,
        )

    async def stop_render_loop(self) -> StopResult:
        """Stop whatever is running. Always succeeds; may have to force it."""
        run = self._current
        if run is None or run.finalized:
            logger.info("Stop requested with no active loop")
            return StopResult(success=True, message="No active loop was running")

        logger.info("Stopping loop %s (worker %s)", run.loop_id, run.worker_id)
        if not self._bus.kill_worker(run.worker_id, TerminationSignal.FORCEFUL, "user_stopped"):
            self._request_stop(run, TerminationSignal.FORCEFUL, "user_stopped")

        if run.force_stop is None:
            done, _ = await asyncio.wait({run.task}, timeout=self._stop_timeout)
            if done and run.force_stop is None:
                return StopResult(success=True, message="Active loop stopped successfully")
            if run.force_stop is None:
                logger.warning("Loop %s did not finish cleanup within %.1fs, forcing", run.loop_id, self._stop_timeout)
                run.force_stop = asyncio.ensure_future(self._force_stop(run))

        await asyncio.shield(run.force_stop)
        return StopResult(success=True, message="Active loop force-stopped", forced=True)

    async def cancel_render(self) -> StopResult:
        return await self.stop_render_loop()

    async def pause_render(self) -> StopResult:
        logger.warning("Pause requested but the render engine cannot pause")
        return StopResult(
            success=False,
            message="Pause is not supported by the render engine; stop and resume instead",
        )

    def get_render_status(self) -> RenderStatus:
        run = self._current
        if run is None:
            return RenderStatus(is_active=False, last_result=self._last_result)
        return RenderStatus(
            is_active=run.loop.active and not run.finalized,
            current_loop_id=run.loop_id,
            current_worker_id=run.worker_id,
            state=run.state,
            kind=run.loop.kind,
            is_pinned=run.loop.is_pinned,
            last_result=self._last_result,
        )

    @property
    def last_result(self) -> Optional[LoopResult]:
        return self._last_result

    async def join(self, timeout: Optional[float] = None) -> Optional[LoopResult]:
        """Wait for the current loop (if any) to finish; returns its result."""
        run = self._current
        if run is None or run.task is None:
            return self._last_result
        done, _ = await asyncio.wait({run.task}, timeout=timeout)
        if not done:
            raise asyncio.TimeoutError(f"Loop {run.loop_id} still running")
        if run.force_stop is not None:
            await asyncio.shield(run.force_stop)
        return run.result

    async def render_frame(
        self,
        job: RenderJob,
        frame_number: int,
        settings_path: Optional[str] = None,
    ) -> FrameResult:
        """Render a single preview frame. A settings_path means pinned settings.

        Unpinned frames get their own frame-<project>-<n>-<ts> settings, which
        supersede the previous unpinned file like a loop's do.
        """
        total_frames = job.total_frames or self._default_total_frames
        is_pinned = settings_path is not None
        if self._is_busy():
            return FrameResult(success=False, frame_number=frame_number, error="busy")
        if not 0 <= frame_number < total_frames:
            return FrameResult(
                success=False,
                frame_number=frame_number,
                total_frames=total_frames,
                error=f"frame_number must be in [0, {total_frames})",
            )

        self._frame_in_progress = True
        started = time.monotonic()
        try:
            if is_pinned:
                if not os.path.isfile(settings_path):
                    raise GenerationFailure(f"Pinned settings file not found: {settings_path}")
                self._settings.pin(settings_path)
            else:
                await self._supersede_previous_settings()
                try:
                    snapshot = self._engine.generate_settings_snapshot(job)
                    settings_file = await self._settings.generate(job, snapshot, frame_number=frame_number)
                    settings_path = settings_file.path
                except Exception as e:
                    logger.warning("Failed to generate settings file for frame %d, continuing without it: %s", frame_number, e)

            frame_data = {
                "frameNumber": frame_number,
                "totalFrames": total_frames,
                "projectName": job.project_name,
                "isPinned": is_pinned,
                "singleFrame": True,
            }
            self._emit("frameStarted", dict(frame_data, timestamp=now_ms()))
            output_path = await self._engine.render_frame(job, frame_number, settings_path)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Failed to render frame %d: %s", frame_number, message)
            self._emit("frameError", {
                "frameNumber": frame_number,
                "totalFrames": total_frames,
                "projectName": job.project_name,
                "error": message,
                "singleFrame": True,
                "timestamp": now_ms(),
            })
            return FrameResult(
                success=False,
                frame_number=frame_number,
                total_frames=total_frames,
                settings_path=settings_path,
                is_pinned=is_pinned,
                error=message,
            )
        finally:
            self._frame_in_progress = False

        render_time_ms = int((time.monotonic() - started) * 1000)
        frames_completed = frame_number + 1
        self._emit("frameCompleted", dict(
            frame_data,
            renderTime=render_time_ms,
            progress=min(100, max(1, round(frames_completed / total_frames * 100))),
            settingsFile=settings_path,
            timestamp=now_ms(),
        ))
        logger.info("Frame %d/%d rendered in %dms", frame_number, total_frames, render_time_ms)
        return FrameResult(
            success=True,
            frame_number=frame_number,
            total_frames=total_frames,
            settings_path=settings_path,
            is_pinned=is_pinned,
            output_path=output_path,
            render_time_ms=render_time_ms,
        )

    # ------------------------------------------------------------------
    # Idle -> Starting
    # ------------------------------------------------------------------

    def _is_busy(self) -> bool:
        if self._frame_in_progress:
            return True
        return self._current is not None and not self._current.finalized

    def _busy_result(self) -> StartResult:
        run = self._current
        return StartResult(
            success=False,
            message="A render is already active; stop it first",
            loop_id=run.loop_id if run else None,
            worker_id=run.worker_id if run else None,
            error="busy",
        )

    def _launch(self, kind: LoopKind, job: RenderJob, settings_path: Optional[str]) -> _LoopRun:
        prefix = "random" if kind == LoopKind.FRESH else "resume"
        loop_id = f"{prefix}-loop-{time.time_ns() // 1000}"
        worker_id = f"worker-{loop_id}"

        loop = Loop(
            loop_id=loop_id,
            kind=kind,
            total_frames=job.total_frames or self._default_total_frames,
            output_directory=job.output_directory,
            settings_path=settings_path,
            is_pinned=kind == LoopKind.FRESH and settings_path is not None,
        )
        worker = self._registry.register(worker_id, loop_id)
        run = _LoopRun(loop, worker, job)
        run.unsubscribe = self._bus.subscribe(worker_id, lambda request: self._on_termination(run, request))
        self._current = run
        run.task = asyncio.ensure_future(self._run_loop(run))
        logger.info("Loop %s starting (%s, worker %s)", loop_id, kind.value, worker_id)
        return run

    # ------------------------------------------------------------------
    # Stop requests
    # ------------------------------------------------------------------

    def _on_termination(self, run: _LoopRun, request: TerminationRequest) -> None:
        logger.info("Received %s for worker %s (%s)", request.signal.value, run.worker_id, request.reason)
        self._request_stop(run, request.signal, request.reason)

    def _request_stop(self, run: _LoopRun, signal: TerminationSignal, reason: str) -> bool:
        """Flag the loop as stopped. Only the first request per worker counts."""
        if run.worker.status != WorkerStatus.ACTIVE:
            logger.info("Worker %s already %s; ignoring stop request", run.worker_id, run.worker.status.value)
            return False
        run.worker.status = WorkerStatus.TERMINATING
        run.signal = signal
        run.stop_reason = reason
        run.loop.active = False
        run.stop_event.set()
        logger.info("Loop %s marked inactive (%s)", run.loop_id, reason)
        return True

    # ------------------------------------------------------------------
    # Starting -> Active -> {Completing | Cancelling | Failing} -> Idle
    # ------------------------------------------------------------------

    async def _run_loop(self, run: _LoopRun) -> None:
        events = _EVENT_PREFIX[run.loop.kind]
        try:
            await self._prepare_settings(run)
            self._emit(f"{events}.start", self._event_data(run, totalFrames=run.loop.total_frames))

            if not run.loop.active:
                logger.info("Loop %s was stopped before generation started", run.loop_id)
                await self._cancel(run)
                return

            run.state = LoopState.ACTIVE
            generation = asyncio.ensure_future(self._generate(run))
            watcher = asyncio.ensure_future(self._watch_for_stop(run))
            done, _ = await asyncio.wait({generation, watcher}, return_when=asyncio.FIRST_COMPLETED)

            if generation not in done:
                # The engine call cannot be interrupted; leave it behind.
                generation.add_done_callback(self._log_abandoned(run.loop_id))
                await self._cancel(run)
                return

            watcher.cancel()
            exc = generation.exception()
            if exc is None:
                self._complete(run)
            elif is_user_cancellation(exc):
                logger.info("Engine reported loop %s terminated by user", run.loop_id)
                self._request_stop(run, run.signal, "engine_terminated")
                await self._cancel(run)
            else:
                self._fail(run, exc)

        except Exception as e:
            self._fail(run, e)
        finally:
            if not run.finalized and run.force_stop is None:
                # Unexpected exit path (task cancelled); still release the worker.
                self._finalize(run, LoopOutcome.FAILED, reason="error", error="loop task aborted")

    async def _prepare_settings(self, run: _LoopRun) -> None:
        loop = run.loop
        if loop.kind == LoopKind.RESUME:
            await self._supersede_previous_settings()
            if not os.path.isfile(loop.settings_path):
                raise GenerationFailure(f"Settings file not found: {loop.settings_path}")
            return

        if loop.is_pinned:
            if not os.path.isfile(loop.settings_path):
                raise GenerationFailure(f"Pinned settings file not found: {loop.settings_path}")
            self._settings.pin(loop.settings_path)
            run.pinned_source = loop.settings_path
            try:
                working_copy = await self._settings.prepare_pinned_copy(loop.settings_path, run.job, loop_id=loop.loop_id)
            except (OSError, ValueError) as e:
                raise GenerationFailure(f"Could not prepare pinned settings: {e}") from e
            loop.settings_path = working_copy.path
            return

        await self._supersede_previous_settings()
        try:
            snapshot = self._engine.generate_settings_snapshot(run.job)
            settings_file = await self._settings.generate(run.job, snapshot, LoopKind.FRESH, loop_id=loop.loop_id)
            loop.settings_path = settings_file.path
        except Exception as e:
            logger.warning("Failed to generate settings file for loop %s, continuing without it: %s", loop.loop_id, e)
            loop.settings_path = None

    async def _supersede_previous_settings(self) -> None:
        result = await self._settings.supersede_unpinned()
        if result is not None:
            self._emit("settings.cleanup", {
                "deleted": result.deleted,
                "directory": result.directory,
                "reason": result.reason,
            })

    async def _generate(self, run: _LoopRun) -> None:
        loop = run.loop
        if loop.kind == LoopKind.RESUME:
            await self._engine.resume(loop.settings_path, run.job)
        else:
            await self._engine.run_fresh(run.job, loop.settings_path)

    async def _watch_for_stop(self, run: _LoopRun) -> None:
        """Returns once the loop's active flag is down. Wakes early on stop_event."""
        while run.loop.active:
            try:
                await asyncio.wait_for(run.stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _cancel(self, run: _LoopRun) -> None:
        run.state = LoopState.CANCELLING
        if run.worker.status == WorkerStatus.ACTIVE:
            # Active flag was lowered directly rather than through a stop request.
            self._request_stop(run, run.signal, "loop_deactivated")
        forceful = run.signal == TerminationSignal.FORCEFUL

        killed = 0
        for i in range(self._passes):
            if i > 0:
                await asyncio.sleep(self._settle_delay)
            logger.info("Loop %s: reaping pass %d/%d", run.loop_id, i + 1, self._passes)
            try:
                killed += await self._reaper.reap(forceful=forceful)
            except Exception:
                logger.exception("Reaping pass %d failed for loop %s", i + 1, run.loop_id)

        self._emit(
            f"{_EVENT_PREFIX[run.loop.kind]}.terminated",
            self._event_data(run, reason=run.stop_reason, signal=run.signal.value, processesKilled=killed),
        )
        logger.info("Loop %s terminated by user (%d process(es) killed)", run.loop_id, killed)
        self._finalize(
            run,
            LoopOutcome.TERMINATED_BY_USER,
            reason=f"terminated_{run.signal.value}",
            processes_killed=killed,
        )

    async def _force_stop(self, run: _LoopRun) -> None:
        """Abort the loop's own cleanup, then sweep. The worker stays registered until the sweep ends."""
        run.task.cancel()
        await asyncio.wait({run.task})
        if not run.task.cancelled() and run.task.exception() is not None:
            logger.error("Loop %s task raised while being force-stopped: %s", run.loop_id, run.task.exception())
        if run.finalized:
            return

        killed = 0
        try:
            killed = await self._reaper.sweep(passes=self._passes, settle_s=self._settle_delay, forceful=True)
        except Exception:
            logger.exception("Force-stop sweep failed for loop %s", run.loop_id)

        self._emit(
            f"{_EVENT_PREFIX[run.loop.kind]}.terminated",
            self._event_data(run, reason="force_stopped", signal=TerminationSignal.FORCEFUL.value, processesKilled=killed),
        )
        self._finalize(
            run,
            LoopOutcome.TERMINATED_BY_USER,
            reason="force_stopped",
            processes_killed=killed,
        )

    def _complete(self, run: _LoopRun) -> None:
        run.state = LoopState.COMPLETING
        run.loop.active = False
        logger.info("Loop %s completed", run.loop_id)
        self._emit(f"{_EVENT_PREFIX[run.loop.kind]}.complete", self._event_data(run))
        self._finalize(run, LoopOutcome.COMPLETED, reason="completed")

    def _fail(self, run: _LoopRun, exc: BaseException) -> None:
        if run.finalized:
            logger.error("Loop %s raised after finalisation: %s", run.loop_id, exc)
            return
        run.state = LoopState.FAILING
        run.loop.active = False
        message = str(exc) or type(exc).__name__
        logger.error("Loop %s failed: %s", run.loop_id, message, exc_info=exc)
        self._emit(f"{_EVENT_PREFIX[run.loop.kind]}.error", self._event_data(run, error=message))
        self._finalize(run, LoopOutcome.FAILED, reason="error", error=message)

    def _finalize(
        self,
        run: _LoopRun,
        outcome: LoopOutcome,
        reason: str,
        error: Optional[str] = None,
        processes_killed: int = 0,
    ) -> None:
        """Release the worker. Runs once per loop; later calls are ignored."""
        if run.finalized:
            return
        run.finalized = True
        run.loop.active = False

        if run.unsubscribe is not None:
            run.unsubscribe()
            run.unsubscribe = None
        self._registry.unregister(run.worker_id, reason)
        run.worker.status = WorkerStatus.TERMINATED
        run.state = LoopState.IDLE

        run.result = LoopResult(
            loop_id=run.loop_id,
            worker_id=run.worker_id,
            kind=run.loop.kind,
            outcome=outcome,
            error=error,
            processes_killed=processes_killed,
        )
        self._last_result = run.result
        if self._current is run:
            self._current = None

    @staticmethod
    def _log_abandoned(loop_id: str) -> Callable[["asyncio.Future"], None]:
        def callback(future: "asyncio.Future") -> None:
            if future.cancelled():
                return
            exc = future.exception()
            if exc is None:
                logger.info("Abandoned generation for loop %s finished after stop", loop_id)
            elif is_user_cancellation(exc):
                logger.debug("Abandoned generation for loop %s ended by termination", loop_id)
            else:
                logger.warning("Abandoned generation for loop %s failed after stop: %s", loop_id, exc)
        return callback

    def _event_data(self, run: _LoopRun, **extra: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": now_ms(),
            "projectName": run.job.project_name,
            "loopId": run.loop_id,
            "workerId": run.worker_id,
            "settingsFile": run.loop.settings_path,
            "isPinned": run.loop.is_pinned,
        }
        if run.pinned_source:
            data["pinnedSource"] = run.pinned_source
        data.update(extra)
        return data

    def _emit(self, event_name: str, data: Dict[str, Any]) -> None:
        try:
            self._notifier.emit(event_name, data)
        except Exception:
            logger.exception("Failed to emit %s", event_name)
