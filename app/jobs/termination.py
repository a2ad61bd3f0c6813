"""Termination bus: routes kill/terminate intents to the workers they target.

Publishers do not need to know which coordinator owns a worker. Subscribers
are synchronous and must only flag the stop; the actual process killing runs
in the subscriber's own task.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from app.events.notifier import EventNotifier, NullNotifier, now_ms
from app.jobs.models import TerminationRequest, TerminationScope, TerminationSignal
from app.jobs.registry import WorkerRegistry
from app.processes.reaper import ProcessReaper

logger = logging.getLogger(__name__)

TerminationHandler = Callable[[TerminationRequest], None]


class TerminationBus:
    """Delivers termination requests to the workers they name."""

    def __init__(
        self,
        registry: WorkerRegistry,
        reaper: ProcessReaper,
        notifier: Optional[EventNotifier] = None,
        graceful_poll_interval_s: float = 0.5,
        sweep_passes: int = 2,
        sweep_settle_s: float = 0.5,
    ):
        self._registry = registry
        self._reaper = reaper
        self._notifier = notifier or NullNotifier()
        self._poll_interval = graceful_poll_interval_s
        self._sweep_passes = sweep_passes
        self._sweep_settle_s = sweep_settle_s
        self._subscribers: Dict[str, List[TerminationHandler]] = {}

    def subscribe(self, worker_id: str, handler: TerminationHandler) -> Callable[[], None]:
        self._subscribers.setdefault(worker_id, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(worker_id)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._subscribers[worker_id]

        return unsubscribe

    def subscribed_workers(self) -> List[str]:
        return list(self._subscribers.keys())

    # Low-level primitives

    def kill_worker(
        self,
        worker_id: str,
        signal: TerminationSignal = TerminationSignal.GRACEFUL,
        reason: Optional[str] = None,
    ) -> bool:
        """Deliver a kill request to one worker. False if nobody owns it."""
        request = TerminationRequest(
            scope=TerminationScope.ONE_WORKER,
            signal=signal,
            worker_id=worker_id,
            reason=reason or f"kill_{signal.value}",
        )
        logger.info("Killing worker %s (signal: %s)", worker_id, signal.value)
        self._notifier.emit("killWorker", {
            "workerId": worker_id,
            "signal": signal.value,
            "reason": request.reason,
            "timestamp": now_ms(),
        })

        handlers = list(self._subscribers.get(worker_id, []))
        if not handlers:
            logger.warning("Kill request for unknown worker %s treated as already terminated", worker_id)
            return False
        self._dispatch(handlers, request)
        return True

    def kill_all_workers(
        self,
        signal: TerminationSignal = TerminationSignal.GRACEFUL,
        reason: Optional[str] = None,
    ) -> int:
        """Deliver a kill request to every subscribed worker. Returns how many."""
        request = TerminationRequest(
            scope=TerminationScope.ALL_WORKERS,
            signal=signal,
            reason=reason or f"kill_all_{signal.value}",
        )
        logger.info("Killing all workers (signal: %s)", signal.value)
        self._notifier.emit("killAllWorkers", {
            "signal": signal.value,
            "reason": request.reason,
            "timestamp": now_ms(),
        })

        delivered = 0
        for worker_id in list(self._subscribers.keys()):
            handlers = list(self._subscribers.get(worker_id, []))
            if handlers:
                self._dispatch(handlers, request.model_copy(update={"worker_id": worker_id}))
                delivered += 1
        return delivered

    # Loop-level requests

    def terminate_loop(self, loop_id: str, reason: str = "user_requested") -> int:
        logger.info("Terminating loop %s (reason: %s)", loop_id, reason)
        self._notifier.emit("loop:terminate", {"loopId": loop_id, "reason": reason, "timestamp": now_ms()})
        killed = 0
        for worker_id in self._registry.workers_for_loop(loop_id):
            if self.kill_worker(worker_id, TerminationSignal.GRACEFUL, reason):
                killed += 1
        if killed == 0:
            logger.info("No live workers for loop %s", loop_id)
        return killed

    def terminate_all_loops(self, reason: str = "user_requested") -> int:
        logger.info("Terminating all loops (reason: %s)", reason)
        self._notifier.emit("loop:terminate_all", {"reason": reason, "timestamp": now_ms()})
        return self.kill_all_workers(TerminationSignal.GRACEFUL, reason)

    # System-wide

    async def emergency_stop(self, reason: str = "emergency") -> int:
        """SIGKILL everything, then brute-force sweep regardless of registry state.

        Returns the number of processes the sweep killed. Never raises.
        """
        logger.warning("EMERGENCY STOP: terminating all loops and workers (reason: %s)", reason)
        self._notifier.emit("system:emergency_stop", {"reason": reason, "timestamp": now_ms()})
        self.kill_all_workers(TerminationSignal.FORCEFUL, reason)

        killed = 0
        try:
            killed = await self._reaper.sweep(
                passes=self._sweep_passes,
                settle_s=self._sweep_settle_s,
                forceful=True,
            )
        except Exception:
            logger.exception("Brute force process sweep failed")

        removed = self._registry.clear("emergency_stop")
        if removed:
            logger.warning("Cleared %d stale worker(s) from the registry", removed)
        return killed

    async def graceful_shutdown(self, timeout_ms: int = 10000, reason: str = "graceful_shutdown") -> bool:
        """Ask every worker to stop and wait for the registry to drain.

        True if workers drained on their own, False if emergency stop was needed.
        """
        logger.info("Initiating graceful shutdown (timeout: %dms)", timeout_ms)
        self._notifier.emit("system:graceful_shutdown", {
            "timeoutMs": timeout_ms,
            "reason": reason,
            "timestamp": now_ms(),
        })
        self.terminate_all_loops(reason)

        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            if self._registry.is_empty():
                logger.info("Graceful shutdown complete: all workers drained")
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self._poll_interval, remaining))

        logger.warning("Graceful shutdown timeout exceeded, forcing termination")
        await self.emergency_stop("graceful_timeout")
        return False

    def _dispatch(self, handlers: List[TerminationHandler], request: TerminationRequest) -> None:
        for handler in handlers:
            try:
                handler(request)
            except Exception:
                logger.exception("Termination subscriber failed for worker %s", request.worker_id)
