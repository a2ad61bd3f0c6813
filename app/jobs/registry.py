"""Worker registry: which render workers and loops are currently live."""

import logging
from typing import Any, Dict, List, Optional

from app.events.notifier import EventNotifier, NullNotifier, now_ms
from app.jobs.models import Worker, WorkerStatus

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Tracks active workers and the loop each one runs.

    - Pure in-memory map, mutated only from the event loop thread
    - register/unregister are idempotent; a duplicate worker_id overwrites
    - Emits workerStarted / workerKilled on the injected notifier
    """

    def __init__(self, notifier: Optional[EventNotifier] = None):
        self._workers: Dict[str, Worker] = {}
        self._loops: Dict[str, str] = {}  # loop_id -> worker_id
        self._notifier = notifier or NullNotifier()

    def register(self, worker_id: str, loop_id: str) -> Worker:
        """Register a worker as active for the given loop."""
        previous = self._workers.get(worker_id)
        if previous is not None:
            logger.warning("Worker %s registered twice; replacing previous entry", worker_id)
            self._loops.pop(previous.loop_id, None)

        worker = Worker(worker_id=worker_id, loop_id=loop_id)
        self._workers[worker_id] = worker
        self._loops[loop_id] = worker_id
        logger.info("Registered worker %s for loop %s", worker_id, loop_id)

        self._notifier.emit("workerStarted", {
            "workerId": worker_id,
            "loopId": loop_id,
            "timestamp": now_ms(),
        })
        return worker

    def unregister(self, worker_id: str, reason: str = "completed") -> bool:
        """Remove a worker. Unknown ids are a no-op and return False."""
        worker = self._workers.pop(worker_id, None)
        if worker is None:
            logger.debug("Unregister for unknown worker %s ignored (reason: %s)", worker_id, reason)
            return False

        worker.status = WorkerStatus.TERMINATED
        if self._loops.get(worker.loop_id) == worker_id:
            del self._loops[worker.loop_id]
        logger.info("Unregistered worker %s (reason: %s)", worker_id, reason)

        self._notifier.emit("workerKilled", {
            "workerId": worker_id,
            "reason": reason,
            "timestamp": now_ms(),
        })
        return True

    def get(self, worker_id: str) -> Optional[Worker]:
        return self._workers.get(worker_id)

    def set_status(self, worker_id: str, status: WorkerStatus) -> bool:
        worker = self._workers.get(worker_id)
        if worker is None:
            return False
        worker.status = status
        return True

    def workers_for_loop(self, loop_id: str) -> List[str]:
        return [w.worker_id for w in self._workers.values() if w.loop_id == loop_id]

    def worker_ids(self) -> List[str]:
        return list(self._workers.keys())

    def count(self) -> int:
        return len(self._workers)

    def is_empty(self) -> bool:
        return not self._workers

    def clear(self, reason: str) -> int:
        """Unregister every worker. Returns how many were removed."""
        removed = 0
        for worker_id in list(self._workers.keys()):
            if self.unregister(worker_id, reason):
                removed += 1
        self._loops.clear()
        return removed

    def status(self) -> Dict[str, Any]:
        return {
            "workers": list(self._workers.keys()),
            "loops": list(self._loops.keys()),
            "worker_details": {
                worker_id: {
                    "loop_id": w.loop_id,
                    "started_at": w.started_at.isoformat(),
                    "status": w.status.value,
                }
                for worker_id, w in self._workers.items()
            },
        }
