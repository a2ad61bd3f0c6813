"""In-process event notifier for lifecycle and progress events.

Delivery is fire-and-forget: a failing or slow subscriber must never block
or break the code that emitted the event (in particular the termination
path). Nothing is persisted and nothing crosses process boundaries.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], Any]

WILDCARD = "*"


def now_ms() -> int:
    return int(time.time() * 1000)


class EventNotifier(ABC):
    """Observability side-channel injected into the control-flow services."""

    @abstractmethod
    def emit(self, event_name: str, data: Optional[Dict[str, Any]] = None) -> None:
        ...


class NullNotifier(EventNotifier):
    def emit(self, event_name: str, data: Optional[Dict[str, Any]] = None) -> None:
        return None


class InProcessEventBus(EventNotifier):
    """Pub/sub with a bounded history of recent events."""

    def __init__(self, history_size: int = 1000):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._emitted: Dict[str, int] = {}
        self._handler_errors = 0

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        """Register handler(event_name, data). Use "*" for every event.

        Returns a callable that removes the subscription.
        """
        self._handlers.setdefault(event_name, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event_name: str, data: Optional[Dict[str, Any]] = None) -> None:
        payload = dict(data or {})
        payload.setdefault("timestamp", now_ms())
        self._history.append({"event_name": event_name, "data": payload})
        self._emitted[event_name] = self._emitted.get(event_name, 0) + 1

        handlers = list(self._handlers.get(event_name, [])) + list(
            self._handlers.get(WILDCARD, [])
        )
        for handler in handlers:
            self._deliver(handler, event_name, payload)

    def _deliver(self, handler: EventHandler, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            result = handler(event_name, payload)
        except Exception:
            self._handler_errors += 1
            logger.exception("Event handler failed for %s", event_name)
            return

        if asyncio.iscoroutine(result):
            try:
                task = asyncio.ensure_future(result)
            except RuntimeError:
                # No running loop: nothing can await it.
                result.close()
                logger.warning("Dropped async handler for %s (no running event loop)", event_name)
                return
            task.add_done_callback(self._log_task_failure)

    def _log_task_failure(self, task: "asyncio.Future") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._handler_errors += 1
            logger.error("Async event handler failed: %s", exc)

    def history(self, event_name: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        events = [e for e in self._history if event_name is None or e["event_name"] == event_name]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def stats(self) -> Dict[str, Any]:
        return {
            "total_events": sum(self._emitted.values()),
            "by_event": dict(self._emitted),
            "subscriptions": sum(len(h) for h in self._handlers.values()),
            "handler_errors": self._handler_errors,
            "history_size": len(self._history),
        }

    def clear(self) -> None:
        self._history.clear()
        self._emitted.clear()
