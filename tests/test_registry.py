from app.events.notifier import InProcessEventBus
from app.jobs.models import WorkerStatus
from app.jobs.registry import WorkerRegistry


def test_register_unregister_round_trip_leaves_registry_empty():
    events = InProcessEventBus()
    registry = WorkerRegistry(events)

    for i in range(5):
        registry.register(f"worker-{i}", f"loop-{i}")
    assert registry.count() == 5

    for i in range(5):
        assert registry.unregister(f"worker-{i}", "completed") is True

    assert registry.is_empty()
    status = registry.status()
    assert status["workers"] == []
    assert status["loops"] == []


def test_unregister_unknown_worker_is_noop():
    events = InProcessEventBus()
    registry = WorkerRegistry(events)

    assert registry.unregister("missing", "completed") is False
    assert events.history("workerKilled") == []


def test_register_and_unregister_emit_lifecycle_events():
    events = InProcessEventBus()
    registry = WorkerRegistry(events)

    registry.register("worker-a", "loop-a")
    registry.unregister("worker-a", "terminated_SIGKILL")

    started = events.history("workerStarted")
    killed = events.history("workerKilled")
    assert started[0]["data"]["workerId"] == "worker-a"
    assert started[0]["data"]["loopId"] == "loop-a"
    assert killed[0]["data"]["reason"] == "terminated_SIGKILL"
    assert isinstance(killed[0]["data"]["timestamp"], int)


def test_duplicate_register_last_write_wins():
    registry = WorkerRegistry()
    registry.register("worker-a", "loop-1")
    registry.register("worker-a", "loop-2")

    assert registry.count() == 1
    assert registry.get("worker-a").loop_id == "loop-2"
    assert registry.status()["loops"] == ["loop-2"]


def test_workers_for_loop_and_status_changes():
    registry = WorkerRegistry()
    registry.register("worker-a", "loop-a")
    registry.register("worker-b", "loop-b")

    assert registry.workers_for_loop("loop-b") == ["worker-b"]
    assert registry.workers_for_loop("loop-x") == []

    assert registry.set_status("worker-a", WorkerStatus.TERMINATING) is True
    assert registry.status()["worker_details"]["worker-a"]["status"] == "terminating"
    assert registry.set_status("missing", WorkerStatus.TERMINATING) is False


def test_clear_unregisters_everyone():
    events = InProcessEventBus()
    registry = WorkerRegistry(events)
    registry.register("worker-a", "loop-a")
    registry.register("worker-b", "loop-b")

    assert registry.clear("emergency_stop") == 2
    assert registry.is_empty()
    reasons = {e["data"]["reason"] for e in events.history("workerKilled")}
    assert reasons == {"emergency_stop"}
