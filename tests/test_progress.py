from app.events.notifier import InProcessEventBus
from app.jobs.progress import ProgressTracker, format_eta


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def make_tracker():
    clock = FakeClock()
    events = InProcessEventBus()
    tracker = ProgressTracker(default_total_frames=10, clock=clock)
    tracker.attach(events)
    return tracker, events, clock


def test_format_eta():
    assert format_eta(42) == "42s"
    assert format_eta(125) == "2m 5s"
    assert format_eta(0) == ""
    assert format_eta(-3) == ""


def test_frames_update_progress_fps_and_eta():
    tracker, events, clock = make_tracker()
    events.emit("render.loop.start", {"projectName": "demo", "totalFrames": 10})

    clock.now = 101.0
    events.emit("frameCompleted", {"frameNumber": 0, "totalFrames": 10, "renderTime": 1000})
    progress = tracker.get_progress()
    assert progress["is_rendering"] is True
    assert progress["project_name"] == "demo"
    assert progress["current_frame"] == 1
    assert progress["progress"] == 10
    assert progress["fps"] == 1.0
    assert progress["eta"] == "9s"

    clock.now = 105.0
    events.emit("frameCompleted", {"frameNumber": 4, "totalFrames": 10, "renderTime": 500})
    progress = tracker.get_progress()
    assert progress["current_frame"] == 5
    assert progress["progress"] == 50
    assert progress["eta"] == "5s"
    assert progress["avg_render_time_ms"] == 750.0
    assert progress["last_frame_time_ms"] == 500


def test_end_events_record_outcome():
    tracker, events, clock = make_tracker()
    events.emit("project.resume.start", {"projectName": "demo", "totalFrames": 4})
    events.emit("project.resume.complete", {})

    progress = tracker.get_progress()
    assert progress["is_rendering"] is False
    assert progress["outcome"] == "complete"
    assert progress["progress"] == 100

    events.emit("render.loop.start", {"projectName": "next"})
    assert tracker.get_progress()["outcome"] is None
    assert tracker.get_progress()["total_frames"] == 10
    events.emit("render.loop.terminated", {"reason": "user_stopped"})
    assert tracker.get_progress()["outcome"] == "terminated"


def test_frame_without_start_event_begins_tracking():
    tracker, events, clock = make_tracker()

    events.emit("frameCompleted", {"frameNumber": 2, "renderTime": 200})

    progress = tracker.get_progress()
    assert progress["is_rendering"] is True
    assert progress["current_frame"] == 3
    assert progress["progress"] == 30
    assert progress["started_at"] is not None


def test_detach_stops_updates():
    tracker, events, clock = make_tracker()
    tracker.detach()

    events.emit("render.loop.start", {"projectName": "demo"})

    assert tracker.get_progress()["is_rendering"] is False


def test_start_records_started_at_timestamp():
    tracker, events, clock = make_tracker()

    events.emit("render.loop.start", {"projectName": "demo", "timestamp": 1700000000000})

    assert tracker.get_progress()["started_at"] == 1700000000000


def test_single_frame_previews_do_not_move_loop_progress():
    tracker, events, clock = make_tracker()

    events.emit("frameCompleted", {"frameNumber": 7, "renderTime": 50, "singleFrame": True})

    progress = tracker.get_progress()
    assert progress["is_rendering"] is False
    assert progress["current_frame"] == 0
    assert progress["started_at"] is None
