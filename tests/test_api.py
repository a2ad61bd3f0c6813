import asyncio
import os

import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app, wire_services
from app.services import build_services

from fakes import ControlledEngine


@pytest.fixture
def services(fast_settings, process_table):
    services = build_services(fast_settings, engine=ControlledEngine(), process_table=process_table)
    wire_services(services)
    yield services
    services.progress.detach()
    wire_services(None)


@pytest.fixture
async def client(services):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.anyio
async def test_health_reports_supervisor_state(client):
    for path in ("/health", "/api/v1/health"):
        response = await client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["supervisor"]["render_active"] is False
        assert body["supervisor"]["active_workers"] == 0


@pytest.mark.anyio
async def test_start_status_stop_cycle(client, services):
    response = await client.post("/api/v1/render/start", json={"job": {"project_name": "demo", "total_frames": 4}})
    assert response.status_code == 200
    started = response.json()
    assert started["success"] is True

    await asyncio.wait_for(services.engine.started.wait(), timeout=1)
    status = (await client.get("/api/v1/render/status")).json()
    assert status["is_active"] is True
    assert status["current_loop_id"] == started["loop_id"]

    workers = (await client.get("/api/v1/workers")).json()
    assert workers["count"] == 1

    busy = (await client.post("/api/v1/render/start", json={"job": {"project_name": "other"}})).json()
    assert busy["success"] is False
    assert busy["error"] == "busy"

    stopped = (await client.post("/api/v1/render/stop")).json()
    assert stopped["success"] is True

    status = (await client.get("/api/v1/render/status")).json()
    assert status["is_active"] is False
    assert status["last_result"]["outcome"] == "terminated_by_user"
    assert services.registry.is_empty()

    progress = (await client.get("/api/v1/render/progress")).json()
    assert progress["outcome"] == "terminated"
    services.engine.finish()


@pytest.mark.anyio
async def test_stop_without_active_loop_succeeds(client):
    response = await client.post("/api/v1/render/stop")

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "No active loop was running", "forced": False}


@pytest.mark.anyio
async def test_resume_without_settings_is_rejected(client):
    body = (await client.post("/api/v1/render/resume", json={"job": {"project_name": "demo"}})).json()

    assert body["success"] is False


@pytest.mark.anyio
async def test_kill_unknown_worker_is_reported_as_terminated(client):
    response = await client.post("/api/v1/workers/ghost/kill", params={"signal": "SIGKILL"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["signal"] == "SIGKILL"
    assert "already terminated" in body["message"]


@pytest.mark.anyio
async def test_pause_is_not_supported(client):
    body = (await client.post("/api/v1/render/pause")).json()

    assert body["success"] is False


@pytest.mark.anyio
async def test_pin_writes_settings_file(client, services):
    body = (await client.post("/api/v1/render/pin", json={"job": {"project_name": "demo"}})).json()

    assert body["success"] is True
    assert os.path.isfile(body["settings_path"])
    assert services.settings_store.is_pinned(body["settings_path"])


@pytest.mark.anyio
async def test_render_frame_endpoint(client, services):
    response = await client.post(
        "/api/v1/render/frame",
        json={"job": {"project_name": "demo", "total_frames": 4}, "frame_number": 2},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["output_path"] == "frame-2.png"
    assert os.path.basename(os.path.dirname(os.path.dirname(body["settings_path"]))).startswith("frame-demo-2-")
    assert services.registry.is_empty()

    rejected = await client.post("/api/v1/render/frame", json={"job": {"project_name": "demo"}, "frame_number": -1})
    assert rejected.status_code == 422


@pytest.mark.anyio
async def test_events_endpoint_filters_by_name(client, services):
    services.registry.register("w1", "L1")
    services.registry.unregister("w1", "done")

    body = (await client.get("/api/v1/events", params={"name": "workerKilled"})).json()

    assert body["count"] == 1
    assert body["events"][0]["data"]["reason"] == "done"
    assert body["stats"]["by_event"]["workerStarted"] == 1


@pytest.mark.anyio
async def test_emergency_stop_and_graceful_shutdown(client, process_table):
    process_table.spawn(904242, "ffmpeg -i in.png out.mp4")

    body = (await client.post("/api/v1/system/emergency-stop")).json()
    assert body == {"success": True, "processes_killed": 1}

    body = (await client.post("/api/v1/system/graceful-shutdown", json={"timeout_ms": 200})).json()
    assert body["success"] is True
    assert body["graceful"] is True


@pytest.mark.anyio
async def test_endpoints_return_503_before_startup(client):
    wire_services(None)

    response = await client.post("/api/v1/render/stop")

    assert response.status_code == 503
    assert (await client.get("/health")).json()["status"] == "starting"
