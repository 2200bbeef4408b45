"""
Tests for the FastAPI API endpoints.

Runs the real app over an orchestrator built on the in-memory fake device
channel and a temp database.  The scheduler tick is set long enough that
no task is dispatched while a test runs, so job state only changes through
the endpoints themselves.
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from phonefleet.api import app, state
from phonefleet.config import DeviceInfo, FleetSettings
from phonefleet.errors import ChannelUnavailableError, DeviceOfflineError
from phonefleet.orchestrator import FleetOrchestrator


PKG = "com.zhiliaoapp.musically"
JOB_BODY = {
    "type": "masscomment",
    "config": {"url": "https://vm.tiktok.com/x", "comments": ["one", "two"], "commentsPerDevice": 2},
    "deviceIds": ["A", "B"],
}


# ===================================================================
# Fixtures
# ===================================================================


@pytest.fixture
def orchestrator(tmp_path, channel, bus):
    settings = FleetSettings(
        data_dir=tmp_path,
        devices_file=tmp_path / "devices.json",
        tick_interval=3600,
        flush_debounce=0.0,
        notify_batch_window=0.01,
        reconnect_on_start=False,
    )
    return FleetOrchestrator(
        settings=settings,
        channel=channel,
        notifier=bus,
        devices=[DeviceInfo("A", name="rack-1"), DeviceInfo("B"), DeviceInfo("192.168.1.40:5555")],
    )


@pytest.fixture
def client(orchestrator):
    """FastAPI test client; the lifespan starts and stops the injected orchestrator."""
    state.orchestrator = orchestrator
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    state.orchestrator = None


@pytest.fixture
def job_id(client):
    response = client.post("/jobs", json=JOB_BODY)
    assert response.status_code == 200
    return response.json()["job"]["id"]


# ===================================================================
# TestHealthEndpoint
# ===================================================================


class TestHealthEndpoint:

    @pytest.mark.unit
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["details"]["scheduler"]["workers"] == 3
        assert data["details"]["mirror"] is False

    @pytest.mark.unit
    def test_without_orchestrator(self):
        state.orchestrator = None
        c = TestClient(app, raise_server_exceptions=False)
        assert c.get("/health").status_code == 503


# ===================================================================
# TestJobs
# ===================================================================


@pytest.mark.unit
class TestJobs:

    def test_create(self, client):
        response = client.post("/jobs", json=JOB_BODY)
        job = response.json()["job"]
        assert job["status"] == "running"
        assert job["type"] == "masscomment"
        assert job["counts"]["pending"] == 4

    def test_create_invalid(self, client):
        body = {**JOB_BODY, "type": "spam"}
        response = client.post("/jobs", json=body)
        assert response.status_code == 400
        assert "Unknown job type" in response.json()["detail"]

    def test_create_without_devices(self, client):
        response = client.post("/jobs", json={**JOB_BODY, "deviceIds": []})
        assert response.status_code == 400

    def test_list(self, client, job_id):
        assert [j["id"] for j in client.get("/jobs").json()["jobs"]] == [job_id]
        assert client.get("/jobs", params={"status": "paused"}).json()["jobs"] == []
        assert client.get("/jobs", params={"status": "sleeping"}).status_code == 400

    def test_get_and_tasks(self, client, job_id):
        assert client.get(f"/jobs/{job_id}").json()["job"]["initial_total"] == 4
        tasks = client.get(f"/jobs/{job_id}/tasks").json()["tasks"]
        assert [t["id"] for t in tasks] == [f"{job_id}_task_{i}" for i in range(4)]
        assert client.get(f"/jobs/{job_id}/tasks", params={"status": "bogus"}).status_code == 400

    def test_missing_job(self, client):
        assert client.get("/jobs/job_0_0").status_code == 404
        assert client.get("/jobs/job_0_0/tasks").status_code == 404
        assert client.post("/jobs/job_0_0/pause").status_code == 404
        assert client.post("/jobs/job_0_0/cancel").status_code == 404
        assert client.delete("/jobs/job_0_0").status_code == 404

    def test_pause_resume(self, client, job_id):
        assert client.post(f"/jobs/{job_id}/pause").json()["success"] is True
        assert client.post(f"/jobs/{job_id}/pause").json()["success"] is False
        assert client.get(f"/jobs/{job_id}").json()["job"]["status"] == "paused"
        assert client.post(f"/jobs/{job_id}/resume").json()["success"] is True

    def test_cancel(self, client, channel, job_id):
        assert client.post(f"/jobs/{job_id}/cancel").json()["success"] is True
        assert client.post(f"/jobs/{job_id}/cancel").json()["success"] is False
        assert client.get(f"/jobs/{job_id}").json()["job"]["status"] == "cancelled"
        assert ("B", f"am force-stop {PKG}") in channel.calls

    def test_retry_without_failures(self, client, job_id):
        data = client.post(f"/jobs/{job_id}/retry").json()
        assert data["success"] is False
        assert data["data"] == {"reset": 0}

    def test_delete(self, client, job_id):
        assert client.delete(f"/jobs/{job_id}").json()["success"] is True
        assert client.get(f"/jobs/{job_id}").status_code == 404

    def test_cancel_all_and_delete_all(self, client, job_id):
        client.post("/jobs", json=JOB_BODY)
        assert client.post("/jobs/cancel-all").json()["data"] == {"cancelled": 2}
        assert client.delete("/jobs").json()["data"] == {"deleted": 2}

    def test_comments(self, client):
        body = {"type": "boost_live", "config": {"username": "creator", "comments": ["hi"]}, "deviceIds": ["A"]}
        job_id = client.post("/jobs", json=body).json()["job"]["id"]
        assert client.get(f"/jobs/{job_id}/comments").json()["available"] == 1
        response = client.post(f"/jobs/{job_id}/comments", json={"comments": ["yo", "  "]})
        assert response.json()["data"] == {"added": 1}
        assert client.get(f"/jobs/{job_id}/comments").json()["total"] == 2


# ===================================================================
# TestWorkers
# ===================================================================


@pytest.mark.unit
class TestWorkers:

    def test_list(self, client):
        workers = {w["device_id"]: w for w in client.get("/workers").json()["workers"]}
        assert workers["A"]["name"] == "rack-1"
        assert workers["B"]["status"] == "idle"

    def test_pause_resume(self, client):
        assert client.post("/workers/A/pause").json()["success"] is True
        assert client.post("/workers/A/resume").json()["success"] is True
        assert client.post("/workers/ZZZ/pause").status_code == 404

    def test_pause_all(self, client):
        assert client.post("/workers/pause-all").json()["message"] == "3 workers paused"
        assert client.post("/workers/resume-all").json()["message"] == "3 workers resumed"


# ===================================================================
# TestDevices
# ===================================================================


@pytest.mark.unit
class TestDevices:

    def test_scan(self, client, channel, orchestrator):
        channel.devices = ["A", "NEW1"]
        assert client.post("/devices/scan").json() == {"devices": ["A", "NEW1"]}
        assert orchestrator.has_worker("NEW1")

    def test_scan_without_adb(self, client, channel):
        async def missing():
            raise ChannelUnavailableError("adb binary not found")

        channel.list_devices = missing
        assert client.post("/devices/scan").status_code == 503

    def test_reconnect(self, client, channel):
        channel.connectable = ["192.168.1.40:5555"]
        data = client.post("/devices/reconnect").json()
        assert data == {"attempted": 1, "connected": ["192.168.1.40:5555"]}

    def test_command(self, client, channel):
        channel.respond(r"^getprop", lambda dev, cmd: "Pixel 7\n")
        channel.respond(r"^reboot", DeviceOfflineError("error: device offline"))
        data = client.post("/devices/command", json={"deviceIds": ["A"], "command": "getprop ro.product.model"})
        assert data.json()["results"] == {"A": {"success": True, "output": "Pixel 7"}}
        data = client.post("/devices/command", json={"deviceIds": ["B"], "command": "reboot"})
        assert data.json()["results"]["B"]["success"] is False

    def test_command_requires_input(self, client):
        response = client.post("/devices/command", json={"deviceIds": [], "command": "ls"})
        assert response.status_code == 400
        response = client.post("/devices/command", json={"deviceIds": ["A"], "command": "  "})
        assert response.status_code == 400

    def test_open_close_app(self, client, channel):
        client.post("/devices/open-app", json={"deviceIds": ["A"]})
        client.post("/devices/close-app", json={"deviceIds": ["A"]})
        assert channel.commands_for("A") == [f"monkey -p {PKG} 1", f"am force-stop {PKG}"]


# ===================================================================
# TestStreaming
# ===================================================================


class TestStreaming:

    def test_settings(self, client):
        data = client.put("/stream/settings", json={"width": 240, "frameDelay": 1}).json()
        assert data == {"width": 240, "quality": 30, "frame_delay_ms": 5}

    def test_missing_frame(self, client):
        assert client.get("/stream/frames/A").status_code == 404

    def test_frames(self, client, channel, png_bytes):
        channel.default_frame = png_bytes
        data = client.post("/stream/start", json={"deviceIds": ["A"]}).json()
        assert data == {"started": 1, "devices": ["A"]}

        frames = {}
        deadline = time.monotonic() + 5
        while not frames and time.monotonic() < deadline:
            frames = client.get("/stream/frames").json()["frames"]
            time.sleep(0.02)
        assert frames["A"]["encoding"] == "jpeg"
        assert frames["A"]["width"] == 140

        response = client.get("/stream/frames/A")
        assert response.headers["content-type"] == "image/jpeg"
        assert response.content[:2] == b"\xff\xd8"
        assert client.get("/stream/stats").json()["total_devices"] == 1
        assert client.post("/stream/stop").json()["success"] is True


# ===================================================================
# TestMirror
# ===================================================================


@pytest.mark.unit
class TestMirror:

    def test_gesture_without_session(self, client):
        assert client.post("/mirror/tap", json={"x": 0.5, "y": 0.5}).status_code == 409
        assert client.post("/mirror/text", json={"text": "hi"}).status_code == 409
        assert client.post("/mirror/stop").json()["success"] is False

    def test_session(self, client, channel):
        response = client.post("/mirror/start", json={
            "reference": "R", "followers": ["A", "B"], "resolutions": {"A": "1440x3168"},
        })
        assert response.status_code == 200
        assert response.json()["followers"] == ["A", "B"]

        tap = client.post("/mirror/tap", json={"x": 0.5, "y": 0.5}).json()
        assert tap == {"type": "tap", "device_count": 2, "success_count": 2}
        assert "input tap 720 1584" in channel.commands_for("A")

        client.post("/mirror/swipe", json={"x1": 0.5, "y1": 0.8, "x2": 0.5, "y2": 0.2})
        client.post("/mirror/long-press", json={"x": 0.5, "y": 0.5, "duration": 1500})
        client.post("/mirror/key", json={"keycode": "KEYCODE_HOME"})
        assert "input swipe 720 1584 720 1584 1500" in channel.commands_for("A")
        assert "input keyevent KEYCODE_HOME" in channel.commands_for("B")
        assert client.post("/mirror/key", json={"keycode": "3; reboot"}).status_code == 422

        assert client.get("/mirror/status").json()["gestures"] == 4
        assert client.post("/mirror/stop").json()["success"] is True

    def test_view_failure(self, client, channel):
        async def broken(device_id, options=None):
            raise ChannelUnavailableError("scrcpy binary not found")

        channel.open_visual_reference = broken
        response = client.post("/mirror/start", json={"reference": "R", "followers": ["A"]})
        assert response.status_code == 502


# ===================================================================
# TestEvents
# ===================================================================


class TestEvents:

    def test_job_events(self, client):
        with client.websocket_connect("/ws/events?kinds=job-update") as ws:
            job_id = client.post("/jobs", json=JOB_BODY).json()["job"]["id"]
            event = ws.receive_json()
        assert event["kind"] == "job-update"
        assert event["event"] == "started"
        assert event["job_id"] == job_id
