"""Test worker -- PhoneFleet."""
from __future__ import annotations

import asyncio

import pytest

from phonefleet.errors import DeviceTimeoutError, ElementNotFoundError, TaskCancelledError
from phonefleet.models import Job, JobStatus, Task, WorkerStatus
from phonefleet.worker import (
    DeviceWorker,
    escape_input_text,
    parse_touch_range,
    parse_wm_size,
)


GETEVENT_OUTPUT = """
add device 3: /dev/input/event2
  name:     "sec_touchscreen"
  events:
    ABS (0003): 0035  : value 0, min 0, max 1439, fuzz 0, flat 0, resolution 0
                0036  : value 0, min 0, max 3167, fuzz 0, flat 0, resolution 0
"""


def _task(job_id="job_1", type_="fake"):
    return Task(id=f"{job_id}_task_0", job_id=job_id, type=type_, assigned_device="A")


@pytest.fixture
def seeded_store(store):
    store.create_job(Job(id="job_1", type="masscomment", status=JobStatus.RUNNING, device_ids=["A"]))
    return store


def _worker(channel, store, runners=None, **kwargs):
    return DeviceWorker("A", channel, store, runners=runners or {}, **kwargs)


# ===========================================================================
# PARSERS
# ===========================================================================


@pytest.mark.unit
class TestParsers:

    def test_wm_size(self):
        assert parse_wm_size("Physical size: 1080x2340\n") == (1080, 2340)

    def test_wm_size_override_wins(self):
        out = "Physical size: 1440x3040\nOverride size: 1080x2280\n"
        assert parse_wm_size(out) == (1080, 2280)

    def test_wm_size_garbage(self):
        assert parse_wm_size("error") is None

    def test_touch_range(self):
        assert parse_touch_range(GETEVENT_OUTPUT) == (1440, 3168)

    def test_touch_range_missing(self):
        assert parse_touch_range("") == (None, None)

    def test_escape_input_text(self):
        assert escape_input_text("hello world") == "hello%sworld"
        assert escape_input_text("a; rm -rf $(x)") == "a%srm%s-rf%sx"
        assert escape_input_text("line1\nline2") == "line1%sline2"
        assert escape_input_text("  ") == ""


# ===========================================================================
# DISPLAY DETECTION
# ===========================================================================


@pytest.mark.unit
class TestDisplayDetection:

    @pytest.mark.asyncio
    async def test_registry_hint_uses_known_pattern(self, channel, store):
        channel.respond(r"wm density", "Physical density: 560")
        worker = _worker(channel, store, resolution_hint=(1440, 3040))
        geometry = await worker.detect_display()
        assert (geometry.width, geometry.height) == (1440, 3040)
        assert (geometry.touch_width, geometry.touch_height) == (1440, 2280)
        assert geometry.density == 560
        assert not any(cmd == "wm size" for _, cmd in channel.calls)
        assert worker.to_touch(720, 1520) == (720, 1140)

    @pytest.mark.asyncio
    async def test_wm_size_and_getevent(self, channel, store):
        channel.respond(r"wm size", "Physical size: 1440x3168")
        channel.respond(r"getevent", GETEVENT_OUTPUT)
        worker = _worker(channel, store)
        geometry = await worker.detect_display()
        assert (geometry.width, geometry.height) == (1440, 3168)
        assert (geometry.touch_width, geometry.touch_height) == (1440, 3168)
        assert worker.display_detected

    @pytest.mark.asyncio
    async def test_touch_height_fallback(self, channel, store):
        channel.respond(r"wm size", "Physical size: 1000x2000")
        worker = _worker(channel, store)
        geometry = await worker.detect_display()
        assert geometry.touch_width == 1000
        assert geometry.touch_height == 1500

    @pytest.mark.asyncio
    async def test_default_on_failure(self, channel, store):
        channel.respond(r"wm size", DeviceTimeoutError("slow"))
        worker = _worker(channel, store)
        geometry = await worker.detect_display()
        assert (geometry.width, geometry.height) == (1080, 2340)
        assert (geometry.touch_width, geometry.touch_height) == (1080, 1755)

    def test_to_touch(self):
        worker = DeviceWorker("A", None, None, runners={})
        assert worker.geometry.to_touch(540, 2340) == (540, 1755)


# ===========================================================================
# STATUS
# ===========================================================================


@pytest.mark.unit
class TestStatus:

    def test_available_when_idle(self, channel, store):
        worker = _worker(channel, store)
        assert worker.is_available()
        worker.mark_busy(_task())
        assert not worker.is_available()
        worker.mark_finished()
        assert worker.status is WorkerStatus.IDLE

    def test_manual_pause_blocks_dispatch(self, channel, store):
        worker = _worker(channel, store)
        worker.pause_manually()
        assert worker.status is WorkerStatus.PAUSED
        assert not worker.is_available()
        worker.resume_manually()
        assert worker.is_available()

    def test_manual_pause_while_busy_lands_on_finish(self, channel, store):
        worker = _worker(channel, store)
        worker.mark_busy(_task())
        worker.pause_manually()
        assert worker.status is WorkerStatus.BUSY
        worker.mark_finished()
        assert worker.status is WorkerStatus.PAUSED

    def test_task_pause_requires_task(self, channel, store):
        worker = _worker(channel, store)
        assert worker.pause() is False
        worker.mark_busy(_task())
        assert worker.pause() is True
        assert worker.task_paused
        assert worker.resume() is True
        assert not worker.task_paused

    def test_to_dict(self, channel, store):
        worker = _worker(channel, store)
        worker.mark_busy(_task())
        d = worker.to_dict()
        assert d["status"] == "busy"
        assert d["current_job"] == "job_1"
        assert d["geometry"]["width"] == 1080


# ===========================================================================
# CHECKPOINTS
# ===========================================================================


@pytest.mark.unit
class TestCheckpoint:

    @pytest.mark.asyncio
    async def test_passes_for_running_job(self, channel, seeded_store):
        await _worker(channel, seeded_store).checkpoint("job_1")

    @pytest.mark.asyncio
    async def test_raises_for_cancelled_job(self, channel, seeded_store):
        seeded_store.cancel_job("job_1")
        with pytest.raises(TaskCancelledError):
            await _worker(channel, seeded_store).checkpoint("job_1")

    @pytest.mark.asyncio
    async def test_raises_for_deleted_job(self, channel, seeded_store):
        seeded_store.delete_job("job_1")
        with pytest.raises(TaskCancelledError):
            await _worker(channel, seeded_store).checkpoint("job_1")

    @pytest.mark.asyncio
    async def test_waits_while_paused(self, channel, seeded_store):
        worker = _worker(channel, seeded_store)
        worker.mark_busy(_task())
        worker.pause()
        waiter = asyncio.create_task(worker.checkpoint("job_1"))
        await asyncio.sleep(0.01)
        assert not waiter.done()
        worker.resume()
        await asyncio.wait_for(waiter, 1)

    @pytest.mark.asyncio
    async def test_cancel_during_pause(self, channel, seeded_store):
        worker = _worker(channel, seeded_store)
        worker.mark_busy(_task())
        worker.pause()
        waiter = asyncio.create_task(worker.checkpoint("job_1"))
        await asyncio.sleep(0.01)
        seeded_store.cancel_job("job_1")
        worker.resume()
        with pytest.raises(TaskCancelledError):
            await asyncio.wait_for(waiter, 1)


# ===========================================================================
# EXECUTION
# ===========================================================================


@pytest.mark.unit
class TestExecuteTask:

    @pytest.mark.asyncio
    async def test_success(self, channel, seeded_store):
        seen = {}

        async def body(worker, config):
            seen.update(config)
            await worker.tap(10, 20)
            return {"done": True}

        worker = _worker(channel, seeded_store, runners={"fake": body}, resolution_hint=(1080, 2340))
        outcome = await worker.execute_task(_task())
        assert outcome.success
        assert outcome.result == {"done": True}
        assert seen["jobId"] == "job_1"
        assert ("A", "input tap 10 20") in channel.calls
        assert worker.tasks_completed == 1

    @pytest.mark.asyncio
    async def test_failure_is_an_outcome(self, channel, seeded_store):
        async def body(worker, config):
            raise ElementNotFoundError("comment button not found")

        worker = _worker(channel, seeded_store, runners={"fake": body}, resolution_hint=(1080, 2340))
        outcome = await worker.execute_task(_task())
        assert not outcome.success
        assert not outcome.cancelled
        assert "comment button" in outcome.error
        assert worker.tasks_failed == 1
        assert worker.last_error == outcome.error

    @pytest.mark.asyncio
    async def test_cancellation_is_flagged(self, channel, seeded_store):
        async def body(worker, config):
            seeded_store.cancel_job(config["jobId"])
            await worker.checkpoint(config["jobId"])

        worker = _worker(channel, seeded_store, runners={"fake": body}, resolution_hint=(1080, 2340))
        outcome = await worker.execute_task(_task())
        assert outcome.cancelled
        assert worker.tasks_failed == 0

    @pytest.mark.asyncio
    async def test_unknown_type(self, channel, seeded_store):
        outcome = await _worker(channel, seeded_store).execute_task(_task(type_="mystery"))
        assert not outcome.success
        assert "mystery" in outcome.error

    @pytest.mark.asyncio
    async def test_detects_display_once(self, channel, seeded_store):
        channel.respond(r"wm size", "Physical size: 720x1600")

        async def body(worker, config):
            return worker.screen_width

        worker = _worker(channel, seeded_store, runners={"fake": body})
        first = await worker.execute_task(_task())
        await worker.execute_task(_task())
        assert first.result == 720
        assert sum(1 for _, cmd in channel.calls if cmd == "wm size") == 1

    @pytest.mark.asyncio
    async def test_type_text(self, channel, store):
        worker = _worker(channel, store)
        assert await worker.type_text("great video") is True
        assert await worker.type_text("   ") is False
        assert channel.commands_for("A") == ["input text great%svideo"]
