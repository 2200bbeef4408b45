"""Test streamer -- PhoneFleet."""
from __future__ import annotations

import asyncio
import io

import pytest
from PIL import Image

from phonefleet.errors import DeviceChannelError, DeviceOfflineError
from phonefleet.notifier import DEVICE_STATUS, STREAM_FRAME
from phonefleet.streamer import (
    FAILURE_BACKOFF,
    OFFLINE_BACKOFF,
    SMALL_FRAME_PAUSE,
    START_STAGGER,
    StreamingEngine,
    StreamSettings,
    transform_frame,
)


class RecordingSleep:
    """Records requested pauses and only yields to the loop."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)

    @property
    def loop_pauses(self):
        return [s for s in self.calls if s != START_STAGGER]


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def engine(channel, bus, sleeper):
    return StreamingEngine(channel, bus, sleep=sleeper)


# ===========================================================================
# FRAME TRANSFORM
# ===========================================================================


@pytest.mark.unit
class TestTransform:

    def test_resize_keeps_aspect(self, png_bytes):
        data, width, height = transform_frame(png_bytes, 140, 30)
        assert (width, height) == (140, 303)
        assert data[:2] == b"\xff\xd8"
        with Image.open(io.BytesIO(data)) as img:
            assert img.size == (140, 303)

    def test_rgba_source(self):
        buf = io.BytesIO()
        Image.new("RGBA", (200, 400), (0, 0, 0, 0)).save(buf, format="PNG")
        _, width, height = transform_frame(buf.getvalue(), 100, 50)
        assert (width, height) == (100, 200)

    def test_garbage_raises(self):
        with pytest.raises(OSError):
            transform_frame(b"not an image" * 20, 140, 30)


# ===========================================================================
# SETTINGS
# ===========================================================================


@pytest.mark.unit
class TestSettings:

    def test_clamped(self, engine):
        s = engine.update_settings(width=5000, quality=1, frame_delay_ms=1)
        assert (s.width, s.quality, s.frame_delay_ms) == (720, 10, 5)

    def test_partial_update(self, engine):
        engine.update_settings(width=320)
        assert engine.settings == StreamSettings(width=320, quality=30, frame_delay_ms=20)


# ===========================================================================
# CAPTURE LOOP
# ===========================================================================


class TestCaptureLoop:

    @pytest.mark.asyncio
    async def test_frame_cached_and_emitted(self, engine, channel, bus, events, png_bytes):
        channel.default_frame = png_bytes
        assert await engine.start(["A"]) == 1
        await _wait_for(lambda: engine.get_frame("A") is not None)
        await engine.stop()

        frame = engine.get_frame("A")
        assert (frame.width, frame.height) == (140, 303)
        assert frame.to_dict()["size"] == frame.size
        frames = [e for e in events if e.kind == STREAM_FRAME]
        assert frames and frames[0].payload["device_id"] == "A"
        assert frames[0].payload["encoding"] == "jpeg"
        assert all(e["kind"] != STREAM_FRAME for e in bus.recent())

    @pytest.mark.asyncio
    async def test_backoff_after_five_failures_then_resumes(self, engine, channel, sleeper, png_bytes):
        channel.frames["A"] = [DeviceChannelError("capture failed")] * 5
        channel.default_frame = png_bytes
        await engine.start(["A"])
        await _wait_for(lambda: engine.total_frames >= 1)
        await engine.stop()

        pauses = sleeper.loop_pauses
        assert pauses[:4] == pytest.approx([0.15, 0.3, 0.45, 0.6])
        assert pauses[4] == FAILURE_BACKOFF
        assert engine.total_errors == 5
        assert engine.stats()["devices"] == {}

    @pytest.mark.asyncio
    async def test_offline_then_online(self, engine, channel, events, sleeper, png_bytes):
        channel.frames["A"] = [DeviceOfflineError("error: device offline")]
        channel.default_frame = png_bytes
        await engine.start(["A"])
        await _wait_for(lambda: engine.total_frames >= 1)
        await engine.stop()

        status = [e.payload["online"] for e in events if e.kind == DEVICE_STATUS]
        assert status == [False, True]
        assert OFFLINE_BACKOFF in sleeper.loop_pauses

    @pytest.mark.asyncio
    async def test_small_frame_is_failure(self, engine, channel, sleeper, png_bytes):
        channel.frames["A"] = [b"tiny"]
        channel.default_frame = png_bytes
        await engine.start(["A"])
        await _wait_for(lambda: engine.total_frames >= 1)
        stats = engine.stats()
        await engine.stop()
        assert sleeper.loop_pauses[0] == SMALL_FRAME_PAUSE
        assert stats["devices"]["A"]["errors"] == 1
        assert stats["devices"]["A"]["consecutive_failures"] == 0


# ===========================================================================
# LIFECYCLE
# ===========================================================================


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_skips_known_devices(self, engine, channel, png_bytes):
        channel.default_frame = png_bytes
        assert await engine.start(["A", "B"]) == 2
        assert await engine.start(["A", "C"]) == 1
        assert sorted(engine.device_ids) == ["A", "B", "C"]
        await engine.stop()
        assert not engine.is_running
        assert engine.device_ids == []

    @pytest.mark.asyncio
    async def test_remove_and_restart(self, engine, channel, png_bytes):
        channel.default_frame = png_bytes
        await engine.start(["A"])
        await _wait_for(lambda: engine.get_frame("A") is not None)
        assert await engine.restart_device("A") is True
        assert "A" in engine.device_ids
        assert await engine.remove_device("A") is True
        assert await engine.remove_device("A") is False
        await engine.stop()

    @pytest.mark.asyncio
    async def test_stats_shape(self, engine, channel, png_bytes):
        channel.default_frame = png_bytes
        await engine.start(["A"])
        await _wait_for(lambda: engine.total_frames >= 2)
        stats = engine.stats()
        await engine.stop()
        assert stats["is_running"] is True
        assert stats["active_streams"] == 1
        assert stats["cached_frames"] == 1
        assert stats["settings"]["width"] == 140
        assert stats["devices"]["A"]["online"] is True
