"""Test mirror -- PhoneFleet."""
from __future__ import annotations

import asyncio

import pytest

from phonefleet.errors import ChannelUnavailableError, DeviceTimeoutError, MirrorNotActiveError, MirrorViewError
from phonefleet.mirror import FALLBACK_RESOLUTION, MirrorController, to_pixels
from phonefleet.notifier import MIRROR_GESTURE, MIRROR_STOPPED


@pytest.fixture
def mirror(channel, bus):
    return MirrorController(channel, bus, known_resolutions={"F2": (720, 1600)})


def _follower_cmds(channel, device_id):
    return [c for c in channel.commands_for(device_id) if c.startswith("input")]


# ===========================================================================
# COORDINATES
# ===========================================================================


@pytest.mark.unit
class TestToPixels:

    def test_center(self):
        assert to_pixels(0.5, 0.5, (1440, 3168)) == (720, 1584)

    def test_clamped(self):
        assert to_pixels(-0.2, 1.7, (1080, 2340)) == (0, 2340)

    def test_rounding(self):
        assert to_pixels(0.3333, 0.6667, (1080, 2340)) == (360, 1560)


# ===========================================================================
# SESSION
# ===========================================================================


@pytest.mark.unit
class TestSession:

    @pytest.mark.asyncio
    async def test_start_excludes_reference(self, mirror, channel):
        status = await mirror.start("R", ["R", "F1", "F2", "F1"], resolution_hints={"F1": "1440x3168"})
        assert status["active"] is True
        assert status["followers"] == ["F1", "F2"]
        assert status["resolutions"] == {"F1": "1440x3168", "F2": "720x1600"}
        assert status["reference_pid"] == 4242
        assert "R" in channel.views

    @pytest.mark.asyncio
    async def test_view_failure(self, mirror, channel):
        async def broken(device_id, options=None):
            raise ChannelUnavailableError("scrcpy binary not found")

        channel.open_visual_reference = broken
        with pytest.raises(MirrorViewError):
            await mirror.start("R", ["F1"])
        assert mirror.active is False

    @pytest.mark.asyncio
    async def test_unknown_resolution_discovered(self, mirror, channel):
        channel.respond(r"^wm size", lambda dev, cmd: "Physical size: 1440x3040" if dev == "F3" else "")
        await mirror.start("R", ["F3"])
        assert mirror.resolutions["F3"] == FALLBACK_RESOLUTION
        for _ in range(50):
            if mirror.resolutions["F3"] != FALLBACK_RESOLUTION:
                break
            await asyncio.sleep(0.01)
        assert mirror.resolutions["F3"] == (1440, 3040)
        await mirror.stop()

    @pytest.mark.asyncio
    async def test_failed_discovery_keeps_fallback(self, mirror, channel):
        channel.respond(r"^wm size", DeviceTimeoutError("slow"))
        await mirror.start("R", ["F3"])
        await asyncio.sleep(0.02)
        await mirror.tap(0.5, 0.5)
        assert _follower_cmds(channel, "F3") == ["input tap 540 1170"]

    @pytest.mark.asyncio
    async def test_stop(self, mirror, channel, events):
        await mirror.start("R", ["F1"])
        assert await mirror.stop() is True
        assert await mirror.stop() is False
        assert channel.views["R"].closed
        stopped = [e.payload for e in events if e.kind == MIRROR_STOPPED]
        assert stopped == [{"reason": "stopped"}]

    @pytest.mark.asyncio
    async def test_operator_closing_view_stops_session(self, mirror, channel, events):
        await mirror.start("R", ["F1"])
        await channel.views["R"].operator_closed()
        assert mirror.active is False
        stopped = [e.payload for e in events if e.kind == MIRROR_STOPPED]
        assert stopped == [{"reason": "view_closed"}]
        with pytest.raises(MirrorNotActiveError):
            await mirror.tap(0.1, 0.1)

    @pytest.mark.asyncio
    async def test_restart_replaces_session(self, mirror, channel, events):
        await mirror.start("R", ["F1"])
        first_view = channel.views["R"]
        await mirror.start("R2", ["F1"])
        assert first_view.closed
        assert mirror.reference == "R2"
        assert [e for e in events if e.kind == MIRROR_STOPPED] == []
        await first_view.operator_closed()
        assert mirror.active is True


# ===========================================================================
# GESTURES
# ===========================================================================


@pytest.mark.unit
class TestGestures:

    @pytest.mark.asyncio
    async def test_tap_scaled_per_follower(self, mirror, channel, events):
        await mirror.start("R", ["F1", "F2"], resolution_hints={"F1": (1440, 3168)})
        result = await mirror.tap(0.5, 0.5)
        assert result == {"type": "tap", "device_count": 2, "success_count": 2}
        assert _follower_cmds(channel, "F1") == ["input tap 720 1584"]
        assert _follower_cmds(channel, "F2") == ["input tap 360 800"]
        assert _follower_cmds(channel, "R") == []
        gesture = [e.payload for e in events if e.kind == MIRROR_GESTURE][0]
        assert gesture["coordinates"] == {"x": 0.5, "y": 0.5}

    @pytest.mark.asyncio
    async def test_swipe_and_long_press(self, mirror, channel):
        await mirror.start("R", ["F2"])
        await mirror.swipe(0.5, 0.8, 0.5, 0.2)
        await mirror.long_press(0.25, 0.5)
        assert _follower_cmds(channel, "F2") == [
            "input swipe 360 1280 360 320 300",
            "input swipe 180 800 180 800 1000",
        ]

    @pytest.mark.asyncio
    async def test_key_and_text(self, mirror, channel):
        await mirror.start("R", ["F2"])
        await mirror.key("KEYCODE_BACK")
        await mirror.text("hi there")
        empty = await mirror.text("$$")
        assert _follower_cmds(channel, "F2") == ["input keyevent KEYCODE_BACK", "input text hi%sthere"]
        assert empty["success_count"] == 0

    @pytest.mark.asyncio
    async def test_key_rejects_shell_text(self, mirror, channel):
        await mirror.start("R", ["F2"])
        for bad in ("3; reboot", "KEYCODE_HOME && rm -rf /sdcard", "", "keycode_home"):
            with pytest.raises(ValueError):
                await mirror.key(bad)
        await mirror.key(4)
        assert _follower_cmds(channel, "F2") == ["input keyevent 4"]

    @pytest.mark.asyncio
    async def test_partial_failure_counted(self, mirror, channel):
        def flaky(device_id, command):
            if device_id == "F1":
                raise DeviceTimeoutError("no response", device_id=device_id)
            return ""

        channel.respond(r"^input", flaky)
        await mirror.start("R", ["F1", "F2"])
        result = await mirror.tap(0.1, 0.1)
        assert result["success_count"] == 1
        assert mirror.status()["errors"] == 1
        assert mirror.status()["gestures"] == 1

    @pytest.mark.asyncio
    async def test_inactive_raises(self, mirror):
        with pytest.raises(MirrorNotActiveError):
            await mirror.tap(0.5, 0.5)
        with pytest.raises(MirrorNotActiveError):
            await mirror.text("x")
