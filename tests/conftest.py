"""
Shared fixtures for the PhoneFleet test suite.

Provides a temp SQLite store with a controllable clock, an in-memory fake
device channel, a recording notification bus and aiohttp mocks, so that all
tests run WITHOUT adb, scrcpy or a network.
"""

from __future__ import annotations

import asyncio
import io
import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from phonefleet.errors import DeviceChannelError
from phonefleet.notifier import NotificationBus
from phonefleet.store import FleetStore


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path, clock):
    """FleetStore on a temp database, driven by the fake clock."""
    s = FleetStore(tmp_path / "fleet.db", clock=clock)
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Device channel
# ---------------------------------------------------------------------------

Response = Union[str, bytes, Exception, Callable[[str, str], Any]]


class FakeReferenceView:
    """Stand-in for adb.ReferenceView with a manual close trigger."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        self.pid = 4242
        self.closed = False
        self._callbacks: List[Callable] = []

    def on_closed(self, callback: Callable) -> None:
        self._callbacks.append(callback)

    async def close(self) -> None:
        await self.operator_closed()

    async def operator_closed(self) -> None:
        if self.closed:
            return
        self.closed = True
        for callback in list(self._callbacks):
            outcome = callback(self.device_id)
            if asyncio.iscoroutine(outcome):
                await outcome


class FakeDeviceChannel:
    """In-memory device channel.

    ``responses`` maps a regex (matched against the shell command) to an
    output string, an exception to raise, or a callable
    ``(device_id, command) -> output``.  The first matching pattern wins;
    unmatched commands return "".
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.responses: List[Tuple[re.Pattern, Response]] = []
        self.frames: Dict[str, List[Union[bytes, Exception]]] = {}
        self.default_frame: Optional[bytes] = None
        self.capture_calls: List[str] = []
        self.views: Dict[str, FakeReferenceView] = {}
        self.devices: List[str] = []
        self.connectable: List[str] = []
        self.connect_calls: List[str] = []

    def respond(self, pattern: str, response: Response) -> None:
        self.responses.append((re.compile(pattern), response))

    def commands_for(self, device_id: str) -> List[str]:
        return [cmd for dev, cmd in self.calls if dev == device_id]

    async def execute(self, device_id: str, command: str, timeout_ms: int = 10_000) -> str:
        self.calls.append((device_id, command))
        for pattern, response in self.responses:
            if pattern.search(command):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(device_id, command)
                return response
        return ""

    async def capture_frame(self, device_id: str, timeout_ms: int = 3_500) -> bytes:
        self.capture_calls.append(device_id)
        queue = self.frames.get(device_id)
        item: Union[bytes, Exception, None] = queue.pop(0) if queue else self.default_frame
        if item is None:
            raise DeviceChannelError("no frame scripted", device_id=device_id)
        if isinstance(item, Exception):
            raise item
        return item

    async def open_visual_reference(self, device_id: str, options: Any = None) -> FakeReferenceView:
        view = FakeReferenceView(device_id)
        self.views[device_id] = view
        return view

    async def list_devices(self) -> List[str]:
        return list(self.devices)

    async def connect(self, address: str, timeout_ms: int = 5_000) -> bool:
        self.connect_calls.append(address)
        return address in self.connectable


@pytest.fixture
def channel():
    return FakeDeviceChannel()


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def events(bus):
    """Every event emitted on ``bus``, in order."""
    received: List[Any] = []
    bus.subscribe(received.append)
    return received


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


@pytest.fixture
def png_bytes():
    """A 1080x2340 PNG screenshot."""
    buf = io.BytesIO()
    Image.new("RGB", (1080, 2340), (30, 120, 200)).save(buf, format="PNG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data or {})
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession."""
    session = AsyncMock()
    session.closed = False
    default_resp = mock_aiohttp_response(200, {"ok": True})
    session.post = MagicMock(return_value=default_resp)
    session.close = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# UI dumps
# ---------------------------------------------------------------------------

APP_PACKAGE = "com.zhiliaoapp.musically"

VIDEO_SCREEN_XML = f"""<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>
<hierarchy rotation="0">
  <node index="0" text="" resource-id="{APP_PACKAGE}:id/comment_button" class="android.widget.ImageView"
        package="{APP_PACKAGE}" content-desc="Read or add comments. 1,234 comments" bounds="[960,1300][1060,1400]" />
  <node index="1" text="" resource-id="" class="android.widget.Button"
        package="{APP_PACKAGE}" content-desc="Share video" bounds="[960,1500][1060,1600]" />
  <node index="2" text="Add comment..." resource-id="" class="android.widget.EditText"
        package="{APP_PACKAGE}" content-desc="Add comment" bounds="[40,2180][800,2260]" />
  <node index="3" text="" resource-id="" class="android.widget.ImageView"
        package="{APP_PACKAGE}" content-desc="Send" bounds="[900,2180][1040,2260]" />
</hierarchy>
"""

EMPTY_SCREEN_XML = f"""<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>
<hierarchy rotation="0">
  <node index="0" text="Live has ended" resource-id="" class="android.widget.TextView"
        package="{APP_PACKAGE}" content-desc="" bounds="[100,1000][980,1100]" />
</hierarchy>
"""


@pytest.fixture
def video_screen():
    """uiautomator dump of a video page with comment, share, input and send."""
    return VIDEO_SCREEN_XML


@pytest.fixture
def empty_screen():
    """uiautomator dump with none of the app's controls on it."""
    return EMPTY_SCREEN_XML
