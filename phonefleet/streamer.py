"""
Streaming Engine -- PhoneFleet
==============================

Near-realtime thumbnails of every streamed device.

One capture loop per device, started 50 ms apart so a fleet-wide start does
not hit the adb server all at once.  Each loop:

    capture (3.5 s timeout)
      -> Pillow resize to the thumbnail width + JPEG encode (worker thread)
      -> cache (last write wins, one entry per device)
      -> stream-frame notification
      -> sleep the inter-frame delay

Failures never end a loop; only ``remove_device`` / ``stop`` do:

    - capture shorter than 100 bytes     failure, 0.3 s pause
    - ordinary failure                   pause min(0.8, 0.15 x failures)
    - 5 consecutive failures             3 s backoff, counter reset
    - offline / not found / no devices   device-status-change(offline),
                                         8 s backoff; the next good frame
                                         reports the device online again

Settings (width, quality, frame delay) are live: loops read them per frame.
"""

from __future__ import annotations

import asyncio
import collections
import io
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from PIL import Image

from phonefleet.errors import DeviceOfflineError, is_offline_message

logger = logging.getLogger("phonefleet.streamer")

CAPTURE_TIMEOUT_MS = 3_500
MIN_FRAME_BYTES = 100
SMALL_FRAME_PAUSE = 0.3
START_STAGGER = 0.05
FAILURE_THRESHOLD = 5
FAILURE_BACKOFF = 3.0
OFFLINE_BACKOFF = 8.0
MAX_FAILURE_PAUSE = 0.8
FAILURE_PAUSE_STEP = 0.15
RESTART_DELAY = 0.5
LATENCY_WINDOW = 100

DEFAULT_WIDTH = 140
DEFAULT_QUALITY = 30
DEFAULT_FRAME_DELAY_MS = 20
WIDTH_RANGE = (80, 720)
QUALITY_RANGE = (10, 95)
FRAME_DELAY_RANGE = (5, 500)


def _clamp(value: Any, bounds: Tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, int(value)))


def transform_frame(raw: bytes, width: int, quality: int) -> Tuple[bytes, int, int]:
    """Decode a screenshot, scale it to ``width`` and re-encode as JPEG."""
    with Image.open(io.BytesIO(raw)) as img:
        rgb = img.convert("RGB")
    height = max(1, round(rgb.height * width / rgb.width))
    thumb = rgb.resize((width, height), Image.Resampling.BILINEAR)
    buf = io.BytesIO()
    thumb.save(buf, format="JPEG", quality=quality)
    return buf.getvalue(), width, height


@dataclass
class CachedFrame:
    device_id: str
    data: bytes
    width: int
    height: int
    timestamp: float
    encoding: str = "jpeg"

    @property
    def size(self) -> int:
        return len(self.data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "encoding": self.encoding,
            "size": self.size,
            "width": self.width,
            "height": self.height,
            "timestamp": self.timestamp,
        }


@dataclass
class StreamSettings:
    width: int = DEFAULT_WIDTH
    quality: int = DEFAULT_QUALITY
    frame_delay_ms: int = DEFAULT_FRAME_DELAY_MS

    def to_dict(self) -> Dict[str, int]:
        return {"width": self.width, "quality": self.quality, "frame_delay_ms": self.frame_delay_ms}


@dataclass
class _DeviceStream:
    device_id: str
    task: Optional[asyncio.Task] = None
    frames: int = 0
    errors: int = 0
    consecutive_failures: int = 0
    online: bool = True
    last_frame_at: Optional[float] = None
    last_error: Optional[str] = None


class StreamingEngine:
    """Per-device capture loops feeding a frame cache and the notifier."""

    def __init__(
        self,
        channel: Any,
        notifier: Any = None,
        settings: Optional[StreamSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.notifier = notifier
        self.settings = settings or StreamSettings()
        self._sleep = sleep
        self._clock = clock
        self._streams: Dict[str, _DeviceStream] = {}
        self._frames: Dict[str, CachedFrame] = {}
        self._latencies: Deque[float] = collections.deque(maxlen=LATENCY_WINDOW)
        self._running = False
        self.total_frames = 0
        self.total_errors = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def device_ids(self) -> List[str]:
        return list(self._streams)

    # ---- lifecycle ----

    async def start(self, device_ids: Iterable[str]) -> int:
        """Start loops for every device not already streaming."""
        self._running = True
        started = 0
        for device_id in device_ids:
            if self.add_device(device_id):
                started += 1
                await self._sleep(START_STAGGER)
        logger.info("Streaming %d devices (%d new)", len(self._streams), started)
        return started

    def add_device(self, device_id: str) -> bool:
        if device_id in self._streams:
            return False
        self._running = True
        stream = _DeviceStream(device_id=device_id)
        self._streams[device_id] = stream
        stream.task = asyncio.create_task(self._capture_loop(stream))
        stream.task.add_done_callback(self._loop_done)
        return True

    async def remove_device(self, device_id: str) -> bool:
        stream = self._streams.pop(device_id, None)
        if stream is None:
            return False
        if stream.task is not None and not stream.task.done():
            stream.task.cancel()
            try:
                await stream.task
            except asyncio.CancelledError:
                pass
        logger.debug("[%s] Stream removed", device_id)
        return True

    async def restart_device(self, device_id: str) -> bool:
        await self.remove_device(device_id)
        self._frames.pop(device_id, None)
        await self._sleep(RESTART_DELAY)
        return self.add_device(device_id)

    async def stop(self) -> None:
        self._running = False
        for device_id in list(self._streams):
            await self.remove_device(device_id)
        logger.info("Streaming stopped")

    def _loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Capture loop ended with unexpected error: %s", exc)

    # ---- capture loop ----

    async def _capture_loop(self, stream: _DeviceStream) -> None:
        device_id = stream.device_id
        while self._running and self._streams.get(device_id) is stream:
            started = self._clock()
            try:
                raw = await self.channel.capture_frame(device_id, CAPTURE_TIMEOUT_MS)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._on_failure(stream, exc)
                continue

            if not raw or len(raw) < MIN_FRAME_BYTES:
                self._count_failure(stream, f"frame too small ({len(raw or b'')} bytes)")
                await self._sleep(SMALL_FRAME_PAUSE)
                continue

            settings = self.settings
            try:
                data, width, height = await asyncio.to_thread(
                    transform_frame, raw, settings.width, settings.quality,
                )
            except (OSError, ValueError) as exc:
                await self._on_failure(stream, exc)
                continue

            self._on_frame(stream, CachedFrame(device_id, data, width, height, time.time()), started)
            await self._sleep(self.settings.frame_delay_ms / 1000.0)

    def _on_frame(self, stream: _DeviceStream, frame: CachedFrame, started: float) -> None:
        self._frames[stream.device_id] = frame
        stream.frames += 1
        stream.consecutive_failures = 0
        stream.last_frame_at = frame.timestamp
        self.total_frames += 1
        self._latencies.append((self._clock() - started) * 1000.0)
        if not stream.online:
            stream.online = True
            logger.info("[%s] Device back online", stream.device_id)
            if self.notifier is not None:
                self.notifier.device_status_change(stream.device_id, True)
        if self.notifier is not None:
            self.notifier.stream_frame(
                stream.device_id, frame.data, frame.encoding, frame.size, frame.timestamp,
            )

    def _count_failure(self, stream: _DeviceStream, message: str) -> None:
        stream.errors += 1
        stream.consecutive_failures += 1
        stream.last_error = message
        self.total_errors += 1

    async def _on_failure(self, stream: _DeviceStream, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        self._count_failure(stream, message)

        if isinstance(exc, DeviceOfflineError) or is_offline_message(message):
            if stream.online:
                stream.online = False
                logger.warning("[%s] Device offline: %s", stream.device_id, message)
                if self.notifier is not None:
                    self.notifier.device_status_change(stream.device_id, False)
            stream.consecutive_failures = 0
            await self._sleep(OFFLINE_BACKOFF)
            return

        if stream.consecutive_failures >= FAILURE_THRESHOLD:
            logger.warning("[%s] %d capture failures in a row, backing off %.0fs (last: %s)",
                           stream.device_id, stream.consecutive_failures, FAILURE_BACKOFF, message)
            stream.consecutive_failures = 0
            await self._sleep(FAILURE_BACKOFF)
            return

        await self._sleep(min(MAX_FAILURE_PAUSE, FAILURE_PAUSE_STEP * stream.consecutive_failures))

    # ---- frames & settings ----

    def get_frame(self, device_id: str) -> Optional[CachedFrame]:
        return self._frames.get(device_id)

    def get_all_frames(self) -> Dict[str, CachedFrame]:
        return dict(self._frames)

    def update_settings(
        self,
        width: Optional[int] = None,
        quality: Optional[int] = None,
        frame_delay_ms: Optional[int] = None,
    ) -> StreamSettings:
        """Apply new settings, clamped to safe bounds. Returns the result."""
        current = self.settings
        self.settings = StreamSettings(
            width=_clamp(width, WIDTH_RANGE) if width is not None else current.width,
            quality=_clamp(quality, QUALITY_RANGE) if quality is not None else current.quality,
            frame_delay_ms=(
                _clamp(frame_delay_ms, FRAME_DELAY_RANGE) if frame_delay_ms is not None
                else current.frame_delay_ms
            ),
        )
        logger.info("Stream settings: %s", self.settings.to_dict())
        return self.settings

    def stats(self) -> Dict[str, Any]:
        now = time.time()
        avg = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
        return {
            "is_running": self._running,
            "active_streams": sum(1 for s in self._streams.values() if s.task and not s.task.done()),
            "total_devices": len(self._streams),
            "cached_frames": len(self._frames),
            "total_frames": self.total_frames,
            "total_errors": self.total_errors,
            "avg_frame_time": round(avg, 1),
            "settings": self.settings.to_dict(),
            "devices": {
                s.device_id: {
                    "frames": s.frames,
                    "errors": s.errors,
                    "consecutive_failures": s.consecutive_failures,
                    "online": s.online,
                    "last_frame_age": round(now - s.last_frame_at, 1) if s.last_frame_at else None,
                    "last_error": s.last_error,
                }
                for s in self._streams.values()
            },
        }
