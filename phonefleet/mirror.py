"""
Mirror Controller -- PhoneFleet
===============================

Gesture broadcast from one reference device to a set of followers.

The operator watches the reference device in a read-only scrcpy window and
gestures against it; every gesture arrives here with coordinates normalized
to [0, 1] and is replayed on each follower after rescaling to that
follower's own resolution:

    pixel = round(clamp(c, 0, 1) x dimension)

Followers never share a resolution assumption.  Known resolutions come from
the device registry; the rest are discovered with ``wm size`` in the
background, and the 1080x2340 fallback covers them until discovery lands.

The reference device is never a gesture target.  Closing the reference
window ends the session exactly like ``stop()`` and emits mirror-stopped.

Usage:
    mirror = MirrorController(channel, bus)
    await mirror.start("R58M123ABC", ["R58M456DEF", "192.168.1.40:5555"])
    await mirror.tap(0.5, 0.5)
    await mirror.stop()
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from phonefleet.adb import ReferenceView, ReferenceViewOptions
from phonefleet.config import parse_resolution
from phonefleet.errors import FleetError, MirrorNotActiveError, MirrorViewError
from phonefleet.worker import escape_input_text, parse_wm_size

logger = logging.getLogger("phonefleet.mirror")

FALLBACK_RESOLUTION = (1080, 2340)
DISCOVERY_TIMEOUT_MS = 3_000
COMMAND_TIMEOUT_MS = 5_000
DEFAULT_SWIPE_MS = 300
LONG_PRESS_MS = 1_000

# Symbolic (KEYCODE_BACK) or numeric (4) key codes accepted by ``input keyevent``.
KEYCODE_PATTERN = r"^(?:KEYCODE_[A-Z0-9_]+|\d{1,3})$"
_KEYCODE_RE = re.compile(KEYCODE_PATTERN)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def to_pixels(x: float, y: float, resolution: Tuple[int, int]) -> Tuple[int, int]:
    width, height = resolution
    return round(_clamp01(x) * width), round(_clamp01(y) * height)


def _normalize_hints(hints: Mapping[str, Any]) -> Dict[str, Tuple[int, int]]:
    """Accept 'WxH' strings or (w, h) pairs; drop anything else."""
    normalized: Dict[str, Tuple[int, int]] = {}
    for device_id, value in hints.items():
        if isinstance(value, str):
            parsed = parse_resolution(value)
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            parsed = (int(value[0]), int(value[1]))
        else:
            parsed = None
        if parsed:
            normalized[device_id] = parsed
    return normalized


class MirrorController:
    """One mirror session at a time: reference view plus follower fan-out."""

    def __init__(
        self,
        channel: Any,
        notifier: Any = None,
        known_resolutions: Optional[Mapping[str, Tuple[int, int]]] = None,
    ) -> None:
        self.channel = channel
        self.notifier = notifier
        self._known: Dict[str, Tuple[int, int]] = dict(known_resolutions or {})

        self.active = False
        self.reference: Optional[str] = None
        self.followers: List[str] = []
        self.resolutions: Dict[str, Tuple[int, int]] = {}
        self._view: Optional[ReferenceView] = None
        self._discovery: Optional[asyncio.Task] = None
        self._session = 0
        self.gestures = 0
        self.errors = 0

    # ---- session ----

    async def start(
        self,
        reference: str,
        followers: Iterable[str],
        resolution_hints: Optional[Mapping[str, Any]] = None,
        options: Optional[ReferenceViewOptions] = None,
    ) -> Dict[str, Any]:
        """Replace any running session with a new one."""
        if self.active:
            await self.stop(reason="restarted", notify=False)

        follower_ids = [d for d in dict.fromkeys(followers) if d and d != reference]
        hints = {**self._known, **_normalize_hints(resolution_hints or {})}
        self.resolutions = {d: hints.get(d, FALLBACK_RESOLUTION) for d in follower_ids}
        unknown = [d for d in follower_ids if d not in hints]

        options = options or ReferenceViewOptions(window_title=f"Mirror - {reference}")
        try:
            view = await self.channel.open_visual_reference(reference, options)
        except FleetError as exc:
            raise MirrorViewError(f"Cannot open reference view: {exc}", device_id=reference) from exc

        self._session += 1
        session = self._session
        self._view = view
        self.reference = reference
        self.followers = follower_ids
        self.active = True
        self.gestures = self.errors = 0
        view.on_closed(lambda _device: self._on_view_closed(session))

        if unknown:
            self._discovery = asyncio.create_task(self._discover(unknown, session))
        logger.info("Mirror started: reference %s, %d followers (%d to discover)",
                    reference, len(follower_ids), len(unknown))
        return self.status()

    async def _on_view_closed(self, session: int) -> None:
        if not self.active or session != self._session:
            return
        logger.info("Reference view closed by operator, stopping mirror")
        await self.stop(reason="view_closed")

    async def stop(self, reason: str = "stopped", notify: bool = True) -> bool:
        if not self.active:
            return False
        self.active = False
        view, self._view = self._view, None
        discovery, self._discovery = self._discovery, None
        if discovery is not None and not discovery.done():
            discovery.cancel()
            try:
                await discovery
            except asyncio.CancelledError:
                pass
        if view is not None and not view.closed:
            await view.close()
        logger.info("Mirror stopped (%s) after %d gestures", reason, self.gestures)
        self.reference = None
        self.followers = []
        self.resolutions = {}
        if notify and self.notifier is not None:
            self.notifier.mirror_stopped(reason)
        return True

    async def _discover(self, device_ids: List[str], session: int) -> None:
        results = await asyncio.gather(
            *(self._query_resolution(d) for d in device_ids), return_exceptions=True,
        )
        if session != self._session:
            return
        for device_id, result in zip(device_ids, results):
            if isinstance(result, tuple):
                self.resolutions[device_id] = result
                logger.debug("[%s] Mirror resolution %dx%d", device_id, *result)

    async def _query_resolution(self, device_id: str) -> Optional[Tuple[int, int]]:
        try:
            out = await self.channel.execute(device_id, "wm size", DISCOVERY_TIMEOUT_MS)
        except FleetError as exc:
            logger.debug("[%s] wm size failed: %s", device_id, exc)
            return None
        size = parse_wm_size(out)
        if size is not None:
            self._known[device_id] = size
        return size

    # ---- broadcast ----

    def _require_active(self) -> None:
        if not self.active:
            raise MirrorNotActiveError("Mirror session is not active")

    async def _broadcast(self, gesture: str, coordinates: Dict[str, Any], build) -> Dict[str, Any]:
        """Run ``build(resolution) -> command`` on every follower concurrently."""
        self._require_active()
        followers = list(self.followers)

        async def _send(device_id: str) -> bool:
            command = build(self.resolutions.get(device_id, FALLBACK_RESOLUTION))
            try:
                await self.channel.execute(device_id, command, COMMAND_TIMEOUT_MS)
            except FleetError as exc:
                logger.debug("[%s] Mirror %s failed: %s", device_id, gesture, exc)
                return False
            return True

        results = await asyncio.gather(*(_send(d) for d in followers))
        success = sum(1 for ok in results if ok)
        self.gestures += 1
        self.errors += len(followers) - success
        if self.notifier is not None:
            self.notifier.mirror_gesture(gesture, coordinates, len(followers), success)
        return {"type": gesture, "device_count": len(followers), "success_count": success}

    async def tap(self, x: float, y: float) -> Dict[str, Any]:
        def build(res: Tuple[int, int]) -> str:
            px, py = to_pixels(x, y, res)
            return f"input tap {px} {py}"
        return await self._broadcast("tap", {"x": x, "y": y}, build)

    async def swipe(self, x1: float, y1: float, x2: float, y2: float,
                    duration_ms: int = DEFAULT_SWIPE_MS) -> Dict[str, Any]:
        def build(res: Tuple[int, int]) -> str:
            sx, sy = to_pixels(x1, y1, res)
            ex, ey = to_pixels(x2, y2, res)
            return f"input swipe {sx} {sy} {ex} {ey} {int(duration_ms)}"
        coords = {"x1": x1, "y1": y1, "x2": x2, "y2": y2, "duration": duration_ms}
        return await self._broadcast("swipe", coords, build)

    async def long_press(self, x: float, y: float, duration_ms: int = LONG_PRESS_MS) -> Dict[str, Any]:
        def build(res: Tuple[int, int]) -> str:
            px, py = to_pixels(x, y, res)
            return f"input swipe {px} {py} {px} {py} {int(duration_ms)}"
        return await self._broadcast("long_press", {"x": x, "y": y, "duration": duration_ms}, build)

    async def key(self, keycode: Any) -> Dict[str, Any]:
        """Send a key event. Raises ValueError for anything but a key code."""
        code = str(keycode).strip()
        if not _KEYCODE_RE.fullmatch(code):
            raise ValueError(f"Invalid keycode: {keycode!r}")
        return await self._broadcast("key", {"keycode": code}, lambda _res: f"input keyevent {code}")

    async def text(self, value: str) -> Dict[str, Any]:
        escaped = escape_input_text(value)
        self._require_active()
        if not escaped:
            return {"type": "text", "device_count": len(self.followers), "success_count": 0}
        return await self._broadcast("text", {"length": len(value)}, lambda _res: f"input text {escaped}")

    def status(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "reference": self.reference,
            "followers": list(self.followers),
            "resolutions": {d: f"{w}x{h}" for d, (w, h) in self.resolutions.items()},
            "gestures": self.gestures,
            "errors": self.errors,
            "reference_pid": self._view.pid if self._view else None,
        }
