"""
App Driver -- PhoneFleet
========================

Stateless leaf capability for driving the target short-video app's UI on one
device: open/close, navigate, locate elements in a uiautomator dump, tap,
type, swipe.  Task bodies compose these; nothing here keeps state between
calls beyond the worker it is bound to.

Elements are located in the uiautomator XML dump by content-desc, text or
resource-id; a hit is tapped at the centre of its bounds.  Positions that
are not locatable fall back to screen-percentage coordinates, so every
gesture stays resolution independent.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence, Tuple

from phonefleet.config import DEFAULT_APP_PACKAGE
from phonefleet.errors import CaptchaBlockedError, DeviceChannelError, ElementNotFoundError

if TYPE_CHECKING:
    from phonefleet.worker import DeviceWorker

logger = logging.getLogger("phonefleet.app_driver")

UI_DUMP_PATH = "/sdcard/ui.xml"
MIN_DUMP_LENGTH = 100

KEY_HOME = 3
KEY_BACK = 4
KEY_ENTER = 66

COMMENT_BUTTON_DESC = ("comment", "Komentar", "Comments")
COMMENT_INPUT_DESC = ("Add comment", "Tambah komentar", "Write a comment")
SEND_DESC = ("Send", "Post", "Kirim")
SHARE_DESC = ("share", "Share")
REPOST_TEXT = ("Repost", "repost")
CAPTCHA_MARKERS = ("captcha", "verify to continue", "drag the slider", "drag the puzzle")

_NODE_RE = re.compile(r"<node\b[^>]*>", re.DOTALL)
_ATTR_RE = re.compile(r'([\w-]+)="([^"]*)"')
_BOUNDS_RE = re.compile(r"\[(\d+),(\d+)\]\[(\d+),(\d+)\]")


@dataclass
class UIElement:
    """A node from a uiautomator dump."""

    text: str = ""
    resource_id: str = ""
    class_name: str = ""
    content_desc: str = ""
    package: str = ""
    bounds: Tuple[int, int, int, int] = (0, 0, 0, 0)

    @property
    def center(self) -> Tuple[int, int]:
        left, top, right, bottom = self.bounds
        return (round((left + right) / 2), round((top + bottom) / 2))


def parse_ui_dump(xml: str) -> List[UIElement]:
    elements: List[UIElement] = []
    for node in _NODE_RE.findall(xml or ""):
        attrs = dict(_ATTR_RE.findall(node))
        bounds = _BOUNDS_RE.match(attrs.get("bounds", ""))
        if not bounds:
            continue
        elements.append(UIElement(
            text=attrs.get("text", ""),
            resource_id=attrs.get("resource-id", ""),
            class_name=attrs.get("class", ""),
            content_desc=attrs.get("content-desc", ""),
            package=attrs.get("package", ""),
            bounds=tuple(int(v) for v in bounds.groups()),
        ))
    return elements


def has_captcha(elements: Iterable[UIElement]) -> bool:
    """True if a verification challenge is covering the screen."""
    for el in elements:
        haystack = f"{el.text} {el.content_desc} {el.resource_id}".lower()
        if any(marker in haystack for marker in CAPTCHA_MARKERS):
            return True
    return False


def find_element(
    elements: Sequence[UIElement],
    content_desc: Iterable[str] = (),
    text: Iterable[str] = (),
    resource_id: Iterable[str] = (),
    region: Optional[Tuple[float, float, float, float]] = None,
    screen: Tuple[int, int] = (1080, 2340),
) -> Optional[UIElement]:
    """First element matching any pattern, optionally inside a screen region.

    content-desc matches are case-insensitive substrings, text and
    resource-id matches are exact.  ``region`` is (x0, y0, x1, y1) as
    fractions of the screen.
    """
    descs = [d.lower() for d in content_desc]
    texts = set(text)
    rids = set(resource_id)

    def _in_region(el: UIElement) -> bool:
        if region is None:
            return True
        cx, cy = el.center
        w, h = screen
        return region[0] * w <= cx <= region[2] * w and region[1] * h <= cy <= region[3] * h

    for el in elements:
        if not _in_region(el):
            continue
        if el.resource_id and el.resource_id in rids:
            return el
        if el.text and el.text in texts:
            return el
        desc = el.content_desc.lower()
        if desc and any(d in desc for d in descs):
            return el
    return None


class AppDriver:
    """UI actions for the target app, bound to one worker."""

    def __init__(self, worker: DeviceWorker, package: Optional[str] = None) -> None:
        self.worker = worker
        self.package = package or getattr(worker, "app_package", None) or DEFAULT_APP_PACKAGE

    @property
    def device_id(self) -> str:
        return self.worker.device_id

    def _pct(self, fx: float, fy: float) -> Tuple[int, int]:
        return round(self.worker.screen_width * fx), round(self.worker.screen_height * fy)

    # ---- app lifecycle ----

    async def open_app(self) -> None:
        await self.worker.run_command(f"monkey -p {self.package} 1")
        await self.worker.sleep(4)

    async def close_app(self) -> None:
        try:
            await self.worker.run_command(f"am force-stop {self.package}")
        except DeviceChannelError as exc:
            logger.debug("[%s] force-stop failed: %s", self.device_id, exc)
        await self.worker.sleep(0.5)

    async def go_home(self) -> None:
        await self.worker.key(KEY_HOME)
        await self.worker.sleep(0.5)

    async def go_back(self) -> None:
        await self.worker.key(KEY_BACK)
        await self.worker.sleep(0.5)

    async def open_url(self, url: str) -> None:
        safe = url.replace('"', "")
        try:
            await self.worker.run_command(
                f'am start -a android.intent.action.VIEW -p {self.package} -d "{safe}"'
            )
        except DeviceChannelError:
            await self.worker.run_command(f'am start -a android.intent.action.VIEW -d "{safe}"')
        await self.worker.sleep(1.5)

    # ---- gestures ----

    async def swipe_feed(self, duration_ms: Optional[int] = None) -> None:
        x, start_y = self._pct(0.5, 0.75)
        _, end_y = self._pct(0.5, 0.25)
        await self.worker.swipe(x, start_y, x, end_y, duration_ms or self.worker.random_int(200, 400))

    async def double_tap_like(self) -> Tuple[int, int]:
        x = self.worker.random_int(self._pct(0.25, 0)[0], self._pct(0.5, 0)[0])
        y = self.worker.random_int(self._pct(0, 0.35)[1], self._pct(0, 0.65)[1])
        await self.worker.run_command(f"input tap {x} {y} && input tap {x} {y}")
        return x, y

    async def tap_screen(self) -> Tuple[int, int]:
        x = self.worker.random_int(self._pct(0.3, 0)[0], self._pct(0.7, 0)[0])
        y = self.worker.random_int(self._pct(0, 0.3)[1], self._pct(0, 0.5)[1])
        await self.worker.tap(x, y)
        return x, y

    # ---- element location ----

    async def dump_ui(self, retries: int = 2) -> List[UIElement]:
        for attempt in range(retries):
            try:
                xml = await self.worker.run_command(
                    f"uiautomator dump {UI_DUMP_PATH} && cat {UI_DUMP_PATH}", 15_000,
                )
            except DeviceChannelError as exc:
                logger.debug("[%s] UI dump failed: %s", self.device_id, exc)
                xml = ""
            if xml and len(xml) > MIN_DUMP_LENGTH:
                return parse_ui_dump(xml)
            if attempt < retries - 1:
                await self.worker.sleep(1)
        return []

    async def tap_element(self, retries: int = 2, **criteria) -> bool:
        screen = (self.worker.screen_width, self.worker.screen_height)
        for attempt in range(retries):
            element = find_element(await self.dump_ui(), screen=screen, **criteria)
            if element is not None:
                x, y = element.center
                await self.worker.tap(x, y)
                logger.debug("[%s] Tapped %s at (%d, %d)", self.device_id,
                             element.content_desc or element.text or element.resource_id, x, y)
                return True
            if attempt < retries - 1:
                await self.worker.sleep(1.5)
        return False

    async def open_comments(self) -> bool:
        return await self.tap_element(
            content_desc=COMMENT_BUTTON_DESC,
            resource_id=(f"{self.package}:id/comment_button",),
            region=(0.7, 0.2, 1.0, 0.95),
        )

    async def post_comment(self, text: str) -> bool:
        """Open the comment panel, type and send.

        Raises CaptchaBlockedError when a verification challenge hides the
        comment button, ElementNotFoundError when it is otherwise missing;
        returns False when the text is empty after escaping.
        """
        if not await self.open_comments():
            if has_captcha(await self.dump_ui(retries=1)):
                raise CaptchaBlockedError("Captcha challenge on screen", device_id=self.device_id)
            raise ElementNotFoundError("Comment button not found", device_id=self.device_id)
        await self.worker.sleep(1.5)

        if not await self.tap_element(content_desc=COMMENT_INPUT_DESC, text=COMMENT_INPUT_DESC,
                                      region=(0.0, 0.78, 1.0, 0.99)):
            x, y = self._pct(0.4, 0.93)
            await self.worker.tap(x, y)
        await self.worker.sleep(2)

        if not await self.worker.type_text(text):
            return False
        await self.worker.sleep(0.8)

        if not await self.tap_element(content_desc=SEND_DESC, region=(0.75, 0.4, 1.0, 0.99), retries=1):
            await self.worker.key(KEY_ENTER)
        await self.worker.sleep(1.5)
        await self.go_back()
        logger.info("[%s] Comment posted: %r", self.device_id, text[:60])
        return True

    async def peek_comments(self) -> bool:
        opened = await self.open_comments()
        if opened:
            await self.worker.sleep(1.5)
            await self.go_back()
        return opened

    async def share(self) -> bool:
        """Open the share sheet and repost. False if the sheet or repost is missing."""
        if not await self.tap_element(content_desc=SHARE_DESC, retries=1):
            return False
        await self.worker.sleep(2)
        if await self.tap_element(text=REPOST_TEXT, content_desc=REPOST_TEXT, retries=1):
            await self.worker.sleep(1.5)
            return True
        await self.go_back()
        return False
