"""
Device Worker -- PhoneFleet
===========================

Per-device runtime handle used by the scheduler.  A worker owns:

    status          idle | busy | paused
    manual pause    operator flag, independent of busy/idle; a manually
                    paused worker is never handed new tasks
    current task    the task being executed, if any
    geometry        display resolution plus the touch-input range, detected
                    lazily on the first task

Task bodies are looked up by task type in a runner registry and receive the
worker itself, through which they reach the device channel, the store and
the cooperative pause / cancellation checks.  ``execute_task`` never raises
for a failing body: the failure comes back as a ``TaskOutcome``.

Display detection order:
    1. ``WxH`` hint from the device registry, with known panel patterns
       whose touch range differs from the display
    2. ``wm size`` + ``getevent -p`` touch maxima (touch height falls back
       to 75% of the screen height when unreported)
    3. 1080x2340 display, 1080x1755 touch
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from phonefleet.errors import (
    DeviceChannelError,
    TaskCancelledError,
    classify_error,
    error_text,
)
from phonefleet.models import (
    JobStatus,
    ScreenGeometry,
    Task,
    TaskOutcome,
    WorkerStatus,
)

logger = logging.getLogger("phonefleet.worker")

RunnerFn = Callable[["DeviceWorker", Dict[str, Any]], Awaitable[Any]]

DEFAULT_GEOMETRY = ScreenGeometry(width=1080, height=2340, touch_width=1080, touch_height=1755, density=420)
TOUCH_FALLBACK_RATIO = 0.75
DETECT_TIMEOUT_MS = 5_000

# (width, height) -> (touch_width, touch_height) for panels whose touch range
# does not match the reported display size.
KNOWN_TOUCH_PATTERNS: Dict[Tuple[int, int], Tuple[int, int]] = {
    (1440, 3040): (1440, 2280),
    (1440, 3168): (1440, 3168),
    (1080, 2340): (1080, 2340),
    (1080, 2280): (1080, 2280),
}

_SIZE_RE = re.compile(r"(\d+)x(\d+)")
_OVERRIDE_SIZE_RE = re.compile(r"Override size:\s*(\d+)x(\d+)")
_DENSITY_RE = re.compile(r"(\d+)")
_OVERRIDE_DENSITY_RE = re.compile(r"Override density:\s*(\d+)")
_TOUCH_X_RE = re.compile(r"(?:0035|ABS_MT_POSITION_X)\s*:.*?max\s+(\d+)")
_TOUCH_Y_RE = re.compile(r"(?:0036|ABS_MT_POSITION_Y)\s*:.*?max\s+(\d+)")
_SHELL_STRIP_RE = re.compile(r"[`$\\\"';|&<>()]")


def escape_input_text(text: str) -> str:
    """Make text safe for ``input text``: strip shell metacharacters, %s for spaces."""
    cleaned = re.sub(r"[\r\n]+", " ", text).strip()
    cleaned = _SHELL_STRIP_RE.sub("", cleaned)
    return cleaned.replace(" ", "%s")


def parse_wm_size(output: str) -> Optional[Tuple[int, int]]:
    match = _OVERRIDE_SIZE_RE.search(output) or _SIZE_RE.search(output)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def parse_touch_range(output: str) -> Tuple[Optional[int], Optional[int]]:
    """ABS_MT_POSITION maxima from ``getevent -p`` (+1, they are inclusive)."""
    x = _TOUCH_X_RE.search(output)
    y = _TOUCH_Y_RE.search(output)
    return (int(x.group(1)) + 1 if x else None, int(y.group(1)) + 1 if y else None)


class DeviceWorker:
    """Runtime handle for one device."""

    def __init__(
        self,
        device_id: str,
        channel: Any,
        store: Any,
        notifier: Any = None,
        runners: Optional[Mapping[str, RunnerFn]] = None,
        resolution_hint: Optional[Tuple[int, int]] = None,
        app_package: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        if runners is None:
            from phonefleet.task_runners import RUNNERS
            runners = RUNNERS
        self.device_id = device_id
        self.channel = channel
        self.store = store
        self.notifier = notifier
        self.runners: Dict[str, RunnerFn] = dict(runners)
        self.resolution_hint = resolution_hint
        self.app_package = app_package
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()

        self.status = WorkerStatus.IDLE
        self.manually_paused = False
        self.current_task: Optional[Task] = None
        self.geometry = ScreenGeometry(**DEFAULT_GEOMETRY.to_dict())
        self.display_detected = False
        self.last_error: Optional[str] = None
        self.tasks_completed = 0
        self.tasks_failed = 0
        self.on_progress: Optional[Callable[[str], None]] = None

        self._resume = asyncio.Event()
        self._resume.set()

    # ---- geometry ----

    @property
    def screen_width(self) -> int:
        return self.geometry.width

    @property
    def screen_height(self) -> int:
        return self.geometry.height

    def to_touch(self, x: float, y: float) -> Tuple[int, int]:
        """Display pixels -> touch-input coordinates (for raw sendevent input)."""
        return self.geometry.to_touch(x, y)

    async def detect_display(self) -> ScreenGeometry:
        """Resolve display size, touch range and density for this device."""
        density = await self._detect_density()
        if self.resolution_hint:
            width, height = self.resolution_hint
            touch_w, touch_h = KNOWN_TOUCH_PATTERNS.get((width, height), (width, height))
            self.geometry = ScreenGeometry(width, height, touch_w, touch_h, density)
            logger.info("[%s] Display from registry: %dx%d, touch %dx%d",
                        self.device_id, width, height, touch_w, touch_h)
            self.display_detected = True
            return self.geometry

        try:
            size = parse_wm_size(await self.run_command("wm size", DETECT_TIMEOUT_MS))
            if size is None:
                raise DeviceChannelError("wm size returned no resolution", device_id=self.device_id)
            width, height = size
            touch_w, touch_h = None, None
            try:
                events = await self.run_command("getevent -p", DETECT_TIMEOUT_MS)
                touch_w, touch_h = parse_touch_range(events)
            except DeviceChannelError as exc:
                logger.debug("[%s] getevent failed: %s", self.device_id, exc)
            if touch_w is None:
                touch_w = width
            if touch_h is None:
                touch_h = round(height * TOUCH_FALLBACK_RATIO)
            self.geometry = ScreenGeometry(width, height, touch_w, touch_h, density)
            logger.info("[%s] Display detected: %dx%d, touch %dx%d, %d dpi",
                        self.device_id, width, height, touch_w, touch_h, density)
        except DeviceChannelError as exc:
            self.geometry = ScreenGeometry(**DEFAULT_GEOMETRY.to_dict())
            logger.warning("[%s] Display detection failed (%s); using %dx%d",
                           self.device_id, exc, self.geometry.width, self.geometry.height)
        self.display_detected = True
        return self.geometry

    async def _detect_density(self) -> int:
        try:
            out = await self.run_command("wm density", DETECT_TIMEOUT_MS)
        except DeviceChannelError:
            return DEFAULT_GEOMETRY.density
        match = _OVERRIDE_DENSITY_RE.search(out) or _DENSITY_RE.search(out)
        return int(match.group(1)) if match else DEFAULT_GEOMETRY.density

    # ---- availability & pause ----

    def is_available(self) -> bool:
        return self.status is WorkerStatus.IDLE and not self.manually_paused

    def mark_busy(self, task: Task) -> None:
        self.status = WorkerStatus.BUSY
        self.current_task = task

    def mark_finished(self) -> None:
        self.current_task = None
        self._resume.set()
        self.status = WorkerStatus.PAUSED if self.manually_paused else WorkerStatus.IDLE

    def pause_manually(self) -> bool:
        self.manually_paused = True
        if self.status is WorkerStatus.IDLE:
            self.status = WorkerStatus.PAUSED
        return True

    def resume_manually(self) -> bool:
        self.manually_paused = False
        if self.status is WorkerStatus.PAUSED and self.current_task is None:
            self.status = WorkerStatus.IDLE
        return True

    def pause(self) -> bool:
        """Ask the running task body to hold at its next checkpoint."""
        if self.current_task is None:
            return False
        self._resume.clear()
        self.status = WorkerStatus.PAUSED
        return True

    def resume(self) -> bool:
        if self.current_task is None:
            return False
        self._resume.set()
        self.status = WorkerStatus.BUSY
        return True

    @property
    def task_paused(self) -> bool:
        return not self._resume.is_set()

    async def wait_for_resume(self) -> None:
        await self._resume.wait()

    async def checkpoint(self, job_id: Optional[str]) -> None:
        """Cooperative stop point for task bodies: honours pause and cancellation."""
        self.check_cancelled(job_id)
        if self.task_paused:
            await self.wait_for_resume()
            self.check_cancelled(job_id)

    def check_cancelled(self, job_id: Optional[str]) -> None:
        if not job_id or self.store is None:
            return
        job = self.store.get_job(job_id)
        if job is None or job.status is JobStatus.CANCELLED:
            raise TaskCancelledError("Job cancelled by user", device_id=self.device_id, job_id=job_id)

    # ---- device helpers ----

    async def run_command(self, command: str, timeout_ms: int = 10_000) -> str:
        return await self.channel.execute(self.device_id, command, timeout_ms)

    async def tap(self, x: int, y: int) -> None:
        await self.run_command(f"input tap {int(x)} {int(y)}")

    async def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int = 300) -> None:
        await self.run_command(f"input swipe {int(x1)} {int(y1)} {int(x2)} {int(y2)} {int(duration_ms)}")

    async def key(self, keycode: Any) -> None:
        await self.run_command(f"input keyevent {keycode}")

    async def type_text(self, text: str) -> bool:
        escaped = escape_input_text(text)
        if not escaped:
            return False
        await self.run_command(f"input text {escaped}")
        return True

    def report_progress(self, job_id: str, delta: int = 1) -> None:
        """Bump a cycle-counted job's completed counter mid-task."""
        self.store.increment_job_progress(job_id, delta)
        if self.on_progress is not None:
            self.on_progress(job_id)

    def random_int(self, low: int, high: int) -> int:
        low, high = int(low), int(high)
        if high < low:
            low, high = high, low
        return self.rng.randint(low, high)

    # ---- execution ----

    async def execute_task(self, task: Task) -> TaskOutcome:
        """Run the body for ``task`` and report the outcome."""
        runner = self.runners.get(task.type)
        if runner is None:
            return TaskOutcome(success=False, error=f"Unknown task type: {task.type}")

        if not self.display_detected:
            await self.detect_display()

        config = {**task.config, "jobId": task.job_id}
        started = self.clock()
        try:
            result = await runner(self, config)
        except TaskCancelledError as exc:
            logger.info("[%s] Task %s stopped: %s", self.device_id, task.id, exc)
            return TaskOutcome(success=False, error=error_text(exc), cancelled=True)
        except Exception as exc:
            ctx = classify_error(exc, module="worker", operation=task.type)
            self.last_error = error_text(exc)
            self.tasks_failed += 1
            logger.warning("[%s] Task %s failed: %s", self.device_id, task.id, ctx)
            return TaskOutcome(success=False, error=self.last_error)

        self.tasks_completed += 1
        logger.info("[%s] Task %s done in %.1fs", self.device_id, task.id, self.clock() - started)
        return TaskOutcome(success=True, result=result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "status": self.status.value,
            "manually_paused": self.manually_paused,
            "available": self.is_available(),
            "current_task": self.current_task.id if self.current_task else None,
            "current_job": self.current_task.job_id if self.current_task else None,
            "geometry": self.geometry.to_dict(),
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "last_error": self.last_error,
        }
