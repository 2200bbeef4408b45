"""
ADB Device Channel -- PhoneFleet
================================

The device channel every other component talks through.  Wraps the ``adb``
and ``scrcpy`` executables with asyncio subprocesses; each call is fully
independent and carries its own timeout, so one hung device never stalls
another device's loop.

Operations:
    execute(device_id, command, timeout_ms)        -> stdout text
    capture_frame(device_id, timeout_ms)           -> PNG bytes
    open_visual_reference(device_id, options)      -> ReferenceView
    list_devices() / connect(address) / start_server()

Errors are raised as the fleet taxonomy:

    DeviceTimeoutError      call exceeded its timeout (process killed)
    DeviceOfflineError      adb reports the device offline / not found
    DeviceBusyError         device attached but still authorizing / connecting
    DeviceChannelError      any other adb client error
    ChannelUnavailableError adb / scrcpy binary missing

Remote commands that merely exit non-zero (``grep`` with no match and the
like) are not errors; their stdout is returned as-is.

Any object with the same coroutine methods can stand in for ``AdbChannel``
(tests use an in-memory fake).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import shlex
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from phonefleet.errors import (
    ChannelUnavailableError,
    DeviceBusyError,
    DeviceChannelError,
    DeviceOfflineError,
    DeviceTimeoutError,
    is_busy_message,
    is_offline_message,
)

logger = logging.getLogger("phonefleet.adb")

DEFAULT_COMMAND_TIMEOUT_MS = 10_000
DEFAULT_CAPTURE_TIMEOUT_MS = 3_500
DEVICES_TIMEOUT_MS = 15_000
CONNECT_TIMEOUT_MS = 5_000

_ADB_ERROR_RE = re.compile(r"^(adb: )?error:", re.IGNORECASE | re.MULTILINE)

Command = Union[str, Sequence[str]]
ClosedCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class ReferenceViewOptions:
    """Launch options for the read-only mirror window."""

    window_title: str = "Fleet Mirror"
    max_size: int = 900
    max_fps: int = 30
    bit_rate: str = "4M"
    always_on_top: bool = True
    borderless: bool = True

    def to_args(self) -> List[str]:
        args = [
            "--window-title", self.window_title,
            "--max-size", str(self.max_size),
            "--max-fps", str(self.max_fps),
            "--video-bit-rate", self.bit_rate,
            "--no-audio",
            "--no-control",
        ]
        if self.always_on_top:
            args.append("--always-on-top")
        if self.borderless:
            args.append("--window-borderless")
        return args


class ReferenceView:
    """Handle to a running visual-reference process.

    ``on_closed`` callbacks fire once when the process exits for any
    reason, including the operator closing the window.
    """

    def __init__(self, device_id: str, process: asyncio.subprocess.Process) -> None:
        self.device_id = device_id
        self._process = process
        self._callbacks: List[ClosedCallback] = []
        self._closed = asyncio.Event()
        self._watcher = asyncio.create_task(self._watch())

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    def on_closed(self, callback: ClosedCallback) -> None:
        self._callbacks.append(callback)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _watch(self) -> None:
        code = await self._process.wait()
        logger.info("[%s] Reference view exited (code %s)", self.device_id, code)
        self._closed.set()
        for callback in list(self._callbacks):
            try:
                outcome = callback(self.device_id)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception("[%s] Reference view close callback failed", self.device_id)

    async def close(self, timeout: float = 3.0) -> None:
        if self.closed:
            return
        if self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                self._process.kill()
        await self._closed.wait()


class AdbChannel:
    """Device channel backed by the adb and scrcpy executables."""

    def __init__(self, adb_path: str = "adb", scrcpy_path: str = "scrcpy") -> None:
        self.adb_path = adb_path
        self.scrcpy_path = scrcpy_path

    # ---- process plumbing ----

    async def _run(self, args: Sequence[str], timeout_ms: int, device_id: str = "") -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.adb_path, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ChannelUnavailableError(
                f"ADB binary not found at '{self.adb_path}'", device_id=device_id or None,
            ) from None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            with contextlib.suppress(ProcessLookupError):
                await proc.wait()
            raise DeviceTimeoutError(
                f"adb {' '.join(args[:4])} timed out after {timeout_ms}ms",
                device_id=device_id or None,
            ) from None

        err_text = stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0 and err_text and (
            _ADB_ERROR_RE.search(err_text) or is_offline_message(err_text)
        ):
            if is_offline_message(err_text):
                raise DeviceOfflineError(err_text, device_id=device_id or None)
            if is_busy_message(err_text):
                raise DeviceBusyError(err_text, device_id=device_id or None)
            raise DeviceChannelError(err_text, device_id=device_id or None)
        return stdout

    # ---- device channel ----

    async def execute(self, device_id: str, command: Command,
                      timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS) -> str:
        """Run a shell command on a device and return its stdout."""
        if isinstance(command, str):
            shell_args = [command]
        else:
            shell_args = [shlex.join(list(command))]
        out = await self._run(["-s", device_id, "shell", *shell_args], timeout_ms, device_id)
        return out.decode("utf-8", errors="replace")

    async def capture_frame(self, device_id: str,
                            timeout_ms: int = DEFAULT_CAPTURE_TIMEOUT_MS) -> bytes:
        """Grab one raw PNG screenshot."""
        return await self._run(["-s", device_id, "exec-out", "screencap", "-p"], timeout_ms, device_id)

    async def open_visual_reference(self, device_id: str,
                                    options: Optional[ReferenceViewOptions] = None) -> ReferenceView:
        options = options or ReferenceViewOptions(window_title=f"Mirror - {device_id}")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.scrcpy_path, "-s", device_id, *options.to_args(),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            raise ChannelUnavailableError(
                f"scrcpy binary not found at '{self.scrcpy_path}'", device_id=device_id,
            ) from None
        logger.info("[%s] Reference view started (pid %s)", device_id, proc.pid)
        return ReferenceView(device_id, proc)

    # ---- fleet management ----

    async def start_server(self) -> None:
        await self._run(["start-server"], DEVICES_TIMEOUT_MS)

    async def list_devices(self) -> List[str]:
        """Serials of devices in the ``device`` state."""
        out = (await self._run(["devices"], DEVICES_TIMEOUT_MS)).decode("utf-8", errors="replace")
        return parse_devices_output(out)

    async def connect(self, address: str, timeout_ms: int = CONNECT_TIMEOUT_MS) -> bool:
        out = (await self._run(["connect", address], timeout_ms, address)).decode("utf-8", errors="replace")
        lowered = out.lower()
        ok = "connected to" in lowered and "cannot" not in lowered
        if not ok:
            logger.debug("adb connect %s: %s", address, out.strip())
        return ok


def parse_devices_output(output: str) -> List[str]:
    """Parse ``adb devices`` output into ready serials."""
    serials: List[str] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            serials.append(parts[0])
    return serials

