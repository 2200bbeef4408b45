"""
Error Taxonomy -- PhoneFleet
============================

Structured exceptions and error classification for the fleet orchestrator.

Every failure inside the orchestration layer belongs to one of five families,
each with its own code range:

    E1xxx -- Device channel (adb timeouts, busy/offline devices)
    E2xxx -- Task-level failures (driven app misbehaved, element missing)
    E3xxx -- Store integrity (write to a deleted job, closed store)
    E4xxx -- Configuration (unknown job type, malformed device list)
    E5xxx -- Mirror session errors

Nothing in the capture loops, scheduler tick or dispatched tasks lets these
escape: they are converted into task error text, failure counters and
notification events.  ``classify_error`` maps arbitrary exceptions (including
raw ``asyncio.TimeoutError`` or ``OSError`` from subprocess calls) onto the
same taxonomy so callers can decide between retry, task failure and ignore.

Usage:
    from phonefleet.errors import classify_error, DeviceOfflineError

    try:
        await channel.execute(device_id, "wm size", 3000)
    except Exception as exc:
        ctx = classify_error(exc, module="worker", operation="detect_display")
        if ctx.retryable:
            ...
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===================================================================
# ENUMS
# ===================================================================


class ErrorCode(str, Enum):
    """Structured error codes for the fleet.

    Ranges:
        E1xxx -- Device channel errors
        E2xxx -- Task errors
        E3xxx -- Store errors
        E4xxx -- Configuration errors
        E5xxx -- Mirror errors
        E9xxx -- Internal errors
    """

    # Device channel E1xxx
    E1001 = "DEVICE_TIMEOUT"
    E1002 = "DEVICE_BUSY"
    E1003 = "DEVICE_OFFLINE"
    E1004 = "DEVICE_COMMAND_FAILED"
    E1005 = "CHANNEL_UNAVAILABLE"

    # Task E2xxx
    E2001 = "TASK_FAILED"
    E2002 = "TASK_CANCELLED"
    E2003 = "ELEMENT_NOT_FOUND"
    E2004 = "CAPTCHA_BLOCKED"

    # Store E3xxx
    E3001 = "STORE_INTEGRITY"
    E3002 = "STORE_CLOSED"
    E3003 = "STORE_OPEN_FAILED"

    # Configuration E4xxx
    E4001 = "UNKNOWN_JOB_TYPE"
    E4002 = "INVALID_DEVICE_LIST"
    E4003 = "INVALID_JOB_CONFIG"

    # Mirror E5xxx
    E5001 = "MIRROR_NOT_ACTIVE"
    E5002 = "MIRROR_VIEW_FAILED"

    # Internal E9xxx
    E9001 = "INTERNAL_ERROR"


class ErrorCategory(str, Enum):
    """The four handling families plus a catch-all."""
    TRANSIENT = "transient"
    TASK = "task"
    STORE = "store"
    CONFIG = "config"
    INTERNAL = "internal"


RETRYABLE_CODES: Set[ErrorCode] = {
    ErrorCode.E1001,
    ErrorCode.E1002,
}

CATEGORY_BY_RANGE: Dict[str, ErrorCategory] = {
    "E1": ErrorCategory.TRANSIENT,
    "E2": ErrorCategory.TASK,
    "E3": ErrorCategory.STORE,
    "E4": ErrorCategory.CONFIG,
    "E5": ErrorCategory.TASK,
    "E9": ErrorCategory.INTERNAL,
}

# Substrings adb prints when the target is gone rather than slow.
OFFLINE_MARKERS = ("offline", "not found", "no devices")
# Substrings adb prints when the device is attached but cannot take commands yet.
BUSY_MARKERS = ("busy", "still authorizing", "still connecting")


# ===================================================================
# EXCEPTIONS
# ===================================================================


class FleetError(Exception):
    """Base class for every error raised by the orchestrator."""

    code: ErrorCode = ErrorCode.E9001

    def __init__(self, message: str = "", *, device_id: Optional[str] = None,
                 job_id: Optional[str] = None) -> None:
        super().__init__(message or self.code.value)
        self.device_id = device_id
        self.job_id = job_id

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def category(self) -> ErrorCategory:
        return CATEGORY_BY_RANGE.get(self.code.name[:2], ErrorCategory.INTERNAL)


# --- Device channel -------------------------------------------------------

class DeviceChannelError(FleetError):
    code = ErrorCode.E1004


class DeviceTimeoutError(DeviceChannelError):
    code = ErrorCode.E1001


class DeviceBusyError(DeviceChannelError):
    code = ErrorCode.E1002


class DeviceOfflineError(DeviceChannelError):
    code = ErrorCode.E1003


class ChannelUnavailableError(DeviceChannelError):
    """The adb / scrcpy executable itself could not be started."""
    code = ErrorCode.E1005


# --- Task -----------------------------------------------------------------

class TaskFailedError(FleetError):
    code = ErrorCode.E2001


class TaskCancelledError(FleetError):
    code = ErrorCode.E2002


class ElementNotFoundError(TaskFailedError):
    code = ErrorCode.E2003


class CaptchaBlockedError(TaskFailedError):
    code = ErrorCode.E2004


# --- Store ----------------------------------------------------------------

class StoreIntegrityError(FleetError):
    code = ErrorCode.E3001


class StoreClosedError(FleetError):
    code = ErrorCode.E3002


class StoreOpenError(FleetError):
    """The database file could not be opened. Fatal at startup."""
    code = ErrorCode.E3003


# --- Configuration --------------------------------------------------------

class JobConfigError(FleetError):
    code = ErrorCode.E4003

    def __init__(self, message: str = "", *, code: Optional[ErrorCode] = None,
                 **kwargs: Any) -> None:
        if code is not None:
            self.code = code
        super().__init__(message, **kwargs)


# --- Mirror ---------------------------------------------------------------

class MirrorNotActiveError(FleetError):
    code = ErrorCode.E5001


class MirrorViewError(FleetError):
    code = ErrorCode.E5002


# ===================================================================
# ERROR CONTEXT
# ===================================================================


@dataclass
class ErrorContext:
    """Classified view of an exception, used to pick a handling strategy."""

    code: ErrorCode
    category: ErrorCategory
    message: str
    module: str = "unknown"
    operation: str = "unknown"
    retryable: bool = False
    timestamp: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = _now_iso()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["code"] = self.code.name
        d["code_value"] = self.code.value
        d["category"] = self.category.value
        return d

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.code.value}: {self.message} (module={self.module}, op={self.operation})"


def is_offline_message(message: str) -> bool:
    """True if an adb error message means the device is disconnected."""
    lowered = message.lower()
    return any(marker in lowered for marker in OFFLINE_MARKERS)


def is_busy_message(message: str) -> bool:
    """True if an adb error message means the device is temporarily unusable."""
    lowered = message.lower()
    return any(marker in lowered for marker in BUSY_MARKERS)


def classify_error(
    exception: BaseException,
    module: str = "unknown",
    operation: str = "unknown",
    metadata: Optional[Dict[str, Any]] = None,
) -> ErrorContext:
    """Map a raw exception to a structured ErrorContext.

    Fleet exceptions carry their own code.  Everything else is inspected by
    type name and message, falling back to E9001.
    """
    exc_type = type(exception).__name__
    exc_msg = str(exception).lower()
    meta = dict(metadata or {})
    meta["exception_type"] = exc_type

    if isinstance(exception, FleetError):
        code = exception.code
    elif isinstance(exception, TimeoutError) or exc_type == "TimeoutError":
        code = ErrorCode.E1001
    elif "timeout" in exc_msg or "timed out" in exc_msg:
        code = ErrorCode.E1001
    elif is_offline_message(exc_msg):
        code = ErrorCode.E1003
    elif is_busy_message(exc_msg):
        code = ErrorCode.E1002
    elif exc_type == "FileNotFoundError":
        code = ErrorCode.E1005
    elif "captcha" in exc_msg:
        code = ErrorCode.E2004
    elif "not found" in exc_msg and "element" in exc_msg:
        code = ErrorCode.E2003
    elif exc_type in ("IntegrityError", "OperationalError") or "foreign key" in exc_msg:
        code = ErrorCode.E3001
    else:
        code = ErrorCode.E9001

    category = CATEGORY_BY_RANGE.get(code.name[:2], ErrorCategory.INTERNAL)
    return ErrorContext(
        code=code,
        category=category,
        message=str(exception) or exc_type,
        module=module,
        operation=operation,
        retryable=code in RETRYABLE_CODES,
        metadata=meta,
    )


def error_text(exception: BaseException) -> str:
    """Short human-readable text stored on failed tasks."""
    message = str(exception).strip()
    if not message:
        return type(exception).__name__
    return message[:500]


__all__: List[str] = [
    "ErrorCode",
    "ErrorCategory",
    "ErrorContext",
    "FleetError",
    "DeviceChannelError",
    "DeviceTimeoutError",
    "DeviceBusyError",
    "DeviceOfflineError",
    "ChannelUnavailableError",
    "TaskFailedError",
    "TaskCancelledError",
    "ElementNotFoundError",
    "CaptchaBlockedError",
    "StoreIntegrityError",
    "StoreClosedError",
    "StoreOpenError",
    "JobConfigError",
    "MirrorNotActiveError",
    "MirrorViewError",
    "classify_error",
    "is_busy_message",
    "error_text",
    "is_offline_message",
]
