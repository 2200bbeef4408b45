"""
Data Models -- PhoneFleet
=========================

Enums and dataclasses shared by the store, scheduler, workers and API.

Timestamps are integer epoch milliseconds throughout, matching the SQLite
columns they are persisted in.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


# ===================================================================
# ENUMS
# ===================================================================


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    PAUSED = "paused"


class ProgressAccounting(str, Enum):
    """How finished work turns into job progress.

    TASK_COUNT      -- one task is one unit; counters mirror task counts.
    CYCLE_INCREMENT -- one task repeats many cycles; task bodies add to
                       completed_count themselves, flushes only touch
                       failed_count.
    """
    TASK_COUNT = "task_count"
    CYCLE_INCREMENT = "cycle_increment"


class JobType(str, Enum):
    SUPER_MARKETING = "super_marketing"
    WARMUP = "warmup"
    BOOST_LIVE = "boost_live"
    MASSCOMMENT = "masscomment"

    @property
    def accounting(self) -> ProgressAccounting:
        if self is JobType.SUPER_MARKETING:
            return ProgressAccounting.CYCLE_INCREMENT
        return ProgressAccounting.TASK_COUNT


class CommentStatus(str, Enum):
    OK = "ok"
    ALREADY_DONE = "already_done"
    WAITING = "waiting"
    EXHAUSTED = "exhausted"


class JobEvent(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    TASK_COMPLETED = "task_completed"
    COMPLETED = "completed"
    PAUSED = "paused"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"
    DELETED = "deleted"
    COMMENTS_REFILLED = "comments_refilled"


class WorkerEvent(str, Enum):
    BUSY = "busy"
    IDLE = "idle"
    MANUALLY_PAUSED = "manually_paused"
    MANUALLY_RESUMED = "manually_resumed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)


# ===================================================================
# DATA CLASSES
# ===================================================================


@dataclass
class TaskCounts:
    completed: int = 0
    failed: int = 0
    pending: int = 0
    running: int = 0
    cancelled: int = 0

    @property
    def outstanding(self) -> int:
        return self.pending + self.running

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.pending + self.running + self.cancelled

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class Job:
    """A persisted job row."""

    id: str
    type: str
    status: JobStatus = JobStatus.PENDING
    config: Dict[str, Any] = field(default_factory=dict)
    device_ids: List[str] = field(default_factory=list)
    initial_total: int = 0
    completed_count: int = 0
    failed_count: int = 0
    created_at: int = field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None

    @property
    def progress(self) -> int:
        if self.initial_total <= 0:
            return 0
        return round(self.completed_count / self.initial_total * 100)

    @property
    def accounting(self) -> ProgressAccounting:
        try:
            return JobType(self.type).accounting
        except ValueError:
            return ProgressAccounting.TASK_COUNT

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["progress"] = self.progress
        return d


@dataclass
class Task:
    """One device's share of a job."""

    id: str
    job_id: str
    type: str
    assigned_device: str
    config: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    completed_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class CommentCycle:
    id: int
    job_id: str
    cycle_number: int
    devices_commented: List[str] = field(default_factory=list)
    total_devices: int = 0
    last_comment_at: int = 0
    started_at: int = 0
    completed_at: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "devices_commented": len(self.devices_commented),
            "devices": list(self.devices_commented),
            "total_devices": self.total_devices,
            "is_complete": self.is_complete,
            "started_at": self.started_at,
            "last_comment_at": self.last_comment_at,
        }


@dataclass
class CommentResult:
    """Outcome of one consumption attempt against a job's comment pool."""

    status: CommentStatus
    text: Optional[str] = None
    wait_seconds: int = 0
    cycle_number: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is CommentStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class ScreenGeometry:
    """Display resolution plus the distinct touch-input coordinate range."""

    width: int = 1080
    height: int = 2340
    touch_width: int = 1080
    touch_height: int = 1755
    density: int = 420

    def to_touch(self, x: float, y: float) -> tuple:
        tx = round(x * self.touch_width / self.width) if self.width else round(x)
        ty = round(y * self.touch_height / self.height) if self.height else round(y)
        return tx, ty

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class TaskOutcome:
    """What a worker hands back to the scheduler after running a task."""

    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
