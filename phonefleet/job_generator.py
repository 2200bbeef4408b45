"""
Job Generator -- PhoneFleet
===========================

Validates operator job requests and expands them into per-device tasks.

Job types:

    super_marketing  one task per device; each task loops ``numWatching``
                     cycles (default 100) over the job's URLs.  Progress is
                     counted in cycles: initial_total = devices x cycles.
    warmup           one task per device, browsing the feed for a duration.
    boost_live       one task per device joining a live stream, staggered by
                     ``deviceIndex x joinDelay``; comments come from the
                     job's rotating comment pool.
    masscomment      ``commentsPerDevice`` tasks per device, comments dealt
                     round-robin from the job's comment list, devices
                     staggered by ``deviceIndex x deviceStartDelay``.

Validation happens before anything is written, so a rejected request leaves
no partial state behind.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from phonefleet.errors import ErrorCode, JobConfigError
from phonefleet.models import Job, JobStatus, JobType, ProgressAccounting, Task, now_ms

logger = logging.getLogger("phonefleet.job_generator")

DEFAULT_WATCH_CYCLES = 100

_job_counter = itertools.count()
_counter_lock = threading.Lock()


def new_job_id() -> str:
    with _counter_lock:
        n = next(_job_counter)
    return f"job_{now_ms()}_{n}"


@dataclass
class JobPlan:
    """A validated job with its tasks, ready to be written in one go."""

    job: Job
    tasks: List[Task] = field(default_factory=list)
    comments: List[str] = field(default_factory=list)

    @property
    def total_devices(self) -> int:
        return len(self.job.device_ids)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def parse_job_type(value: Any) -> JobType:
    try:
        return JobType(value)
    except ValueError:
        raise JobConfigError(f"Unknown job type: {value!r}", code=ErrorCode.E4001) from None


def validate_devices(device_ids: Any) -> List[str]:
    if not isinstance(device_ids, (list, tuple)) or not device_ids:
        raise JobConfigError("deviceIds must be a non-empty list", code=ErrorCode.E4002)
    cleaned: List[str] = []
    for device_id in device_ids:
        if not isinstance(device_id, str) or not device_id.strip():
            raise JobConfigError(f"Invalid device id: {device_id!r}", code=ErrorCode.E4002)
        device_id = device_id.strip()
        if device_id in cleaned:
            raise JobConfigError(f"Duplicate device id: {device_id}", code=ErrorCode.E4002)
        cleaned.append(device_id)
    return cleaned


def _positive_int(config: Mapping[str, Any], key: str, default: int, allow_zero: bool = False) -> int:
    value = config.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise JobConfigError(f"{key} must be an integer, got {value!r}")
    value = int(value)
    if value < 0 or (value == 0 and not allow_zero):
        raise JobConfigError(f"{key} must be {'>= 0' if allow_zero else '> 0'}, got {value}")
    return value


def _text_list(config: Mapping[str, Any], key: str) -> List[str]:
    raw = config.get(key) or []
    if isinstance(raw, str):
        raw = raw.splitlines()
    if not isinstance(raw, (list, tuple)):
        raise JobConfigError(f"{key} must be a list of strings")
    return [str(t).strip() for t in raw if t is not None and str(t).strip()]


# ---------------------------------------------------------------------------
# Task generation
# ---------------------------------------------------------------------------


def _task(job_id: str, index: int, job_type: JobType, device_id: str, config: Dict[str, Any]) -> Task:
    return Task(
        id=f"{job_id}_task_{index}",
        job_id=job_id,
        type=job_type.value,
        assigned_device=device_id,
        config=config,
    )


def _super_marketing(job_id: str, config: Dict[str, Any], devices: Sequence[str]) -> List[Task]:
    cycles = _positive_int(config, "numWatching", DEFAULT_WATCH_CYCLES)
    return [
        _task(job_id, i, JobType.SUPER_MARKETING, device, {**config, "totalCycles": cycles, "jobId": job_id})
        for i, device in enumerate(devices)
    ]


def _warmup(job_id: str, config: Dict[str, Any], devices: Sequence[str]) -> List[Task]:
    _positive_int(config, "duration", 3600)
    return [
        _task(job_id, i, JobType.WARMUP, device, {**config, "jobId": job_id})
        for i, device in enumerate(devices)
    ]


def _boost_live(job_id: str, config: Dict[str, Any], devices: Sequence[str]) -> List[Task]:
    _positive_int(config, "duration", 1800)
    _positive_int(config, "joinDelay", 0, allow_zero=True)
    if not config.get("liveUrl") and not config.get("username"):
        raise JobConfigError("boost_live needs liveUrl or username")
    return [
        _task(job_id, i, JobType.BOOST_LIVE, device, {**config, "jobId": job_id, "deviceIndex": i})
        for i, device in enumerate(devices)
    ]


def _masscomment(job_id: str, config: Dict[str, Any], devices: Sequence[str]) -> List[Task]:
    comments = _text_list(config, "comments")
    if not comments:
        raise JobConfigError("masscomment needs a non-empty comments list")
    if not config.get("url"):
        raise JobConfigError("masscomment needs a url")
    per_device = _positive_int(config, "commentsPerDevice", 1)
    start_delay = _positive_int(config, "deviceStartDelay", 0, allow_zero=True)

    tasks: List[Task] = []
    counter = 0
    for device_index, device in enumerate(devices):
        for _ in range(per_device):
            task_config = {
                "url": config["url"],
                "comment": comments[counter % len(comments)],
                "idleDelayMin": config.get("idleDelayMin", 2),
                "idleDelayMax": config.get("idleDelayMax", 5),
                "scrollCount": config.get("scrollCount", 5),
                "scrollDelayMin": config.get("scrollDelayMin", 2),
                "scrollDelayMax": config.get("scrollDelayMax", 5),
                "deviceStartDelay": device_index * start_delay,
                "deviceIndex": device_index,
                "jobId": job_id,
            }
            tasks.append(_task(job_id, counter, JobType.MASSCOMMENT, device, task_config))
            counter += 1
    return tasks


_GENERATORS = {
    JobType.SUPER_MARKETING: _super_marketing,
    JobType.WARMUP: _warmup,
    JobType.BOOST_LIVE: _boost_live,
    JobType.MASSCOMMENT: _masscomment,
}


def generate_tasks(job_id: str, job_type: Any, config: Mapping[str, Any], device_ids: Sequence[str]) -> List[Task]:
    kind = parse_job_type(job_type)
    return _GENERATORS[kind](job_id, dict(config), list(device_ids))


def plan_job(
    job_type: Any,
    config: Optional[Mapping[str, Any]],
    device_ids: Any,
    job_id: Optional[str] = None,
) -> JobPlan:
    """Validate a request and build the job, its tasks and its comment pool.

    Raises JobConfigError for anything malformed.
    """
    kind = parse_job_type(job_type)
    devices = validate_devices(device_ids)
    if config is None:
        config = {}
    if not isinstance(config, Mapping):
        raise JobConfigError("config must be an object")
    config = dict(config)
    job_id = job_id or new_job_id()

    tasks = _GENERATORS[kind](job_id, config, devices)
    if kind.accounting is ProgressAccounting.CYCLE_INCREMENT:
        initial_total = len(devices) * _positive_int(config, "numWatching", DEFAULT_WATCH_CYCLES)
    else:
        initial_total = len(tasks)

    comments: List[str] = []
    if kind is JobType.BOOST_LIVE:
        comments = _text_list(config, "comments")

    job = Job(
        id=job_id,
        type=kind.value,
        status=JobStatus.PENDING,
        config=config,
        device_ids=devices,
        initial_total=initial_total,
    )
    logger.info(
        "Planned %s job %s: %d devices, %d tasks, initial_total=%d",
        kind.value, job_id, len(devices), len(tasks), initial_total,
    )
    return JobPlan(job=job, tasks=tasks, comments=comments)
