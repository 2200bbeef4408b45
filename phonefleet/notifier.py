"""
Notifications -- PhoneFleet
===========================

Fan-out of orchestrator events to whoever is listening upstream: the API
websocket, an optional outbound webhook, tests.

Event kinds and payloads:

    job-update            job_id, event, job (snapshot), counts
    worker-update         device_id, event, task, error
    stream-frame          device_id, data (bytes), encoding, size, timestamp
    device-status-change  device_id, online
    mirror-gesture        type, coordinates, device_count, success_count
    mirror-stopped        reason

Job updates go through ``JobUpdateCoalescer``: lifecycle events (started,
completed, cancelled, deleted) are emitted immediately, everything else is
coalesced per job into one emission per batch window carrying the latest
event name and a freshly re-read snapshot.

``WebhookSink`` forwards every non-frame event as JSON to a configured URL
with aiohttp.
"""

from __future__ import annotations

import asyncio
import collections
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from phonefleet.models import JobEvent, TaskCounts, WorkerEvent

logger = logging.getLogger("phonefleet.notifier")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JOB_UPDATE = "job-update"
WORKER_UPDATE = "worker-update"
STREAM_FRAME = "stream-frame"
DEVICE_STATUS = "device-status-change"
MIRROR_GESTURE = "mirror-gesture"
MIRROR_STOPPED = "mirror-stopped"

EVENT_KINDS = frozenset({
    JOB_UPDATE, WORKER_UPDATE, STREAM_FRAME, DEVICE_STATUS, MIRROR_GESTURE, MIRROR_STOPPED,
})

IMMEDIATE_JOB_EVENTS = frozenset({
    JobEvent.STARTED, JobEvent.COMPLETED, JobEvent.CANCELLED, JobEvent.DELETED,
})
TERMINAL_JOB_EVENTS = frozenset({
    JobEvent.COMPLETED, JobEvent.CANCELLED, JobEvent.DELETED,
})

HISTORY_SIZE = 200

Listener = Callable[["FleetEvent"], Any]
SnapshotProvider = Callable[[str], Optional[Tuple[Dict[str, Any], TaskCounts]]]


@dataclass
class FleetEvent:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "timestamp": self.timestamp, **self.payload}


# ===================================================================
# BUS
# ===================================================================


class NotificationBus:
    """Synchronous emit, sync or async listeners.

    Coroutine listeners are scheduled on the running loop; their failures
    are logged, never propagated back into the emitter.
    """

    def __init__(self) -> None:
        self._listeners: List[Tuple[Listener, Optional[Set[str]]]] = []
        self._history: Deque[FleetEvent] = collections.deque(maxlen=HISTORY_SIZE)
        self._pending: Set[asyncio.Task] = set()
        self.emitted = 0

    def subscribe(self, listener: Listener, kinds: Optional[Iterable[str]] = None) -> Callable[[], None]:
        entry = (listener, set(kinds) if kinds else None)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in list(self._history)[-limit:]]

    def emit(self, kind: str, **payload: Any) -> FleetEvent:
        event = FleetEvent(kind=kind, payload=payload)
        self.emitted += 1
        if kind != STREAM_FRAME:
            self._history.append(event)
        for listener, kinds in list(self._listeners):
            if kinds is not None and kind not in kinds:
                continue
            try:
                outcome = listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, kind)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(outcome, kind)
        return event

    def _schedule(self, awaitable: Any, kind: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Dropping async listener for %s: no running loop", kind)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        self._pending.add(task)
        task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener failed: %s", exc)

    async def drain(self) -> None:
        """Wait for in-flight async listeners."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ---- typed helpers ----

    def job_update(self, job_id: str, event: JobEvent, job: Optional[Dict[str, Any]] = None,
                   counts: Optional[TaskCounts] = None) -> FleetEvent:
        return self.emit(
            JOB_UPDATE,
            job_id=job_id,
            event=JobEvent(event).value,
            job=job,
            counts=counts.to_dict() if counts else None,
        )

    def worker_update(self, device_id: str, event: WorkerEvent, task: Optional[Dict[str, Any]] = None,
                      error: Optional[str] = None) -> FleetEvent:
        return self.emit(
            WORKER_UPDATE, device_id=device_id, event=WorkerEvent(event).value, task=task, error=error,
        )

    def stream_frame(self, device_id: str, data: bytes, encoding: str, size: int,
                     timestamp: float) -> FleetEvent:
        return self.emit(
            STREAM_FRAME, device_id=device_id, data=data, encoding=encoding, size=size, timestamp=timestamp,
        )

    def device_status_change(self, device_id: str, online: bool) -> FleetEvent:
        return self.emit(DEVICE_STATUS, device_id=device_id, online=online)

    def mirror_gesture(self, gesture: str, coordinates: Dict[str, Any], device_count: int,
                       success_count: int) -> FleetEvent:
        return self.emit(
            MIRROR_GESTURE, type=gesture, coordinates=coordinates,
            device_count=device_count, success_count=success_count,
        )

    def mirror_stopped(self, reason: str = "stopped") -> FleetEvent:
        return self.emit(MIRROR_STOPPED, reason=reason)


# ===================================================================
# JOB UPDATE COALESCER
# ===================================================================


class JobUpdateCoalescer:
    """Batches non-lifecycle job updates into one emission per job per window."""

    def __init__(self, bus: NotificationBus, snapshot: SnapshotProvider, window: float = 1.0) -> None:
        self.bus = bus
        self._snapshot = snapshot
        self.window = window
        self._pending: Dict[str, JobEvent] = {}
        self._timer: Optional[asyncio.Task] = None

    @property
    def pending_jobs(self) -> List[str]:
        return list(self._pending)

    def notify(self, job_id: str, event: JobEvent) -> None:
        event = JobEvent(event)
        if event in IMMEDIATE_JOB_EVENTS:
            if event in TERMINAL_JOB_EVENTS:
                self._pending.pop(job_id, None)
            self._emit(job_id, event)
            return

        self._pending[job_id] = event
        if self._timer is None or self._timer.done():
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self.flush()
                return
            self._timer = loop.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.window)
        self._timer = None
        self.flush()

    def flush(self) -> int:
        pending, self._pending = self._pending, {}
        for job_id, event in pending.items():
            self._emit(job_id, event)
        return len(pending)

    def _emit(self, job_id: str, event: JobEvent) -> None:
        snap = None
        try:
            snap = self._snapshot(job_id)
        except Exception as exc:
            logger.warning("Snapshot for job %s failed: %s", job_id, exc)
        job, counts = snap if snap else (None, None)
        self.bus.job_update(job_id, event, job, counts)

    async def close(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        self._timer = None
        self.flush()


# ===================================================================
# WEBHOOK SINK
# ===================================================================


def _json_safe(event: FleetEvent) -> Dict[str, Any]:
    data = event.to_dict()
    data.pop("data", None)
    return data


class WebhookSink:
    """POSTs every non-frame event to an HTTP endpoint."""

    def __init__(self, url: str, timeout: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.sent = 0
        self.failed = 0

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    def attach(self, bus: NotificationBus) -> None:
        kinds = EVENT_KINDS - {STREAM_FRAME}
        self._unsubscribe = bus.subscribe(self.deliver, kinds=kinds)
        logger.info("Webhook sink attached -> %s", self.url)

    async def deliver(self, event: FleetEvent) -> bool:
        session = await self._ensure_session()
        try:
            async with session.post(self.url, json=_json_safe(event)) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self.failed += 1
                    logger.warning("Webhook %s returned HTTP %d: %s", self.url, resp.status, body[:200])
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.failed += 1
            logger.warning("Webhook delivery to %s failed: %s", self.url, exc)
            return False
        self.sent += 1
        return True

    async def close(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
