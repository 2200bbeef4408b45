"""
Fleet Orchestrator -- PhoneFleet
================================

Composition root.  Builds every component from one ``FleetSettings`` and
exposes the operator command surface the API and CLI sit on:

    jobs       create / list / get / tasks / pause / resume / cancel / retry /
               delete / cancel-all / delete-all / refill-comments /
               comment-stats
    workers    list / pause / resume / pause-all / resume-all
    devices    scan / reconnect / batch-command / open-app / close-app
    streaming  start / stop / restart / frames / settings / stats
    mirror     start / stop / tap / swipe / long-press / key / text / status

Components receive the store, device channel and notifier at construction;
nothing here is a module-level singleton, so tests build an orchestrator
around an in-memory fake channel and a temporary database.

Startup: recover tasks a previous process left ``running``, attach the
webhook sink, optionally reconnect TCP devices and scan ``adb devices``,
start the scheduler.  Shutdown: mirror, streaming, scheduler (grace window,
flush), notifier drain, webhook, store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from phonefleet.adb import AdbChannel
from phonefleet.config import DeviceInfo, FleetSettings, load_devices
from phonefleet.errors import FleetError, error_text
from phonefleet.job_generator import plan_job
from phonefleet.mirror import MirrorController
from phonefleet.models import JobEvent, JobStatus, TaskCounts, TaskStatus, now_ms
from phonefleet.notifier import JobUpdateCoalescer, NotificationBus, WebhookSink
from phonefleet.scheduler import WorkerPoolScheduler
from phonefleet.store import FleetStore
from phonefleet.streamer import StreamingEngine
from phonefleet.worker import DeviceWorker

logger = logging.getLogger("phonefleet.orchestrator")

BATCH_COMMAND_TIMEOUT_MS = 15_000
RECONNECT_BATCH_SIZE = 10


class FleetOrchestrator:
    """Owns the store, channel, notifier, scheduler, streamer and mirror."""

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        channel: Any = None,
        store: Optional[FleetStore] = None,
        notifier: Optional[NotificationBus] = None,
        devices: Optional[Iterable[DeviceInfo]] = None,
        runners: Optional[Mapping[str, Any]] = None,
        worker_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.settings = settings or FleetSettings.from_env()
        self.store = store or FleetStore(self.settings.db_path)
        self.channel = channel or AdbChannel(self.settings.adb_path, self.settings.scrcpy_path)
        self.notifier = notifier or NotificationBus()
        self.coalescer = JobUpdateCoalescer(
            self.notifier, self._job_snapshot, window=self.settings.notify_batch_window,
        )
        self._runners = runners
        self._worker_options = dict(worker_options or {})

        if devices is None:
            devices = load_devices(self.settings.devices_file)
        self.devices: Dict[str, DeviceInfo] = {d.device_id: d for d in devices if d.device_id}

        self.scheduler = WorkerPoolScheduler(
            self.store,
            self.channel,
            self.notifier,
            self.coalescer,
            tick_interval=self.settings.tick_interval,
            flush_debounce=self.settings.flush_debounce,
            app_package=self.settings.app_package,
            cancel_active_on_shutdown=self.settings.cancel_active_on_shutdown,
        )
        for info in self.devices.values():
            self.scheduler.add_worker(self._make_worker(info))

        self.streamer = StreamingEngine(self.channel, self.notifier)
        self.mirror = MirrorController(
            self.channel,
            self.notifier,
            known_resolutions={
                d.device_id: d.resolution_hint for d in self.devices.values() if d.resolution_hint
            },
        )
        self.webhook = WebhookSink(self.settings.webhook_url) if self.settings.webhook_url else None
        self.started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.started_at = time.monotonic()
        recovered = self.store.recover_interrupted_tasks()
        if self.webhook is not None:
            self.webhook.attach(self.notifier)
        if self.settings.reconnect_on_start:
            try:
                await self.reconnect_devices()
                await self.scan_devices()
            except FleetError as exc:
                logger.warning("Device discovery at startup failed (non-fatal): %s", exc)
        await self.scheduler.start()
        logger.info("Orchestrator started: %d workers, %d tasks recovered",
                    len(self.scheduler.workers), recovered)

    async def shutdown(self) -> None:
        logger.info("Shutting down orchestrator")
        await self.mirror.stop(reason="shutdown")
        await self.streamer.stop()
        await self.scheduler.shutdown()
        await self.notifier.drain()
        if self.webhook is not None:
            await self.webhook.close()
        self.store.close()
        logger.info("Shutdown complete")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _make_worker(self, info: DeviceInfo) -> DeviceWorker:
        return DeviceWorker(
            info.device_id,
            self.channel,
            self.store,
            notifier=self.notifier,
            runners=self._runners,
            resolution_hint=info.resolution_hint,
            app_package=self.settings.app_package,
            **self._worker_options,
        )

    def ensure_worker(self, device_id: str) -> DeviceWorker:
        worker = self.scheduler.get_worker(device_id)
        if worker is None:
            info = self.devices.setdefault(device_id, DeviceInfo(device_id=device_id))
            worker = self._make_worker(info)
            self.scheduler.add_worker(worker)
            logger.info("[%s] Worker registered", device_id)
        return worker

    def has_worker(self, device_id: str) -> bool:
        return self.scheduler.get_worker(device_id) is not None

    def list_workers(self) -> List[Dict[str, Any]]:
        workers = self.scheduler.list_workers()
        for entry in workers:
            info = self.devices.get(entry["device_id"])
            entry["name"] = info.name if info else ""
        return workers

    def pause_worker(self, device_id: str) -> bool:
        return self.scheduler.pause_worker(device_id)

    def resume_worker(self, device_id: str) -> bool:
        return self.scheduler.resume_worker(device_id)

    def pause_all_workers(self) -> int:
        return self.scheduler.pause_all_workers()

    def resume_all_workers(self) -> int:
        return self.scheduler.resume_all_workers()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _job_snapshot(self, job_id: str) -> Optional[Tuple[Dict[str, Any], TaskCounts]]:
        job = self.store.get_job(job_id)
        if job is None:
            return None
        return job.to_dict(), self.store.get_task_counts(job_id)

    def _job_view(self, job_id: str) -> Optional[Dict[str, Any]]:
        snap = self._job_snapshot(job_id)
        if snap is None:
            return None
        job, counts = snap
        return {**job, "counts": counts.to_dict()}

    def has_job(self, job_id: str) -> bool:
        return self.store.get_job(job_id) is not None

    def create_job(self, job_type: Any, config: Optional[Mapping[str, Any]], device_ids: Any) -> Dict[str, Any]:
        """Validate, persist and start a job. Raises JobConfigError on bad input."""
        plan = plan_job(job_type, config, device_ids)
        for device_id in plan.job.device_ids:
            self.ensure_worker(device_id)
        self.store.create_job_bundle(plan.job, plan.tasks, plan.comments, plan.total_devices)
        self.store.update_job_status(plan.job.id, JobStatus.RUNNING, started_at=now_ms())
        self.coalescer.notify(plan.job.id, JobEvent.STARTED)
        logger.info("Job %s started (%s, %d tasks)", plan.job.id, plan.job.type, len(plan.tasks))
        return self._job_view(plan.job.id)

    def list_jobs(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        jobs = self.store.list_jobs(JobStatus(status) if status else None)
        return [{**job.to_dict(), "counts": self.store.get_task_counts(job.id).to_dict()} for job in jobs]

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._job_view(job_id)

    def get_tasks(self, job_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        tasks = self.store.list_tasks(job_id, TaskStatus(status) if status else None)
        return [t.to_dict() for t in tasks]

    def pause_job(self, job_id: str) -> bool:
        return self.scheduler.pause_job(job_id)

    def resume_job(self, job_id: str) -> bool:
        return self.scheduler.resume_job(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        return await self.scheduler.cancel_job(job_id)

    def retry_job(self, job_id: str) -> int:
        return self.scheduler.retry_job(job_id)

    def delete_job(self, job_id: str) -> bool:
        return self.scheduler.delete_job(job_id)

    async def cancel_all_jobs(self) -> int:
        return await self.scheduler.cancel_all_jobs()

    def delete_all_jobs(self) -> int:
        return self.scheduler.delete_all_jobs()

    def refill_comments(self, job_id: str, texts: Iterable[Any]) -> int:
        job = self.store.get_job(job_id)
        if job is None:
            return 0
        if self.store.list_cycles(job_id):
            added = self.store.refill_comments(job_id, texts)
        else:
            added = self.store.create_comment_pool(job_id, texts, len(job.device_ids))
        if added:
            self.coalescer.notify(job_id, JobEvent.COMMENTS_REFILLED)
        return added

    def comment_stats(self, job_id: str) -> Dict[str, Any]:
        return self.store.get_comment_stats(job_id)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def scan_devices(self) -> List[str]:
        """Register a worker for every device ``adb devices`` reports ready."""
        serials = await self.channel.list_devices()
        for serial in serials:
            self.ensure_worker(serial)
        logger.info("Scan found %d devices", len(serials))
        return serials

    async def reconnect_devices(self) -> Dict[str, Any]:
        """``adb connect`` every TCP device of the registry, 10 at a time."""
        addresses = [d.device_id for d in self.devices.values() if d.is_tcp]
        connected: List[str] = []
        for start in range(0, len(addresses), RECONNECT_BATCH_SIZE):
            batch = addresses[start:start + RECONNECT_BATCH_SIZE]
            results = await asyncio.gather(
                *(self.channel.connect(address) for address in batch), return_exceptions=True,
            )
            connected.extend(a for a, ok in zip(batch, results) if ok is True)
        if addresses:
            logger.info("Reconnected %d/%d TCP devices", len(connected), len(addresses))
        return {"attempted": len(addresses), "connected": connected}

    async def batch_command(self, device_ids: Iterable[str], command: str,
                            timeout_ms: int = BATCH_COMMAND_TIMEOUT_MS) -> Dict[str, Dict[str, Any]]:
        """Run one shell command on many devices concurrently."""
        targets = list(dict.fromkeys(device_ids))

        async def _run(device_id: str) -> Dict[str, Any]:
            try:
                output = await self.channel.execute(device_id, command, timeout_ms)
            except FleetError as exc:
                return {"success": False, "error": error_text(exc)}
            return {"success": True, "output": output.strip()}

        results = await asyncio.gather(*(_run(d) for d in targets))
        ok = sum(1 for r in results if r["success"])
        logger.info("Batch command %r: %d/%d ok", command[:60], ok, len(targets))
        return dict(zip(targets, results))

    async def open_app(self, device_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return await self.batch_command(device_ids, f"monkey -p {self.settings.app_package} 1")

    async def close_app(self, device_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return await self.batch_command(device_ids, f"am force-stop {self.settings.app_package}")

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def start_streaming(self, device_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        targets = list(device_ids) if device_ids else list(self.scheduler.workers)
        started = await self.streamer.start(targets)
        return {"started": started, "devices": self.streamer.device_ids}

    async def stop_streaming(self) -> None:
        await self.streamer.stop()

    async def restart_stream(self, device_id: str) -> bool:
        return await self.streamer.restart_device(device_id)

    def get_cached_frames(self) -> Dict[str, Any]:
        return self.streamer.get_all_frames()

    def update_stream_settings(self, **settings: Any) -> Dict[str, int]:
        return self.streamer.update_settings(**settings).to_dict()

    def stream_stats(self) -> Dict[str, Any]:
        return self.streamer.stats()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        uptime = time.monotonic() - self.started_at if self.started_at else 0.0
        active = [j for j in self.store.list_jobs() if j.is_active]
        return {
            "status": "ok",
            "uptime_seconds": round(uptime),
            "scheduler": self.scheduler.stats(),
            "active_jobs": len(active),
            "streaming": self.streamer.is_running,
            "mirror": self.mirror.active,
            "webhook": bool(self.webhook),
            "events_emitted": self.notifier.emitted,
        }
