"""
Worker Pool Scheduler -- PhoneFleet
===================================

Ticks once per second and hands pending tasks to idle device workers.

Per tick, for every available worker (idle and not manually paused) the
running jobs that include its device are scanned in order and the first
claimable task is dispatched.  Dispatch is fire-and-forget: the worker is
marked busy before the tick moves on and stays busy until its task body
returns, so a worker never holds two tasks.

When a task returns:

    1. its outcome is written to the store (completed / failed)
    2. the owning job joins the pending-flush set
    3. a short debounce timer flushes the set: counts are re-read from the
       store, job counters are written according to the job type's
       accounting strategy, and either
         - the job transitions to completed (nothing pending or running)
           with an immediate notification, or
         - a coalesced task_completed notification is queued

Task bodies of cycle-counted jobs report progress through their worker while
still running; each report queues a coalesced ``progress`` notification.

Job control (pause / resume / cancel / retry / delete) and worker control
(manual pause / resume, all or one) live here as well, since both change
what the next tick is allowed to dispatch.

Shutdown: stop ticking, wait up to 20 x 0.1 s for busy workers, force-idle
the rest, cancel their dispatch coroutines (their tasks stay ``running`` in
the store and are recovered on next start), flush, close the coalescer.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Set

from phonefleet.config import DEFAULT_APP_PACKAGE
from phonefleet.errors import FleetError, StoreClosedError
from phonefleet.models import (
    ACTIVE_JOB_STATUSES,
    Job,
    JobEvent,
    JobStatus,
    Task,
    TaskOutcome,
    WorkerEvent,
    now_ms,
)
from phonefleet.notifier import JobUpdateCoalescer, NotificationBus
from phonefleet.worker import DeviceWorker

logger = logging.getLogger("phonefleet.scheduler")

TICK_INTERVAL = 1.0
FLUSH_DEBOUNCE = 0.5
SHUTDOWN_POLLS = 20
SHUTDOWN_POLL_INTERVAL = 0.1
FORCE_STOP_TIMEOUT_MS = 5_000

# Store errors a tick or a dispatch completion survives.
_STORE_ERRORS = (FleetError, sqlite3.Error)


class WorkerPoolScheduler:
    """Dispatches store tasks to device workers and aggregates progress."""

    def __init__(
        self,
        store: Any,
        channel: Any,
        notifier: NotificationBus,
        coalescer: JobUpdateCoalescer,
        workers: Optional[Iterable[DeviceWorker]] = None,
        tick_interval: float = TICK_INTERVAL,
        flush_debounce: float = FLUSH_DEBOUNCE,
        app_package: str = DEFAULT_APP_PACKAGE,
        cancel_active_on_shutdown: bool = False,
        shutdown_polls: int = SHUTDOWN_POLLS,
        shutdown_poll_interval: float = SHUTDOWN_POLL_INTERVAL,
    ) -> None:
        self.store = store
        self.channel = channel
        self.notifier = notifier
        self.coalescer = coalescer
        self.tick_interval = tick_interval
        self.flush_debounce = flush_debounce
        self.app_package = app_package
        self.cancel_active_on_shutdown = cancel_active_on_shutdown
        self.shutdown_polls = shutdown_polls
        self.shutdown_poll_interval = shutdown_poll_interval

        self.workers: Dict[str, DeviceWorker] = {}
        for worker in workers or []:
            self.add_worker(worker)

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._dispatches: Set[asyncio.Task] = set()
        self._pending_jobs: Set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self.dispatched = 0
        self.flushes = 0

    # ------------------------------------------------------------------
    # Worker registry
    # ------------------------------------------------------------------

    def add_worker(self, worker: DeviceWorker) -> None:
        worker.on_progress = self._job_progressed
        self.workers[worker.device_id] = worker

    def remove_worker(self, device_id: str) -> Optional[DeviceWorker]:
        return self.workers.pop(device_id, None)

    def get_worker(self, device_id: str) -> Optional[DeviceWorker]:
        return self.workers.get(device_id)

    def list_workers(self) -> List[Dict[str, Any]]:
        return [w.to_dict() for w in self.workers.values()]

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def busy_workers(self) -> List[DeviceWorker]:
        return [w for w in self.workers.values() if w.current_task is not None]

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("Scheduler is already running.")
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._scheduler_loop())
        logger.info("Scheduler started with %d workers, tick %.1fs", len(self.workers), self.tick_interval)

    async def _scheduler_loop(self) -> None:
        try:
            while self._running:
                try:
                    self.tick()
                except Exception as exc:
                    logger.error("Error in scheduler tick: %s", exc)
                await asyncio.sleep(self.tick_interval)
        except asyncio.CancelledError:
            logger.info("Scheduler loop cancelled.")
            raise

    def tick(self) -> int:
        """Dispatch at most one task to every available worker.

        Returns the number of tasks dispatched.  Must run inside the event
        loop.
        """
        available = [w for w in self.workers.values() if w.is_available()]
        if not available:
            return 0
        try:
            running_jobs = self.store.list_jobs(JobStatus.RUNNING)
        except _STORE_ERRORS as exc:
            logger.warning("Tick skipped, store unavailable: %s", exc)
            return 0
        if not running_jobs:
            return 0

        dispatched = 0
        for worker in available:
            for job in running_jobs:
                if worker.device_id not in job.device_ids:
                    continue
                try:
                    task = self.store.claim_next_task(job.id, worker.device_id)
                except _STORE_ERRORS as exc:
                    logger.warning("[%s] Claim on job %s failed: %s", worker.device_id, job.id, exc)
                    continue
                if task is None:
                    continue
                self._dispatch(worker, task)
                dispatched += 1
                break
        return dispatched

    def _dispatch(self, worker: DeviceWorker, task: Task) -> None:
        worker.mark_busy(task)
        self.dispatched += 1
        self.notifier.worker_update(worker.device_id, WorkerEvent.BUSY, task=task.to_dict())
        logger.info("[%s] Dispatching %s (%s)", worker.device_id, task.id, task.type)
        running = asyncio.create_task(self._run_task(worker, task))
        self._dispatches.add(running)
        running.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatches.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Dispatch raised unexpected error: %s", exc)

    async def _run_task(self, worker: DeviceWorker, task: Task) -> None:
        outcome: Optional[TaskOutcome] = None
        try:
            outcome = await worker.execute_task(task)
            self._record_outcome(task, outcome)
        finally:
            worker.mark_finished()
            self.notifier.worker_update(
                worker.device_id, WorkerEvent.IDLE,
                task=task.to_dict(),
                error=outcome.error if outcome and not outcome.success else None,
            )
            self._pending_jobs.add(task.job_id)
            self._schedule_flush()

    def _record_outcome(self, task: Task, outcome: TaskOutcome) -> None:
        if outcome.cancelled:
            return
        try:
            if outcome.success:
                written = self.store.complete_task(task.id, outcome.result)
            else:
                written = self.store.fail_task(task.id, outcome.error or "Task failed")
        except _STORE_ERRORS as exc:
            logger.warning("Result of %s dropped: %s", task.id, exc)
            return
        if not written:
            logger.debug("Task %s no longer running, outcome ignored", task.id)

    # ------------------------------------------------------------------
    # Debounced flush
    # ------------------------------------------------------------------

    def _job_progressed(self, job_id: str) -> None:
        self.coalescer.notify(job_id, JobEvent.PROGRESS)

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.flush_debounce)
        self._flush_task = None
        self.flush()

    def flush(self) -> int:
        """Write aggregate progress for every pending job. Returns jobs flushed."""
        pending, self._pending_jobs = self._pending_jobs, set()
        flushed = 0
        for job_id in pending:
            try:
                if self._flush_job(job_id):
                    flushed += 1
            except StoreClosedError:
                logger.warning("Flush of %s skipped: store closed", job_id)
            except _STORE_ERRORS as exc:
                logger.warning("Flush of %s failed: %s", job_id, exc)
        if flushed:
            self.flushes += 1
        return flushed

    def _flush_job(self, job_id: str) -> bool:
        synced = self.store.sync_job_counters(job_id)
        if synced is None:
            return False
        job, counts = synced

        if job.status is JobStatus.CANCELLED:
            return True
        if counts.outstanding == 0 and job.status in (JobStatus.RUNNING, JobStatus.PAUSED):
            self.store.update_job_status(job_id, JobStatus.COMPLETED, completed_at=now_ms())
            logger.info("Job %s completed: %d ok, %d failed", job_id, counts.completed, counts.failed)
            self.coalescer.notify(job_id, JobEvent.COMPLETED)
        else:
            self.coalescer.notify(job_id, JobEvent.TASK_COMPLETED)
        return True

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    def _get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get_job(job_id)

    def pause_job(self, job_id: str) -> bool:
        job = self._get_job(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            return False
        self.store.update_job_status(job_id, JobStatus.PAUSED)
        self.coalescer.notify(job_id, JobEvent.PAUSED)
        logger.info("Job %s paused", job_id)
        return True

    def resume_job(self, job_id: str) -> bool:
        job = self._get_job(job_id)
        if job is None or job.status is not JobStatus.PAUSED:
            return False
        self.store.update_job_status(job_id, JobStatus.RUNNING)
        self.coalescer.notify(job_id, JobEvent.RESUMED)
        logger.info("Job %s resumed", job_id)
        return True

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a job and force-stop the app on its devices.

        In-flight task bodies stop at their next checkpoint.  Returns False
        when the job is missing or already cancelled.
        """
        job = self._get_job(job_id)
        if job is None or not self.store.cancel_job(job_id):
            return False
        self._pending_jobs.discard(job_id)

        for worker in self.workers.values():
            if worker.current_task is not None and worker.current_task.job_id == job_id:
                worker.resume()

        results = await asyncio.gather(
            *(self._force_stop(device_id) for device_id in job.device_ids),
            return_exceptions=True,
        )
        stopped = sum(1 for r in results if r is True)
        logger.info("Job %s cancelled, app stopped on %d/%d devices", job_id, stopped, len(job.device_ids))
        self.coalescer.notify(job_id, JobEvent.CANCELLED)
        return True

    async def _force_stop(self, device_id: str) -> bool:
        try:
            await self.channel.execute(device_id, f"am force-stop {self.app_package}", FORCE_STOP_TIMEOUT_MS)
        except FleetError as exc:
            logger.debug("[%s] force-stop failed: %s", device_id, exc)
            return False
        return True

    async def cancel_all_jobs(self) -> int:
        cancelled = 0
        for job in self.store.list_jobs():
            if job.status in ACTIVE_JOB_STATUSES and await self.cancel_job(job.id):
                cancelled += 1
        return cancelled

    def retry_job(self, job_id: str) -> int:
        """Reset failed tasks to pending and put the job back to running."""
        reset = self.store.retry_job(job_id)
        if reset == 0:
            return 0
        self.coalescer.notify(job_id, JobEvent.RETRYING)
        logger.info("Job %s retrying %d failed tasks", job_id, reset)
        return reset

    def delete_job(self, job_id: str) -> bool:
        if not self.store.delete_job(job_id):
            return False
        self._pending_jobs.discard(job_id)
        self.coalescer.notify(job_id, JobEvent.DELETED)
        return True

    def delete_all_jobs(self) -> int:
        job_ids = [job.id for job in self.store.list_jobs()]
        deleted = self.store.delete_all_jobs()
        self._pending_jobs.clear()
        for job_id in job_ids:
            self.coalescer.notify(job_id, JobEvent.DELETED)
        return deleted

    # ------------------------------------------------------------------
    # Worker control
    # ------------------------------------------------------------------

    def pause_worker(self, device_id: str) -> bool:
        worker = self.workers.get(device_id)
        if worker is None:
            return False
        worker.pause_manually()
        self.notifier.worker_update(device_id, WorkerEvent.MANUALLY_PAUSED)
        return True

    def resume_worker(self, device_id: str) -> bool:
        worker = self.workers.get(device_id)
        if worker is None:
            return False
        worker.resume_manually()
        self.notifier.worker_update(device_id, WorkerEvent.MANUALLY_RESUMED)
        return True

    def pause_all_workers(self) -> int:
        return sum(1 for device_id in list(self.workers) if self.pause_worker(device_id))

    def resume_all_workers(self) -> int:
        return sum(1 for device_id in list(self.workers) if self.resume_worker(device_id))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self.cancel_active_on_shutdown:
            cancelled = await self.cancel_all_jobs()
            logger.info("Cancelled %d active jobs on shutdown", cancelled)

        for _ in range(self.shutdown_polls):
            if not self.busy_workers:
                break
            await asyncio.sleep(self.shutdown_poll_interval)

        leftover = self.busy_workers
        if leftover:
            logger.warning("Force-idling %d busy workers: %s",
                           len(leftover), ", ".join(w.device_id for w in leftover))
            for worker in leftover:
                worker.mark_finished()

        for running in list(self._dispatches):
            running.cancel()
        if self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        self.flush()
        await self.coalescer.close()
        logger.info("Scheduler stopped.")

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "workers": len(self.workers),
            "busy": len(self.busy_workers),
            "available": sum(1 for w in self.workers.values() if w.is_available()),
            "manually_paused": sum(1 for w in self.workers.values() if w.manually_paused),
            "in_flight": len(self._dispatches),
            "pending_flush": len(self._pending_jobs),
            "dispatched": self.dispatched,
            "flushes": self.flushes,
        }
