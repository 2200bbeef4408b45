"""
Fleet Store -- PhoneFleet
=========================

Durable SQLite store for jobs, their generated tasks, and the rotating
comment pool used by live-boost jobs.

Tables (column names are a stable boundary; fixtures rely on them):

    jobs           id, type, status, config, device_ids, initial_total,
                   completed_count, failed_count, created_at, started_at,
                   completed_at
    tasks          id, job_id, type, config, assigned_device, status,
                   result, error, created_at, completed_at
    comment_pool   id, job_id, text, used, used_at, used_by_device
    comment_cycle  id, job_id, cycle_number, devices_commented,
                   total_devices, last_comment_at, started_at, completed_at

Concurrency:
    Each call opens its own connection.  Every mutating call holds the
    store lock and runs inside ``BEGIN IMMEDIATE``, so claims and comment
    consumption are atomic against other threads and against other
    processes sharing the database file.  Reads take no lock.

Comment cycles:
    A job's pool entries are consumed once each, oldest first, for the whole
    life of the job.  Consumption is additionally rationed per cycle: every
    participating device may take one entry per cycle, and consecutive
    entries are spaced by the caller's delay.  When every expected device
    has consumed, the cycle seals and the next one opens empty; the pool
    itself is never reset.

Usage:
    store = FleetStore("data/fleet.db")
    task = store.claim_next_task(job_id, "R58M123ABC")
    if task:
        store.complete_task(task.id, {"likes": 3})
"""

from __future__ import annotations

import contextlib
import json
import logging
import math
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from phonefleet.errors import StoreClosedError, StoreIntegrityError, StoreOpenError
from phonefleet.models import (
    CommentCycle,
    CommentResult,
    CommentStatus,
    Job,
    JobStatus,
    ProgressAccounting,
    Task,
    TaskCounts,
    TaskStatus,
    now_ms,
)

logger = logging.getLogger("phonefleet.store")

# Seconds a call waits on another process holding the write lock.
BUSY_TIMEOUT = 2.0

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        config TEXT NOT NULL DEFAULT '{}',
        device_ids TEXT NOT NULL DEFAULT '[]',
        initial_total INTEGER NOT NULL DEFAULT 0,
        completed_count INTEGER NOT NULL DEFAULT 0,
        failed_count INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        started_at INTEGER,
        completed_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        type TEXT NOT NULL,
        config TEXT NOT NULL DEFAULT '{}',
        assigned_device TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        result TEXT,
        error TEXT,
        created_at INTEGER NOT NULL,
        completed_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment_pool (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        text TEXT NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        used_at INTEGER,
        used_by_device TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment_cycle (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        cycle_number INTEGER NOT NULL DEFAULT 1,
        devices_commented TEXT NOT NULL DEFAULT '[]',
        total_devices INTEGER NOT NULL DEFAULT 0,
        last_comment_at INTEGER NOT NULL DEFAULT 0,
        started_at INTEGER NOT NULL,
        completed_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_job ON tasks(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_device ON tasks(assigned_device)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
    "CREATE INDEX IF NOT EXISTS idx_comment_pool_job ON comment_pool(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_comment_pool_used ON comment_pool(used)",
    "CREATE INDEX IF NOT EXISTS idx_comment_cycle_job ON comment_cycle(job_id)",
)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(raw: Optional[str], default: Any) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Undecodable JSON column value: %.80r", raw)
        return default


def clean_texts(texts: Iterable[Any]) -> List[str]:
    """Strip entries and drop empty ones, keeping order."""
    cleaned: List[str] = []
    for text in texts or []:
        if text is None:
            continue
        value = str(text).strip()
        if value:
            cleaned.append(value)
    return cleaned


class FleetStore:
    """SQLite-backed job / task / comment-cycle store."""

    def __init__(self, db_path: str | Path, clock: Callable[[], int] = now_ms,
                 busy_timeout: float = BUSY_TIMEOUT) -> None:
        self._db_path = Path(db_path)
        self._clock = clock
        self._busy_timeout = busy_timeout
        self._lock = threading.RLock()
        self._closed = False
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._ensure_schema()
        except (sqlite3.Error, OSError) as exc:
            raise StoreOpenError(f"Cannot open store at {self._db_path}: {exc}") from exc
        logger.info("FleetStore ready db=%s", self._db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            self._closed = True
        logger.info("FleetStore closed")

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=self._busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("Store is closed")

    @contextlib.contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        self._check_open()
        conn = self._get_conn()
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction (store lock + BEGIN IMMEDIATE)."""
        with self._lock:
            self._check_open()
            conn = self._get_conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except sqlite3.IntegrityError as exc:
                    conn.execute("ROLLBACK")
                    raise StoreIntegrityError(str(exc)) from exc
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            for statement in _SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

    # ---- row mapping ----

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        try:
            status = JobStatus(row["status"])
        except ValueError:
            status = JobStatus.PENDING
        return Job(
            id=row["id"],
            type=row["type"],
            status=status,
            config=_loads(row["config"], {}),
            device_ids=_loads(row["device_ids"], []),
            initial_total=row["initial_total"] or 0,
            completed_count=row["completed_count"] or 0,
            failed_count=row["failed_count"] or 0,
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        try:
            status = TaskStatus(row["status"])
        except ValueError:
            status = TaskStatus.PENDING
        return Task(
            id=row["id"],
            job_id=row["job_id"],
            type=row["type"],
            assigned_device=row["assigned_device"],
            config=_loads(row["config"], {}),
            status=status,
            result=_loads(row["result"], None),
            error=row["error"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_cycle(row: sqlite3.Row) -> CommentCycle:
        return CommentCycle(
            id=row["id"],
            job_id=row["job_id"],
            cycle_number=row["cycle_number"],
            devices_commented=list(_loads(row["devices_commented"], [])),
            total_devices=row["total_devices"],
            last_comment_at=row["last_comment_at"] or 0,
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # ================================================================
    # JOBS
    # ================================================================

    @staticmethod
    def _insert_job(conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            """
            INSERT INTO jobs (id, type, status, config, device_ids, initial_total,
                              completed_count, failed_count, created_at, started_at,
                              completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id, job.type, job.status.value, _dumps(job.config),
                _dumps(list(job.device_ids)), job.initial_total,
                job.completed_count, job.failed_count, job.created_at,
                job.started_at, job.completed_at,
            ),
        )

    @staticmethod
    def _insert_tasks(conn: sqlite3.Connection, tasks: Sequence[Task]) -> None:
        conn.executemany(
            """
            INSERT INTO tasks (id, job_id, type, config, assigned_device, status,
                               result, error, created_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    t.id, t.job_id, t.type, _dumps(t.config), t.assigned_device,
                    t.status.value, None if t.result is None else _dumps(t.result),
                    t.error, t.created_at, t.completed_at,
                )
                for t in tasks
            ],
        )

    def create_job(self, job: Job) -> Job:
        with self._transaction() as conn:
            self._insert_job(conn, job)
        logger.info("Created job %s (%s, %d devices)", job.id, job.type, len(job.device_ids))
        return job

    def create_tasks(self, tasks: Sequence[Task]) -> int:
        if not tasks:
            return 0
        with self._transaction() as conn:
            self._insert_tasks(conn, tasks)
        return len(tasks)

    def create_job_bundle(
        self,
        job: Job,
        tasks: Sequence[Task],
        comments: Optional[Iterable[Any]] = None,
        total_devices: int = 0,
    ) -> Job:
        """Insert a job, its tasks and its comment pool in one transaction."""
        texts = clean_texts(comments or [])
        with self._transaction() as conn:
            self._insert_job(conn, job)
            self._insert_tasks(conn, tasks)
            if texts:
                self._insert_comments(conn, job.id, texts)
                self._init_cycle(conn, job.id, total_devices)
        logger.info(
            "Created job %s (%s): %d tasks, %d comments",
            job.id, job.type, len(tasks), len(texts),
        )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        """Jobs newest first, optionally filtered by status."""
        with self._read() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM jobs ORDER BY created_at DESC, rowid DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC, rowid DESC",
                    (JobStatus(status).value,),
                ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        started_at: Optional[int] = None,
        completed_at: Optional[int] = None,
        clear_completed: bool = False,
    ) -> bool:
        sets = ["status = ?"]
        params: List[Any] = [JobStatus(status).value]
        if started_at is not None:
            sets.append("started_at = ?")
            params.append(started_at)
        if completed_at is not None:
            sets.append("completed_at = ?")
            params.append(completed_at)
        elif clear_completed:
            sets.append("completed_at = NULL")
        params.append(job_id)
        with self._transaction() as conn:
            cur = conn.execute(f"UPDATE jobs SET {', '.join(sets)} WHERE id = ?", params)
        if cur.rowcount == 0:
            logger.debug("Status update for missing job %s ignored", job_id)
            return False
        return True

    def increment_job_progress(self, job_id: str, delta: int = 1) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE jobs SET completed_count = completed_count + ? WHERE id = ?",
                (int(delta), job_id),
            )
        return cur.rowcount > 0

    def update_job_progress(self, job_id: str, completed: int, failed: int) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE jobs SET completed_count = ?, failed_count = ? WHERE id = ?",
                (completed, failed, job_id),
            )
        return cur.rowcount > 0

    def update_job_failed_count(self, job_id: str, failed: int) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE jobs SET failed_count = ? WHERE id = ?", (failed, job_id)
            )
        return cur.rowcount > 0

    def cancel_job(self, job_id: str) -> bool:
        """Mark a job cancelled and cancel its unfinished tasks.

        Returns False without touching anything when the job is missing or
        already cancelled.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None or row["status"] == JobStatus.CANCELLED.value:
                return False
            now = self._clock()
            conn.execute(
                "UPDATE jobs SET status = ?, completed_at = ? WHERE id = ?",
                (JobStatus.CANCELLED.value, now, job_id),
            )
            cur = conn.execute(
                """
                UPDATE tasks SET status = ?, completed_at = ?
                WHERE job_id = ? AND status IN (?, ?)
                """,
                (
                    TaskStatus.CANCELLED.value, now, job_id,
                    TaskStatus.PENDING.value, TaskStatus.RUNNING.value,
                ),
            )
        logger.info("Cancelled job %s (%d tasks cancelled)", job_id, cur.rowcount)
        return True

    def delete_job(self, job_id: str) -> bool:
        with self._transaction() as conn:
            conn.execute("DELETE FROM tasks WHERE job_id = ?", (job_id,))
            conn.execute("DELETE FROM comment_pool WHERE job_id = ?", (job_id,))
            conn.execute("DELETE FROM comment_cycle WHERE job_id = ?", (job_id,))
            cur = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted job %s", job_id)
        return deleted

    def delete_all_jobs(self) -> int:
        with self._transaction() as conn:
            conn.execute("DELETE FROM tasks")
            conn.execute("DELETE FROM comment_pool")
            conn.execute("DELETE FROM comment_cycle")
            cur = conn.execute("DELETE FROM jobs")
        logger.info("Deleted all jobs (%d)", cur.rowcount)
        return cur.rowcount

    # ================================================================
    # TASKS
    # ================================================================

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, job_id: str, status: Optional[TaskStatus] = None) -> List[Task]:
        with self._read() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE job_id = ? ORDER BY created_at, rowid",
                    (job_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE job_id = ? AND status = ? ORDER BY created_at, rowid",
                    (job_id, TaskStatus(status).value),
                ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def claim_next_task(self, job_id: str, device_id: str) -> Optional[Task]:
        """Atomically move one pending task of (job, device) to running."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM tasks
                WHERE job_id = ? AND assigned_device = ? AND status = ?
                ORDER BY created_at, rowid
                LIMIT 1
                """,
                (job_id, device_id, TaskStatus.PENDING.value),
            ).fetchone()
            if row is None:
                return None
            cur = conn.execute(
                "UPDATE tasks SET status = ? WHERE id = ? AND status = ?",
                (TaskStatus.RUNNING.value, row["id"], TaskStatus.PENDING.value),
            )
            if cur.rowcount != 1:
                return None
        task = self._row_to_task(row)
        task.status = TaskStatus.RUNNING
        return task

    def complete_task(self, task_id: str, result: Any = None) -> bool:
        """running -> completed. False if the task is gone or no longer running."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE tasks SET status = ?, result = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    TaskStatus.COMPLETED.value,
                    None if result is None else _dumps(result),
                    self._clock(), task_id, TaskStatus.RUNNING.value,
                ),
            )
        return cur.rowcount > 0

    def fail_task(self, task_id: str, error: str) -> bool:
        """running -> failed. False if the task is gone or no longer running."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE tasks SET status = ?, error = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    TaskStatus.FAILED.value, str(error), self._clock(),
                    task_id, TaskStatus.RUNNING.value,
                ),
            )
        return cur.rowcount > 0

    @staticmethod
    def _count_tasks(conn: sqlite3.Connection, job_id: str) -> TaskCounts:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM tasks WHERE job_id = ? GROUP BY status",
            (job_id,),
        ).fetchall()
        counts = TaskCounts()
        for row in rows:
            if hasattr(counts, row["status"]):
                setattr(counts, row["status"], row["n"])
        return counts

    @staticmethod
    def _write_counters(conn: sqlite3.Connection, job: Job, counts: TaskCounts) -> None:
        """Job counters from task counts, per the job type's accounting.

        Cycle-counted jobs keep the completed counter their task bodies
        increment; only the failed counter follows the tasks.
        """
        if job.accounting is ProgressAccounting.TASK_COUNT:
            conn.execute(
                "UPDATE jobs SET completed_count = ?, failed_count = ? WHERE id = ?",
                (counts.completed, counts.failed, job.id),
            )
            job.completed_count = counts.completed
        else:
            conn.execute("UPDATE jobs SET failed_count = ? WHERE id = ?", (counts.failed, job.id))
        job.failed_count = counts.failed

    def get_task_counts(self, job_id: str) -> TaskCounts:
        with self._read() as conn:
            return self._count_tasks(conn, job_id)

    def sync_job_counters(self, job_id: str) -> Optional[Tuple[Job, TaskCounts]]:
        """Re-count a job's tasks and write its counters in one transaction.

        Returns the refreshed job and the counts, or None if the job is gone.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                return None
            job = self._row_to_job(row)
            counts = self._count_tasks(conn, job_id)
            self._write_counters(conn, job, counts)
        return job, counts

    def retry_job(self, job_id: str) -> int:
        """Reset a job's failed tasks to pending and put the job back to running.

        Counters are rewritten in the same transaction.  Returns the number
        of tasks reset; a job with no failed tasks is left untouched.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                return 0
            reset = self._reset_failed(conn, job_id)
            if reset == 0:
                return 0
            conn.execute(
                "UPDATE jobs SET status = ?, completed_at = NULL WHERE id = ?",
                (JobStatus.RUNNING.value, job_id),
            )
            self._write_counters(conn, self._row_to_job(row), self._count_tasks(conn, job_id))
        logger.info("Job %s: %d failed tasks reset for retry", job_id, reset)
        return reset

    @staticmethod
    def _reset_failed(conn: sqlite3.Connection, job_id: str) -> int:
        cur = conn.execute(
            """
            UPDATE tasks SET status = ?, error = NULL, completed_at = NULL
            WHERE job_id = ? AND status = ?
            """,
            (TaskStatus.PENDING.value, job_id, TaskStatus.FAILED.value),
        )
        return cur.rowcount

    def retry_failed_tasks(self, job_id: str) -> int:
        """Reset failed tasks only; job status and counters are left as they are."""
        with self._transaction() as conn:
            reset = self._reset_failed(conn, job_id)
        logger.info("Reset %d failed tasks of job %s", reset, job_id)
        return reset

    def recover_interrupted_tasks(self) -> int:
        """Put tasks left running by a previous process back to pending."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE tasks SET status = ?
                WHERE status = ? AND job_id IN (SELECT id FROM jobs WHERE status IN (?, ?, ?))
                """,
                (
                    TaskStatus.PENDING.value, TaskStatus.RUNNING.value,
                    JobStatus.PENDING.value, JobStatus.RUNNING.value, JobStatus.PAUSED.value,
                ),
            )
        if cur.rowcount:
            logger.warning("Recovered %d tasks interrupted by a previous shutdown", cur.rowcount)
        return cur.rowcount

    # ================================================================
    # COMMENT POOL & CYCLES
    # ================================================================

    @staticmethod
    def _insert_comments(conn: sqlite3.Connection, job_id: str, texts: Sequence[str]) -> None:
        conn.executemany(
            "INSERT INTO comment_pool (job_id, text, used) VALUES (?, ?, 0)",
            [(job_id, text) for text in texts],
        )

    @staticmethod
    def _open_cycle(conn: sqlite3.Connection, job_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT * FROM comment_cycle
            WHERE job_id = ? AND completed_at IS NULL
            ORDER BY cycle_number DESC LIMIT 1
            """,
            (job_id,),
        ).fetchone()

    def _init_cycle(self, conn: sqlite3.Connection, job_id: str, total_devices: int) -> None:
        exists = conn.execute(
            "SELECT 1 FROM comment_cycle WHERE job_id = ? LIMIT 1", (job_id,)
        ).fetchone()
        if exists:
            return
        conn.execute(
            """
            INSERT INTO comment_cycle (job_id, cycle_number, devices_commented,
                                       total_devices, last_comment_at, started_at)
            VALUES (?, 1, '[]', ?, 0, ?)
            """,
            (job_id, int(total_devices), self._clock()),
        )

    def _record_device(self, conn: sqlite3.Connection, cycle: sqlite3.Row, device_id: str) -> bool:
        """Add a device to an open cycle, sealing it when full.

        Returns True when this call sealed the cycle.
        """
        devices = list(_loads(cycle["devices_commented"], []))
        if device_id in devices:
            return False
        devices.append(device_id)
        conn.execute(
            "UPDATE comment_cycle SET devices_commented = ? WHERE id = ?",
            (_dumps(devices), cycle["id"]),
        )
        if len(devices) < cycle["total_devices"]:
            return False
        now = self._clock()
        conn.execute(
            "UPDATE comment_cycle SET completed_at = ? WHERE id = ? AND completed_at IS NULL",
            (now, cycle["id"]),
        )
        conn.execute(
            """
            INSERT INTO comment_cycle (job_id, cycle_number, devices_commented,
                                       total_devices, last_comment_at, started_at)
            VALUES (?, ?, '[]', ?, 0, ?)
            """,
            (cycle["job_id"], cycle["cycle_number"] + 1, cycle["total_devices"], now),
        )
        logger.info(
            "Comment cycle %d of job %s complete (%d devices), cycle %d opened",
            cycle["cycle_number"], cycle["job_id"], len(devices), cycle["cycle_number"] + 1,
        )
        return True

    def init_comment_cycle(self, job_id: str, total_devices: int) -> Optional[CommentCycle]:
        """Open cycle 1 for a job unless it already has cycles."""
        with self._transaction() as conn:
            self._init_cycle(conn, job_id, total_devices)
            row = self._open_cycle(conn, job_id)
        return self._row_to_cycle(row) if row else None

    def create_comment_pool(self, job_id: str, texts: Iterable[Any], total_devices: int) -> int:
        cleaned = clean_texts(texts)
        with self._transaction() as conn:
            if cleaned:
                self._insert_comments(conn, job_id, cleaned)
            self._init_cycle(conn, job_id, total_devices)
        return len(cleaned)

    def refill_comments(self, job_id: str, texts: Iterable[Any]) -> int:
        cleaned = clean_texts(texts)
        if not cleaned:
            return 0
        with self._transaction() as conn:
            self._insert_comments(conn, job_id, cleaned)
        logger.info("Refilled %d comments for job %s", len(cleaned), job_id)
        return len(cleaned)

    def try_consume_comment(self, job_id: str, device_id: str, delay_seconds: float) -> CommentResult:
        """Issue the next pool entry to a device if the cycle rules allow it.

        Checks, in order: the device already consumed in the open cycle, the
        inter-comment delay, pool exhaustion.  On success the entry is marked
        used and the device is recorded in the cycle, atomically.
        """
        with self._transaction() as conn:
            cycle = self._open_cycle(conn, job_id)
            if cycle is None:
                return CommentResult(CommentStatus.EXHAUSTED)
            number = cycle["cycle_number"]

            if device_id in _loads(cycle["devices_commented"], []):
                return CommentResult(CommentStatus.ALREADY_DONE, cycle_number=number)

            now = self._clock()
            last = cycle["last_comment_at"] or 0
            delay_ms = float(delay_seconds) * 1000.0
            if last > 0 and now - last < delay_ms:
                wait = math.ceil((delay_ms - (now - last)) / 1000.0)
                return CommentResult(CommentStatus.WAITING, wait_seconds=max(wait, 1), cycle_number=number)

            entry = conn.execute(
                "SELECT id, text FROM comment_pool WHERE job_id = ? AND used = 0 ORDER BY id LIMIT 1",
                (job_id,),
            ).fetchone()
            if entry is None:
                return CommentResult(CommentStatus.EXHAUSTED, cycle_number=number)

            conn.execute(
                "UPDATE comment_pool SET used = 1, used_at = ?, used_by_device = ? WHERE id = ?",
                (now, device_id, entry["id"]),
            )
            conn.execute(
                "UPDATE comment_cycle SET last_comment_at = ? WHERE id = ?",
                (now, cycle["id"]),
            )
            self._record_device(conn, cycle, device_id)
        return CommentResult(CommentStatus.OK, text=entry["text"], cycle_number=number)

    def mark_device_done(self, job_id: str, device_id: str) -> bool:
        """Record a device in the open cycle. True if it was newly recorded."""
        with self._transaction() as conn:
            cycle = self._open_cycle(conn, job_id)
            if cycle is None:
                return False
            if device_id in _loads(cycle["devices_commented"], []):
                return False
            self._record_device(conn, cycle, device_id)
        return True

    def can_device_act(self, job_id: str, device_id: str) -> bool:
        with self._read() as conn:
            cycle = self._open_cycle(conn, job_id)
        if cycle is None:
            return True
        return device_id not in _loads(cycle["devices_commented"], [])

    def get_current_cycle(self, job_id: str) -> Optional[CommentCycle]:
        with self._read() as conn:
            row = self._open_cycle(conn, job_id)
        return self._row_to_cycle(row) if row else None

    def list_cycles(self, job_id: str) -> List[CommentCycle]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM comment_cycle WHERE job_id = ? ORDER BY cycle_number",
                (job_id,),
            ).fetchall()
        return [self._row_to_cycle(r) for r in rows]

    def get_comment_stats(self, job_id: str) -> Dict[str, Any]:
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total, COALESCE(SUM(used), 0) AS used
                FROM comment_pool WHERE job_id = ?
                """,
                (job_id,),
            ).fetchone()
            cycle = self._open_cycle(conn, job_id)
        total, used = row["total"], row["used"]
        return {
            "total": total,
            "used": used,
            "available": total - used,
            "cycle": self._row_to_cycle(cycle).to_dict() if cycle else None,
        }
