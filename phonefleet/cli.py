"""
PhoneFleet CLI
==============

Operator command line.  ``serve`` runs the API server; the other commands
work directly against the SQLite store (``devices`` and ``cancel`` also reach
adb), so they are usable while the server is down.  Interrupted tasks are
returned to pending by ``serve`` at startup, never from here.

Usage:
    phonefleet serve [--host 0.0.0.0] [--port 8770]
    phonefleet devices
    phonefleet jobs [--status running]
    phonefleet job <job_id> [--tasks]
    phonefleet create masscomment --devices R58M1,R58M2 --config job.json
    phonefleet cancel <job_id>
    phonefleet retry <job_id>
    phonefleet delete <job_id>
    phonefleet refill <job_id> comments.txt
    phonefleet comments <job_id>

Global flags go before the command: ``--json`` for machine-readable output,
``--no-color`` to disable ANSI, ``--db`` to point at another database.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn

from phonefleet.adb import AdbChannel
from phonefleet.config import FleetSettings, setup_logging
from phonefleet.errors import FleetError, JobConfigError
from phonefleet.job_generator import plan_job
from phonefleet.models import JobStatus, now_ms
from phonefleet.store import FleetStore

logger = logging.getLogger("phonefleet.cli")

__version__ = "1.0.0"

CLI_BUSY_TIMEOUT = 30.0
FORCE_STOP_TIMEOUT_MS = 5_000

# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

_NO_COLOR = os.environ.get("NO_COLOR") or ("--no-color" in sys.argv)

_RESET = "" if _NO_COLOR else "\033[0m"
_BOLD = "" if _NO_COLOR else "\033[1m"
_DIM = "" if _NO_COLOR else "\033[2m"
_RED = "" if _NO_COLOR else "\033[31m"
_GREEN = "" if _NO_COLOR else "\033[32m"
_YELLOW = "" if _NO_COLOR else "\033[33m"

_OK = f"{_GREEN}●{_RESET}"
_WARN = f"{_YELLOW}●{_RESET}"
_FAIL = f"{_RED}●{_RESET}"

_STATUS_COLOR = {
    JobStatus.RUNNING.value: _GREEN,
    JobStatus.PAUSED.value: _YELLOW,
    JobStatus.CANCELLED.value: _RED,
    JobStatus.COMPLETED.value: _DIM,
}


def _print(text: str = "") -> None:
    print(text)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _open_store(settings: FleetSettings) -> FleetStore:
    return FleetStore(settings.db_path, busy_timeout=CLI_BUSY_TIMEOUT)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_serve(args: argparse.Namespace, settings: FleetSettings) -> int:
    host = args.host or settings.api_host
    port = args.port or settings.api_port
    _print(f"\n  {_BOLD}Starting PhoneFleet API{_RESET}")
    _print(f"  {_DIM}Host: {host}  Port: {port}  DB: {settings.db_path}{_RESET}\n")
    uvicorn.run("phonefleet.api:app", host=host, port=port, log_level=settings.log_level.lower())
    return 0


def _cmd_devices(args: argparse.Namespace, settings: FleetSettings) -> int:
    channel = AdbChannel(settings.adb_path, settings.scrcpy_path)
    serials = asyncio.run(channel.list_devices())
    if args.json:
        _print_json(serials)
        return 0
    _print(f"\n  {_BOLD}{len(serials)} device(s) ready{_RESET}")
    for serial in serials:
        _print(f"  {_OK} {serial}")
    _print()
    return 0


def _cmd_jobs(args: argparse.Namespace, settings: FleetSettings) -> int:
    store = _open_store(settings)
    jobs = store.list_jobs(JobStatus(args.status) if args.status else None)
    if args.json:
        _print_json([j.to_dict() for j in jobs])
        return 0
    if not jobs:
        _print("  No jobs.")
        return 0
    _print(f"\n  {_BOLD}{'ID':<32} {'TYPE':<16} {'STATUS':<10} {'DEVICES':>7} {'PROGRESS':>9}{_RESET}")
    for job in jobs:
        color = _STATUS_COLOR.get(job.status.value, "")
        _print(
            f"  {job.id:<32} {job.type:<16} {color}{job.status.value:<10}{_RESET} "
            f"{len(job.device_ids):>7} {job.progress:>8}%"
        )
    _print()
    return 0


def _cmd_job(args: argparse.Namespace, settings: FleetSettings) -> int:
    store = _open_store(settings)
    job = store.get_job(args.job_id)
    if job is None:
        _print(f"{_FAIL} Job {args.job_id} not found")
        return 1
    counts = store.get_task_counts(job.id)
    tasks = store.list_tasks(job.id) if args.tasks else []
    if args.json:
        _print_json({
            "job": job.to_dict(),
            "counts": counts.to_dict(),
            "tasks": [t.to_dict() for t in tasks],
        })
        return 0
    _print(f"\n  {_BOLD}{job.id}{_RESET}  ({job.type}, {job.status.value})")
    _print(f"  Devices:   {', '.join(job.device_ids)}")
    _print(f"  Progress:  {job.completed_count}/{job.initial_total} ({job.progress}%), "
           f"{job.failed_count} failed")
    _print(f"  Tasks:     {counts.completed} done, {counts.failed} failed, "
           f"{counts.pending} pending, {counts.running} running, {counts.cancelled} cancelled")
    for task in tasks:
        marker = {"completed": _OK, "failed": _FAIL}.get(task.status.value, _WARN)
        line = f"    {marker} {task.id:<40} {task.assigned_device:<22} {task.status.value}"
        if task.error:
            line += f"  {_DIM}{task.error[:60]}{_RESET}"
        _print(line)
    _print()
    return 0


def _cmd_create(args: argparse.Namespace, settings: FleetSettings) -> int:
    config: Dict[str, Any] = {}
    if args.config:
        config = json.loads(Path(args.config).read_text(encoding="utf-8"))
    devices = [d.strip() for d in args.devices.split(",") if d.strip()]
    plan = plan_job(args.type, config, devices)
    store = _open_store(settings)
    store.create_job_bundle(plan.job, plan.tasks, plan.comments, plan.total_devices)
    store.update_job_status(plan.job.id, JobStatus.RUNNING, started_at=now_ms())
    if args.json:
        _print_json({"job_id": plan.job.id, "tasks": len(plan.tasks)})
    else:
        _print(f"{_OK} Created {plan.job.type} job {plan.job.id} with {len(plan.tasks)} tasks")
        _print(f"   {_DIM}A running server picks it up on its next tick.{_RESET}")
    return 0


def _cmd_cancel(args: argparse.Namespace, settings: FleetSettings) -> int:
    store = _open_store(settings)
    job = store.get_job(args.job_id)
    if job is None or not store.cancel_job(job.id):
        _print(f"{_WARN} Job {args.job_id} not found or already cancelled")
        return 1
    channel = AdbChannel(settings.adb_path, settings.scrcpy_path)
    stopped = asyncio.run(_force_stop_all(channel, job.device_ids, settings.app_package))
    _print(f"{_OK} Job {job.id} cancelled, app stopped on {stopped}/{len(job.device_ids)} devices")
    return 0


async def _force_stop_all(channel: AdbChannel, device_ids: List[str], package: str) -> int:
    async def _stop(device_id: str) -> bool:
        try:
            await channel.execute(device_id, ["am", "force-stop", package], FORCE_STOP_TIMEOUT_MS)
        except FleetError as exc:
            logger.debug("[%s] force-stop failed: %s", device_id, exc)
            return False
        return True

    results = await asyncio.gather(*(_stop(d) for d in device_ids))
    return sum(1 for ok in results if ok)


def _cmd_retry(args: argparse.Namespace, settings: FleetSettings) -> int:
    store = _open_store(settings)
    job = store.get_job(args.job_id)
    if job is None:
        _print(f"{_FAIL} Job {args.job_id} not found")
        return 1
    reset = store.retry_job(job.id)
    _print(f"{_OK} {reset} failed task(s) of {job.id} reset to pending")
    return 0


def _cmd_delete(args: argparse.Namespace, settings: FleetSettings) -> int:
    store = _open_store(settings)
    if store.delete_job(args.job_id):
        _print(f"{_OK} Job {args.job_id} deleted")
        return 0
    _print(f"{_FAIL} Job {args.job_id} not found")
    return 1


def _cmd_refill(args: argparse.Namespace, settings: FleetSettings) -> int:
    store = _open_store(settings)
    job = store.get_job(args.job_id)
    if job is None:
        _print(f"{_FAIL} Job {args.job_id} not found")
        return 1
    texts = Path(args.file).read_text(encoding="utf-8").splitlines()
    if store.list_cycles(job.id):
        added = store.refill_comments(job.id, texts)
    else:
        added = store.create_comment_pool(job.id, texts, len(job.device_ids))
    _print(f"{_OK} {added} comment(s) added to {job.id}")
    return 0


def _cmd_comments(args: argparse.Namespace, settings: FleetSettings) -> int:
    store = _open_store(settings)
    stats = store.get_comment_stats(args.job_id)
    if args.json:
        _print_json(stats)
        return 0
    _print(f"\n  Comments for {args.job_id}: {stats['used']}/{stats['total']} used, "
           f"{stats['available']} available")
    cycle = stats.get("cycle")
    if cycle:
        _print(f"  Cycle {cycle['cycle_number']}: {cycle['devices_commented']}/{cycle['total_devices']} devices")
    _print()
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phonefleet", description="PhoneFleet device orchestrator")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI colours")
    parser.add_argument("--db", help="SQLite database path (default: FLEET_DB_PATH)")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the API server")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.set_defaults(func=_cmd_serve)

    sub.add_parser("devices", help="List ready adb devices").set_defaults(func=_cmd_devices)

    p_jobs = sub.add_parser("jobs", help="List jobs")
    p_jobs.add_argument("--status", choices=[s.value for s in JobStatus])
    p_jobs.set_defaults(func=_cmd_jobs)

    p_job = sub.add_parser("job", help="Show one job")
    p_job.add_argument("job_id")
    p_job.add_argument("--tasks", action="store_true", help="List tasks too")
    p_job.set_defaults(func=_cmd_job)

    p_create = sub.add_parser("create", help="Create a job")
    p_create.add_argument("type")
    p_create.add_argument("--devices", required=True, help="Comma-separated device ids")
    p_create.add_argument("--config", help="JSON file with the job config")
    p_create.set_defaults(func=_cmd_create)

    for name, func, text in (
        ("cancel", _cmd_cancel, "Cancel a job"),
        ("retry", _cmd_retry, "Retry a job's failed tasks"),
        ("delete", _cmd_delete, "Delete a job"),
        ("comments", _cmd_comments, "Comment pool stats"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("job_id")
        p.set_defaults(func=func)

    p_refill = sub.add_parser("refill", help="Add comments to a job's pool")
    p_refill.add_argument("job_id")
    p_refill.add_argument("file", help="Text file, one comment per line")
    p_refill.set_defaults(func=_cmd_refill)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    settings = FleetSettings.from_env()
    if args.db:
        settings.db_path = Path(args.db)
    setup_logging(settings.log_level)

    try:
        return args.func(args, settings)
    except JobConfigError as exc:
        _print(f"{_FAIL} Invalid job: {exc}")
        return 2
    except FleetError as exc:
        _print(f"{_FAIL} {exc}")
        return 1
    except (OSError, ValueError) as exc:
        _print(f"{_FAIL} {exc}")
        return 1
    except KeyboardInterrupt:
        _print("\nAborted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
