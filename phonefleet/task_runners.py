"""
Task Runners -- PhoneFleet
==========================

Task bodies, one per job type, registered in ``RUNNERS`` by task type.

Every runner has the signature::

    async def run_x(worker: DeviceWorker, config: dict) -> dict

and reaches the device only through the worker (``run_command`` and the
``AppDriver`` built on it), waits only through ``worker.sleep``, reads time
only through ``worker.clock`` and draws randomness only through
``worker.random_int`` / ``worker.rng``.  Each runner calls
``worker.checkpoint(job_id)`` between steps, which raises
``TaskCancelledError`` once the job is cancelled or deleted and blocks while
the task is paused.  The returned dict becomes the task's result.

The app is always force-stopped on the way out, success or not.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List

from phonefleet.app_driver import AppDriver
from phonefleet.errors import ElementNotFoundError, TaskFailedError
from phonefleet.models import CommentStatus, JobType

if TYPE_CHECKING:
    from phonefleet.worker import DeviceWorker

logger = logging.getLogger("phonefleet.task_runners")


def _int(config: Dict[str, Any], key: str, default: int) -> int:
    value = config.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _chance(worker: DeviceWorker, percent: int) -> bool:
    return worker.random_int(1, 100) <= percent


async def _watch(worker: DeviceWorker, job_id: str, seconds: float) -> None:
    """Sleep in short slices so pause and cancellation stay responsive."""
    deadline = worker.clock() + seconds
    while True:
        await worker.checkpoint(job_id)
        remaining = deadline - worker.clock()
        if remaining <= 0:
            return
        await worker.sleep(min(remaining, 5.0))


# ===================================================================
# WARMUP
# ===================================================================


async def run_warmup(worker: DeviceWorker, config: Dict[str, Any]) -> Dict[str, Any]:
    """Browse the feed for ``duration`` seconds with human-ish interactions.

    Config: duration (s, default 3600), minWatch / maxWatch (s per video),
    viewPercent, likePercent, commentPercent, sharePercent.
    """
    job_id = config.get("jobId")
    duration = _int(config, "duration", 3600)
    min_watch = _int(config, "minWatch", 5)
    max_watch = max(min_watch, _int(config, "maxWatch", 15))
    view_pct = _int(config, "viewPercent", 100)
    like_pct = _int(config, "likePercent", 30)
    comment_pct = _int(config, "commentPercent", 10)
    share_pct = _int(config, "sharePercent", 5)

    app = AppDriver(worker)
    stats = {"videos": 0, "likes": 0, "comment_peeks": 0, "shares": 0}
    try:
        await worker.checkpoint(job_id)
        await app.open_app()
        deadline = worker.clock() + duration
        while worker.clock() < deadline:
            await worker.checkpoint(job_id)
            if _chance(worker, view_pct):
                await _watch(worker, job_id, worker.random_int(min_watch, max_watch))
                stats["videos"] += 1
            if _chance(worker, like_pct):
                await app.double_tap_like()
                stats["likes"] += 1
            if _chance(worker, comment_pct) and await app.peek_comments():
                stats["comment_peeks"] += 1
            if _chance(worker, share_pct) and await app.share():
                stats["shares"] += 1
            await app.swipe_feed()
            await worker.sleep(worker.random_int(1, 3))
    finally:
        await app.close_app()

    logger.info("[%s] Warmup done: %s", worker.device_id, stats)
    return stats


# ===================================================================
# SUPER MARKETING
# ===================================================================


async def run_super_marketing(worker: DeviceWorker, config: Dict[str, Any]) -> Dict[str, Any]:
    """Repeat ``totalCycles`` viewing cycles over the job's URLs.

    Each cycle opens every URL once (shuffled), watches it for a random
    duration in [durationMin, durationMax] and likes with ``likeChance``
    percent probability, then adds one unit of job progress.
    """
    job_id = config.get("jobId")
    urls: List[str] = [str(u) for u in (config.get("urls") or []) if u]
    if not urls and config.get("url"):
        urls = [str(config["url"])]
    if not urls:
        raise TaskFailedError("super_marketing task has no urls", device_id=worker.device_id, job_id=job_id)

    total_cycles = _int(config, "totalCycles", 100)
    duration_min = _int(config, "durationMin", 10)
    duration_max = max(duration_min, _int(config, "durationMax", 30))
    like_chance = _int(config, "likeChance", 0)

    app = AppDriver(worker)
    cycles = likes = 0
    try:
        await worker.checkpoint(job_id)
        await app.open_app()
        for cycle in range(1, total_cycles + 1):
            order = list(urls)
            worker.rng.shuffle(order)
            for url in order:
                await worker.checkpoint(job_id)
                await app.open_url(url)
                await _watch(worker, job_id, worker.random_int(duration_min, duration_max))
                if like_chance and _chance(worker, like_chance):
                    await app.double_tap_like()
                    likes += 1
            cycles += 1
            if job_id:
                worker.report_progress(job_id)
            logger.debug("[%s] Cycle %d/%d done", worker.device_id, cycle, total_cycles)
    finally:
        await app.close_app()

    return {"cycles": cycles, "likes": likes}


# ===================================================================
# BOOST LIVE
# ===================================================================


async def run_boost_live(worker: DeviceWorker, config: Dict[str, Any]) -> Dict[str, Any]:
    """Join a live stream and engage for ``duration`` seconds.

    Comments come from the job's shared pool through the cycle rules, so
    devices take turns and never repeat a pool entry.  A comment attempt
    takes priority over liking and sharing in the same iteration.
    """
    job_id = config.get("jobId")
    duration = _int(config, "duration", 1800)
    join_delay = _int(config, "joinDelay", 0)
    comment_delay = _int(config, "commentDelay", 30)
    like_interval = _int(config, "likeInterval", 10)
    share_enabled = bool(config.get("share", True))

    live_url = config.get("liveUrl")
    if not live_url:
        username = str(config.get("username", "")).lstrip("@")
        live_url = f"https://www.tiktok.com/@{username}/live"

    app = AppDriver(worker)
    stats = {"comments": 0, "likes": 0, "shares": 0, "pool_exhausted": False}
    try:
        stagger = _int(config, "deviceIndex", 0) * join_delay
        if stagger:
            await _watch(worker, job_id, stagger)
        await worker.checkpoint(job_id)
        await app.open_app()
        await app.open_url(live_url)
        await worker.sleep(5)

        start = worker.clock()
        last_comment = start - comment_delay
        last_like = start
        shared = False
        comments_on = bool(job_id)
        while worker.clock() - start < duration:
            await worker.checkpoint(job_id)
            now = worker.clock()

            if comments_on and now - last_comment >= comment_delay:
                last_comment = now
                outcome = worker.store.try_consume_comment(job_id, worker.device_id, comment_delay)
                if outcome.ok:
                    if await app.post_comment(outcome.text):
                        stats["comments"] += 1
                    await worker.sleep(2)
                    continue
                if outcome.status is CommentStatus.EXHAUSTED:
                    stats["pool_exhausted"] = True
                    comments_on = False
                    logger.info("[%s] Comment pool of %s exhausted", worker.device_id, job_id)
                elif outcome.status is CommentStatus.WAITING:
                    last_comment = now - comment_delay + outcome.wait_seconds

            if now - last_like >= like_interval:
                last_like = now
                await app.tap_screen()
                await worker.sleep(0.2)
                await app.tap_screen()
                stats["likes"] += 1
            elif share_enabled and not shared:
                shared = True
                if await app.share():
                    stats["shares"] += 1

            await worker.sleep(1)
    finally:
        await app.close_app()

    return stats


# ===================================================================
# MASS COMMENT
# ===================================================================


async def run_masscomment(worker: DeviceWorker, config: Dict[str, Any]) -> Dict[str, Any]:
    """Open the target video and post the task's comment."""
    job_id = config.get("jobId")
    comment = str(config.get("comment") or "").strip()
    url = config.get("url")
    if not comment or not url:
        raise TaskFailedError("masscomment task needs url and comment", device_id=worker.device_id, job_id=job_id)

    app = AppDriver(worker)
    try:
        start_delay = _int(config, "deviceStartDelay", 0)
        if start_delay:
            await _watch(worker, job_id, start_delay)

        idle_min = _int(config, "idleDelayMin", 2)
        idle_max = max(idle_min, _int(config, "idleDelayMax", 5))
        await _watch(worker, job_id, worker.random_int(idle_min, idle_max))

        await app.open_app()
        await worker.checkpoint(job_id)

        scroll_delay_min = _int(config, "scrollDelayMin", 2)
        scroll_delay_max = max(scroll_delay_min, _int(config, "scrollDelayMax", 5))
        scrolls = worker.random_int(0, _int(config, "scrollCount", 5))
        for _ in range(scrolls):
            await worker.checkpoint(job_id)
            await app.swipe_feed()
            await worker.sleep(worker.random_int(scroll_delay_min, scroll_delay_max))

        await app.open_url(url)
        await worker.sleep(3)
        await worker.checkpoint(job_id)

        try:
            posted = await app.post_comment(comment)
        except ElementNotFoundError as exc:
            raise TaskFailedError(f"Comment not posted: {exc}",
                                  device_id=worker.device_id, job_id=job_id) from exc
        if not posted:
            raise TaskFailedError("Comment not posted", device_id=worker.device_id, job_id=job_id)
    finally:
        await app.close_app()

    return {"comment": comment, "url": url, "scrolls": scrolls}


RUNNERS = {
    JobType.WARMUP.value: run_warmup,
    JobType.SUPER_MARKETING.value: run_super_marketing,
    JobType.BOOST_LIVE.value: run_boost_live,
    JobType.MASSCOMMENT.value: run_masscomment,
}
