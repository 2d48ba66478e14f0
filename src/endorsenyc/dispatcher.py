from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .config import Config
from .storage import enqueue_job, get_setting, has_pending_job, queue_stats, set_setting
from .utils import log_event, parse_iso, utc_now

JOB_QUEUES: dict[str, str] = {
    "check_all_feeds": "fetch",
    "check_feed": "fetch",
    "check_high_priority_feeds": "fetch",
    "daily_cleanup": "fetch",
    "classify_items": "classify",
    "notify": "notify",
    "scrape_endorsements": "scrape",
}

SCHEDULE_KEYS = {
    "check_all_feeds": "schedule.check_all_feeds.last_enqueued_at",
    "check_high_priority_feeds": "schedule.check_high_priority_feeds.last_enqueued_at",
    "daily_cleanup": "schedule.daily_cleanup.last_enqueued_at",
}


def queue_for(job_type: str) -> str:
    try:
        return JOB_QUEUES[job_type]
    except KeyError as exc:
        raise ValueError(f"unsupported job type {job_type}") from exc


def queue_names(config: Config) -> list[str]:
    return list(config.jobs.queues.keys())


def enqueue(
    conn,
    config: Config,
    job_type: str,
    payload: dict[str, object] | None = None,
    *,
    priority: int = 0,
    debounce: bool = False,
) -> str:
    queue = queue_for(job_type)
    queue_cfg = config.jobs.queues.get(queue)
    attempts = queue_cfg.attempts if queue_cfg else 1
    return enqueue_job(
        conn,
        queue,
        job_type,
        payload,
        priority=priority,
        max_attempts=attempts,
        debounce=debounce,
    )


def backoff_delay(config: Config, queue: str, attempt: int) -> float:
    queue_cfg = config.jobs.queues.get(queue)
    base = queue_cfg.backoff_seconds if queue_cfg else 2.0
    return base * (2 ** max(0, attempt - 1))


def get_queue_stats(conn, config: Config) -> dict[str, dict[str, int]]:
    return queue_stats(conn, queue_names(config))


def maybe_enqueue_recurring(
    conn, config: Config, logger: logging.Logger, now: datetime | None = None
) -> list[str]:
    """Enqueue the recurring feed checks and the daily cleanup when due.

    Each schedule remembers when it last fired in the settings table, so
    several workers polling the same database enqueue each run once.
    """
    schedules = config.schedules
    if not schedules.enabled:
        return []
    now = now or utc_now()
    enqueued: list[str] = []

    intervals = {
        "check_all_feeds": schedules.all_feeds_minutes,
        "check_high_priority_feeds": schedules.high_priority_feeds_minutes,
    }
    for job_type, minutes in intervals.items():
        last = _last_enqueued(conn, job_type)
        if last is not None and last + timedelta(minutes=minutes) > now:
            continue
        if _enqueue_scheduled(conn, config, job_type, now):
            enqueued.append(job_type)

    cleanup_at = now.replace(
        hour=schedules.daily_cleanup_hour_utc, minute=0, second=0, microsecond=0
    )
    last_cleanup = _last_enqueued(conn, "daily_cleanup")
    if now >= cleanup_at and (last_cleanup is None or last_cleanup < cleanup_at):
        if _enqueue_scheduled(conn, config, "daily_cleanup", now):
            enqueued.append("daily_cleanup")

    if enqueued:
        log_event(logger, logging.INFO, "recurring_jobs_enqueued", job_types=",".join(enqueued))
    return enqueued


def _enqueue_scheduled(conn, config: Config, job_type: str, now: datetime) -> bool:
    set_setting(conn, SCHEDULE_KEYS[job_type], now.isoformat())
    if has_pending_job(conn, job_type):
        return False
    enqueue(conn, config, job_type, None, debounce=True)
    return True


def _last_enqueued(conn, job_type: str) -> datetime | None:
    value = get_setting(conn, SCHEDULE_KEYS[job_type], None)
    if not isinstance(value, str):
        return None
    return parse_iso(value)
