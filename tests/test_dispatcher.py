import copy
import logging
from datetime import datetime, timedelta, timezone

import pytest

from endorsenyc.config import DEFAULT_CONFIG, load_runtime_config, set_runtime_config
from endorsenyc.dispatcher import (
    backoff_delay,
    enqueue,
    get_queue_stats,
    maybe_enqueue_recurring,
    queue_for,
)
from endorsenyc.storage import claim_next_job, complete_job, get_job, init_db

LOGGER = logging.getLogger("test")


def _drain(conn) -> list[str]:
    job_types = []
    while True:
        job = claim_next_job(conn, "worker-1")
        if not job:
            return job_types
        job_types.append(job.job_type)
        complete_job(conn, job.id, result={"ok": True})


def test_enqueue_routes_to_queue_with_attempts(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)

    classify_id = enqueue(conn, config, "classify_items", {"items": []}, priority=5)
    scrape_id = enqueue(conn, config, "scrape_endorsements")

    classify_job = get_job(conn, classify_id)
    scrape_job = get_job(conn, scrape_id)
    assert classify_job is not None and scrape_job is not None
    assert classify_job.queue == "classify"
    assert classify_job.priority == 5
    assert classify_job.max_attempts == 3
    assert scrape_job.queue == "scrape"
    assert scrape_job.max_attempts == 1


def test_unknown_job_type_rejected():
    with pytest.raises(ValueError) as excinfo:
        queue_for("build_site")
    assert "unsupported job type" in str(excinfo.value)


def test_backoff_doubles_per_attempt(tmp_path):
    config = load_runtime_config(init_db(str(tmp_path / "state.sqlite3")))
    assert [backoff_delay(config, "fetch", attempt) for attempt in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_queue_stats_cover_configured_queues(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    enqueue(conn, config, "notify", {"subject_key": "x", "kind": "high_confidence"})

    stats = get_queue_stats(conn, config)
    assert set(stats) == {"fetch", "classify", "notify", "scrape"}
    assert stats["notify"]["waiting"] == 1
    assert stats["fetch"]["waiting"] == 0


def test_recurring_jobs_fire_once_per_interval(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    start = datetime(2025, 6, 1, 3, 0, tzinfo=timezone.utc)

    first = maybe_enqueue_recurring(conn, config, LOGGER, now=start)
    assert first == ["check_all_feeds", "check_high_priority_feeds", "daily_cleanup"]
    assert maybe_enqueue_recurring(conn, config, LOGGER, now=start) == []
    assert sorted(_drain(conn)) == sorted(first)

    later = maybe_enqueue_recurring(conn, config, LOGGER, now=start + timedelta(minutes=6))
    assert later == ["check_high_priority_feeds"]
    _drain(conn)

    much_later = maybe_enqueue_recurring(conn, config, LOGGER, now=start + timedelta(minutes=16))
    assert much_later == ["check_all_feeds", "check_high_priority_feeds"]


def test_recurring_skips_when_job_still_pending(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    start = datetime(2025, 6, 1, 3, 0, tzinfo=timezone.utc)

    maybe_enqueue_recurring(conn, config, LOGGER, now=start)
    later = maybe_enqueue_recurring(conn, config, LOGGER, now=start + timedelta(minutes=30))
    assert later == []


def test_daily_cleanup_waits_for_configured_hour(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    early = datetime(2025, 6, 1, 1, 0, tzinfo=timezone.utc)

    assert "daily_cleanup" not in maybe_enqueue_recurring(conn, config, LOGGER, now=early)
    _drain(conn)
    next_day = datetime(2025, 6, 2, 2, 30, tzinfo=timezone.utc)
    assert "daily_cleanup" in maybe_enqueue_recurring(conn, config, LOGGER, now=next_day)


def test_schedules_can_be_disabled(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["schedules"]["enabled"] = False
    set_runtime_config(conn, custom)
    config = load_runtime_config(conn)
    assert maybe_enqueue_recurring(conn, config, LOGGER) == []
