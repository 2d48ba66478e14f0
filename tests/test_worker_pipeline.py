import logging
import sqlite3
from datetime import datetime, timezone
from email.utils import format_datetime

import pytest

from endorsenyc import feeds, worker
from endorsenyc.config import load_runtime_config
from endorsenyc.dispatcher import enqueue
from endorsenyc.storage import (
    claim_next_job,
    complete_job,
    create_endorser,
    get_job,
    init_db,
    insert_classification,
    list_classifications,
    list_endorsements,
    list_jobs,
    list_notifications,
    upsert_candidate,
    upsert_feed,
)

LOGGER = logging.getLogger("test")


def _seed(conn):
    upsert_candidate(conn, {"id": "zohran-mamdani", "name": "Zohran Mamdani"})
    upsert_candidate(conn, {"id": "eric-adams", "name": "Eric Adams"})
    create_endorser(
        conn,
        {
            "id": "aoc",
            "name": "Alexandria Ocasio-Cortez",
            "display_name": "AOC",
            "category": "politician",
            "influence_score": 96,
            "twitter_handle": "@AOC",
        },
    )


def _items():
    return [
        {
            "title": "AOC endorses Zohran Mamdani",
            "description": "I'm proud to endorse Zohran Mamdani for mayor",
            "content": "",
            "link": "https://example.com/aoc-mamdani",
            "pub_date": "2025-06-01T12:00:00+00:00",
            "author": "AOC",
            "categories": [],
            "source": "Test Politics",
            "feed_id": "test-politics",
        },
        {
            "title": "Eric Adams budget called weak and ineffective",
            "description": "Critics are concerned",
            "content": "",
            "link": "https://example.com/adams-budget",
            "pub_date": "2025-06-01T12:00:00+00:00",
            "author": None,
            "categories": [],
            "source": "Test Politics",
            "feed_id": "test-politics",
        },
        {
            "title": "Subway service changes this weekend",
            "description": "Plan ahead",
            "content": "",
            "link": "https://example.com/subway",
            "pub_date": "2025-06-01T12:00:00+00:00",
            "author": None,
            "categories": [],
            "source": "Test Politics",
            "feed_id": "test-politics",
        },
    ]


def _claim(conn, queue: str):
    job = claim_next_job(conn, "worker-1", queues=[queue])
    assert job is not None
    return job


def test_classify_items_auto_approves_and_routes_notifications(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    _seed(conn)
    enqueue(conn, config, "classify_items", {"source_type": "event", "items": _items()})

    result = worker.run_claimed_job(conn, config, _claim(conn, "classify"), LOGGER)

    assert result == {
        "items": 3,
        "classified": 2,
        "high_confidence": 1,
        "review": 1,
        "auto_approved": 1,
    }
    endorsements = list_endorsements(conn, endorser_id="aoc")
    assert len(endorsements) == 1
    assert endorsements[0].candidate_id == "zohran-mamdani"
    assert endorsements[0].confidence == "reported"
    assert endorsements[0].context_tags == ["auto_approved"]
    assert endorsements[0].source_url == "https://example.com/aoc-mamdani"

    statuses = {row["source_url"]: row["status"] for row in list_classifications(conn)}
    assert statuses == {
        "https://example.com/aoc-mamdani": "auto_approved",
        "https://example.com/adams-budget": "pending",
    }

    notify_jobs = list_jobs(conn, queue="notify")
    kinds = sorted(job.payload["kind"] for job in notify_jobs)
    assert kinds == ["high_confidence", "human_review_needed", "new_endorsement"]
    priorities = {job.payload["kind"]: job.priority for job in notify_jobs}
    assert priorities["high_confidence"] == config.pipeline.high_confidence_priority
    assert priorities["human_review_needed"] == config.pipeline.review_priority
    subjects = {job.payload["subject_key"] for job in notify_jobs}
    assert "Test Politics-AOC endorses Zohran Mamdani" in subjects


def test_classify_items_skips_already_seen_items(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    _seed(conn)
    for _ in range(2):
        enqueue(conn, config, "classify_items", {"source_type": "event", "items": _items()})

    worker.run_claimed_job(conn, config, _claim(conn, "classify"), LOGGER)
    second = worker.run_claimed_job(conn, config, _claim(conn, "classify"), LOGGER)

    assert second["classified"] == 0
    assert len(list_endorsements(conn)) == 1


def test_classify_items_retry_redoes_follow_up(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    _seed(conn)
    enqueue(conn, config, "classify_items", {"source_type": "event", "items": _items()[:1]})
    job = _claim(conn, "classify")

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(worker, "insert_classification", locked)
    with pytest.raises(sqlite3.OperationalError):
        worker.run_claimed_job(conn, config, job, LOGGER)
    assert list_classifications(conn) == []
    monkeypatch.setattr(worker, "insert_classification", insert_classification)

    result = worker.run_claimed_job(conn, config, job, LOGGER)

    assert result["classified"] == 1
    assert result["auto_approved"] == 1
    endorsements = list_endorsements(conn)
    assert len(endorsements) == 1
    rows = list_classifications(conn)
    assert rows[0]["status"] == "auto_approved"
    assert rows[0]["endorsement_id"] == endorsements[0].id
    kinds = sorted(queued.payload["kind"] for queued in list_jobs(conn, queue="notify"))
    assert kinds == ["high_confidence", "high_confidence", "new_endorsement", "new_endorsement"]


def test_notify_records_notification(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    enqueue(
        conn,
        config,
        "notify",
        {"kind": "human_review_needed", "subject_key": "Feed-Title", "confidence": 0.6},
    )

    result = worker.run_claimed_job(conn, config, _claim(conn, "notify"), LOGGER)

    notifications = list_notifications(conn)
    assert result["kind"] == "human_review_needed"
    assert notifications[0]["subject_key"] == "Feed-Title"
    assert notifications[0]["payload"] == {"confidence": 0.6}


def test_notify_requires_subject(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    enqueue(conn, config, "notify", {"kind": "high_confidence"})
    with pytest.raises(ValueError) as excinfo:
        worker.run_claimed_job(conn, config, _claim(conn, "notify"), LOGGER)
    assert str(excinfo.value) == "notification_subject_required"


def test_check_feed_job_enqueues_classification(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    upsert_feed(
        conn,
        {
            "id": "test-politics",
            "name": "Test Politics",
            "url": "https://example.com/feed",
            "keywords": ["endorse"],
        },
    )
    published = format_datetime(datetime.now(tz=timezone.utc))
    rss = (
        '<?xml version="1.0"?><rss version="2.0"><channel><title>Test</title>'
        "<item><title>Union endorses Mamdani</title>"
        "<link>https://example.com/union</link>"
        f"<description>Big news</description><pubDate>{published}</pubDate></item>"
        "</channel></rss>"
    ).encode("utf-8")
    monkeypatch.setattr(feeds, "_fetch_url", lambda *args, **kwargs: (200, rss, None))
    enqueue(conn, config, "check_feed", {"feed_id": "test-politics"})

    result = worker.run_claimed_job(conn, config, _claim(conn, "fetch"), LOGGER)

    assert result["feeds_checked"] == 1
    assert result["feeds_failed"] == 0
    assert result["items_found"] == 1
    classify_job = get_job(conn, result["classify_job_id"])
    assert classify_job is not None
    assert classify_job.priority == config.pipeline.classify_priority
    assert classify_job.payload["source_type"] == "rss"
    assert classify_job.payload["items"][0]["feed_id"] == "test-politics"
    assert classify_job.payload["items"][0]["link"] == "https://example.com/union"


def test_failed_job_is_retried_with_backoff(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    job_id = enqueue(conn, config, "check_feed", {"feed_id": "missing"})

    assert worker._process_claimed_job(conn, config, _claim(conn, "fetch"), LOGGER) == 1

    job = get_job(conn, job_id)
    assert job is not None
    assert job.status == "queued"
    assert job.error == "feed_not_found"
    assert job.not_before is not None
    assert claim_next_job(conn, "worker-1", queues=["fetch"]) is None


def test_job_fails_after_last_attempt(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    job_id = enqueue(conn, config, "scrape_endorsements", {"endorser_id": "missing"})

    assert worker._process_claimed_job(conn, config, _claim(conn, "scrape"), LOGGER) == 1

    job = get_job(conn, job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.error == "endorser_not_found"


def test_daily_cleanup_removes_old_finished_jobs(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    old_id = enqueue(conn, config, "notify", {"kind": "high_confidence", "subject_key": "x"})
    complete_job(conn, _claim(conn, "notify").id, result={"ok": True})
    conn.execute(
        "UPDATE jobs SET finished_at = ? WHERE id = ?",
        ("2020-01-01T00:00:00+00:00", old_id),
    )
    conn.commit()
    enqueue(conn, config, "daily_cleanup")

    result = worker.run_claimed_job(conn, config, _claim(conn, "fetch"), LOGGER)

    assert result == {"removed_jobs": 1}
    assert get_job(conn, old_id) is None


def test_run_once_processes_scheduled_job():
    assert worker.run_once("worker-1") == 0
    conn = init_db()
    jobs = list_jobs(conn, limit=10)
    assert any(job.status == "succeeded" for job in jobs)


def test_parse_queues():
    assert worker._parse_queues("fetch, classify,,") == ["fetch", "classify"]
    assert worker._parse_queues("") is None
