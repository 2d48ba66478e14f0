from __future__ import annotations

import argparse
import logging
import os
import sqlite3
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any

from .classifier import EndorsementClassifier, load_classifier_rules
from .config import ConfigError, load_runtime_config
from .dispatcher import backoff_delay, enqueue, maybe_enqueue_recurring, queue_names
from .feeds import check_feeds, item_from_payload, item_key, item_text, item_to_payload
from .models import ClassificationResult, FeedItem, Job
from .scraper import scrape_all, scrape_for_candidate, scrape_for_endorser
from .storage import (
    claim_next_job,
    classification_exists,
    clean_finished_jobs,
    complete_job,
    create_endorsement,
    fail_job,
    find_candidate_by_name,
    find_endorser_by_name,
    get_feed,
    init_db,
    insert_classification,
    insert_notification,
    list_due_feeds,
    list_endorsements,
    list_feeds,
    retry_job,
)
from .utils import configure_logging, log_event, stable_id, utc_now_iso, utc_now_iso_offset

RECONNECT_DELAY_SECONDS = 5
AUTO_APPROVED_TAG = "auto_approved"


def _setup_logging() -> logging.Logger:
    return configure_logging("endorsenyc.worker")


def run_once(worker_id: str, queues: list[str] | None = None) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    try:
        maybe_enqueue_recurring(conn, config, logger)
        job = claim_next_job(
            conn,
            worker_id,
            queues=queues or queue_names(config),
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not job:
            return 0
        return _process_claimed_job(conn, config, job, logger)
    finally:
        conn.close()


def _process_claimed_job(conn, config, job: Job, logger: logging.Logger) -> int:
    try:
        result = run_claimed_job(conn, config, job, logger)
    except Exception as exc:  # noqa: BLE001
        if job.attempts < job.max_attempts:
            delay = backoff_delay(config, job.queue, job.attempts)
            retry_job(conn, job.id, str(exc), delay)
            log_event(
                logger,
                logging.WARNING,
                "job_retry_scheduled",
                job_id=job.id,
                job_type=job.job_type,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                delay_seconds=delay,
                error=str(exc),
            )
            return 1
        fail_job(conn, job.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            attempts=job.attempts,
            error=str(exc),
        )
        return 1

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def _process_claimed_job_thread(job: Job) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        return _process_claimed_job(conn, config, job, logger)
    finally:
        conn.close()


def run_loop(worker_id: str, sleep_seconds: int, queues: list[str] | None = None) -> int:
    """Poll the job table forever with one thread pool per queue.

    Each pool is sized to its queue's configured concurrency; a queue never
    has more claimed jobs in flight than that.
    """
    logger = _setup_logging()
    executors: dict[str, ThreadPoolExecutor] = {}
    in_flight: dict[str, set[Future]] = {}
    try:
        while True:
            try:
                conn = init_db()
                config = load_runtime_config(conn)
            except (ConfigError, sqlite3.Error) as exc:
                log_event(logger, logging.ERROR, "worker_startup_error", error=str(exc))
                time.sleep(RECONNECT_DELAY_SECONDS)
                continue

            try:
                maybe_enqueue_recurring(conn, config, logger)
                for queue in queues or queue_names(config):
                    queue_cfg = config.jobs.queues.get(queue)
                    limit = queue_cfg.concurrency if queue_cfg else 1
                    if queue not in executors:
                        executors[queue] = ThreadPoolExecutor(
                            max_workers=limit, thread_name_prefix=f"enyc-{queue}"
                        )
                    pending = in_flight.setdefault(queue, set())
                    while len(pending) < limit:
                        job = claim_next_job(
                            conn,
                            worker_id,
                            queues=[queue],
                            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
                        )
                        if not job:
                            break
                        log_event(
                            logger,
                            logging.INFO,
                            "job_claimed",
                            job_id=job.id,
                            job_type=job.job_type,
                            queue=queue,
                            attempt=job.attempts,
                        )
                        pending.add(executors[queue].submit(_process_claimed_job_thread, job))
            except sqlite3.Error as exc:
                log_event(logger, logging.ERROR, "worker_db_error", error=str(exc))
                time.sleep(RECONNECT_DELAY_SECONDS)
            finally:
                conn.close()

            running = set().union(*in_flight.values()) if in_flight else set()
            if not running:
                time.sleep(sleep_seconds)
                continue
            done, _ = wait(running, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
            for pending in in_flight.values():
                finished = pending & done
                pending -= finished
                for future in finished:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
    finally:
        for executor in executors.values():
            executor.shutdown(wait=True)


def run_claimed_job(conn, config, job: Job, logger: logging.Logger) -> dict[str, object]:
    payload = job.payload or {}
    if job.job_type == "check_all_feeds":
        if payload.get("due_only"):
            feeds = list_due_feeds(conn, utc_now_iso())
        else:
            feeds = list_feeds(conn, active_only=True)
        return check_feeds_and_enqueue(conn, config, feeds, logger)
    if job.job_type == "check_high_priority_feeds":
        feeds = list_feeds(conn, active_only=True, high_priority_only=True)
        return check_feeds_and_enqueue(conn, config, feeds, logger)
    if job.job_type == "check_feed":
        feed = get_feed(conn, str(payload.get("feed_id") or ""))
        if not feed:
            raise ValueError("feed_not_found")
        return check_feeds_and_enqueue(conn, config, [feed], logger)
    if job.job_type == "classify_items":
        return _handle_classify_items(conn, config, payload, logger)
    if job.job_type == "notify":
        return _handle_notify(conn, payload, logger)
    if job.job_type == "daily_cleanup":
        return _handle_daily_cleanup(conn, config, logger)
    if job.job_type == "scrape_endorsements":
        return _handle_scrape(conn, config, payload, logger)
    raise ValueError(f"unsupported job type {job.job_type}")


def check_feeds_and_enqueue(conn, config, feeds, logger: logging.Logger) -> dict[str, object]:
    results = check_feeds(conn, feeds, config, logger)
    items = [
        {**item_to_payload(item), "feed_id": result.feed_id}
        for result in results
        for item in result.items
    ]
    classify_job_id = None
    if items:
        classify_job_id = enqueue(
            conn,
            config,
            "classify_items",
            {"source_type": config.ingest.default_source_type, "items": items},
            priority=config.pipeline.classify_priority,
        )
        log_event(
            logger,
            logging.INFO,
            "classify_job_enqueued",
            job_id=classify_job_id,
            items=len(items),
        )
    return {
        "feeds_checked": len(results),
        "feeds_failed": sum(1 for result in results if result.status != "ok"),
        "items_found": len(items),
        "classify_job_id": classify_job_id,
    }


def _handle_classify_items(
    conn, config, payload: dict[str, Any], logger: logging.Logger
) -> dict[str, object]:
    """Classify feed items and fan out notifications and auto-approvals.

    The classification row is written last, under an id derived from the
    item key, so a retried job redoes the follow-up work for any item whose
    row is missing and reuses the same classification id.
    """
    source_type = str(payload.get("source_type") or config.ingest.default_source_type)
    classifier = EndorsementClassifier(load_classifier_rules(conn))
    counts = {"items": 0, "classified": 0, "high_confidence": 0, "review": 0, "auto_approved": 0}
    for raw in payload.get("items") or []:
        counts["items"] += 1
        item = item_from_payload(raw)
        key = item_key(item)
        if classification_exists(conn, key):
            continue
        result = classifier.classify(
            item_text(item),
            item.link,
            source_type,
            author=item.author,
            organization=item.source,
        )
        if not result.candidate_mentions:
            continue
        classification_id = stable_id("classification", key)
        status = "pending"
        endorsement_id = None
        notify_payload = {
            "subject_key": notification_subject(item),
            "classification_id": classification_id,
            "source_url": item.link,
            "confidence": result.confidence,
            "candidates": result.candidate_mentions,
        }
        if classifier.should_auto_approve(result):
            counts["high_confidence"] += 1
            enqueue(
                conn,
                config,
                "notify",
                {**notify_payload, "kind": "high_confidence"},
                priority=config.pipeline.high_confidence_priority,
            )
            if config.pipeline.auto_approve:
                endorsement_id = _auto_approve(conn, config, item, result, logger)
            if endorsement_id:
                counts["auto_approved"] += 1
                status = "auto_approved"
                enqueue(
                    conn,
                    config,
                    "notify",
                    {**notify_payload, "kind": "new_endorsement", "endorsement_id": endorsement_id},
                    priority=config.pipeline.high_confidence_priority,
                )
        elif result.requires_human_review:
            counts["review"] += 1
            enqueue(
                conn,
                config,
                "notify",
                {**notify_payload, "kind": "human_review_needed"},
                priority=config.pipeline.review_priority,
            )
        if insert_classification(
            conn,
            key,
            result,
            classification_id=classification_id,
            status=status,
            endorsement_id=endorsement_id,
            feed_id=raw.get("feed_id"),
            title=item.title,
            author=item.author,
        ):
            counts["classified"] += 1
    log_event(logger, logging.INFO, "items_classified", **counts)
    return counts


def notification_subject(item: FeedItem) -> str:
    return f"{item.source}-{item.title[:50]}"


def _auto_approve(
    conn, config, item: FeedItem, result: ClassificationResult, logger: logging.Logger
) -> str | None:
    if not item.author or len(result.candidate_mentions) != 1:
        return None
    endorser = find_endorser_by_name(conn, item.author)
    if not endorser:
        return None
    candidate = find_candidate_by_name(conn, result.candidate_mentions[0])
    if not candidate:
        log_event(
            logger,
            logging.WARNING,
            "auto_approve_candidate_missing",
            candidate=result.candidate_mentions[0],
        )
        return None
    for existing in list_endorsements(conn, candidate_id=candidate.id, endorser_id=endorser.id):
        if item.link and existing.source_url == item.link:
            # Left behind by an earlier attempt of the same item.
            if AUTO_APPROVED_TAG in existing.context_tags:
                return existing.id
            return None
    endorsement = create_endorsement(
        conn,
        {
            "endorser_id": endorser.id,
            "candidate_id": candidate.id,
            "source_url": item.link or None,
            "source_type": result.source_type,
            "source_title": item.title or None,
            "quote": item.description[:500] or None,
            "endorsement_type": result.endorsement_type,
            "sentiment": result.sentiment,
            "confidence": config.pipeline.auto_approve_confidence,
            "endorsed_at": item.pub_date or None,
            "context_tags": [AUTO_APPROVED_TAG],
        },
    )
    log_event(
        logger,
        logging.INFO,
        "endorsement_auto_approved",
        endorsement_id=endorsement.id,
        endorser_id=endorser.id,
        candidate_id=candidate.id,
    )
    return endorsement.id


def _handle_notify(conn, payload: dict[str, Any], logger: logging.Logger) -> dict[str, object]:
    kind = str(payload.get("kind") or "")
    subject_key = str(payload.get("subject_key") or "")
    if not subject_key:
        raise ValueError("notification_subject_required")
    details = {key: value for key, value in payload.items() if key not in {"kind", "subject_key"}}
    notification_id = insert_notification(conn, kind, subject_key, details)
    level = logging.WARNING if kind == "human_review_needed" else logging.INFO
    log_event(logger, level, "notification_recorded", kind=kind, subject_key=subject_key)
    return {"notification_id": notification_id, "kind": kind}


def _handle_daily_cleanup(conn, config, logger: logging.Logger) -> dict[str, object]:
    cutoff = utc_now_iso_offset(seconds=-config.jobs.retention_hours * 3600)
    removed = clean_finished_jobs(conn, cutoff, config.jobs.keep_finished)
    log_event(logger, logging.INFO, "jobs_cleaned", removed=removed, cutoff=cutoff)
    return {"removed_jobs": removed}


def _handle_scrape(conn, config, payload: dict[str, Any], logger: logging.Logger) -> dict[str, object]:
    if payload.get("endorser_id"):
        return scrape_for_endorser(conn, config, str(payload["endorser_id"]), logger)
    if payload.get("candidate_id"):
        return scrape_for_candidate(conn, config, str(payload["candidate_id"]), logger)
    return scrape_all(conn, config, logger)


def _parse_queues(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="endorsenyc-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument(
        "--queues",
        default=os.environ.get("ENYC_WORKER_QUEUES", ""),
        help="Comma-separated queues to consume (default: all)",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    queues = _parse_queues(args.queues)
    if args.once:
        return run_once(args.worker_id, queues)
    return run_loop(args.worker_id, args.sleep, queues)


if __name__ == "__main__":
    raise SystemExit(main())
