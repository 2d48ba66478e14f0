from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict

from .classifier import EndorsementClassifier, load_classifier_rules
from .config import ConfigError, load_feeds_file, load_population_file, load_runtime_config
from .dispatcher import JOB_QUEUES, enqueue, get_queue_stats
from .feed_generator import (
    HIGH_INFLUENCE_THRESHOLD,
    feeds_by_category,
    generate_all_feeds,
    generator_stats,
    sync_generated_feeds,
)
from .feeds import probe_feed
from .maintenance import clean_duplicates
from .models import SOURCE_TYPES
from .populate import populate_endorsements
from .scraper import scrape_all, scrape_for_candidate, scrape_for_endorser
from .seed import seed_sample_data
from .storage import (
    clear_feeds,
    get_feed,
    get_schema_version,
    get_system_status,
    init_db,
    list_endorsers,
    list_feeds,
    list_jobs,
    upsert_feed,
)
from .utils import configure_logging, json_dumps, log_event, slugify
from .worker import check_feeds_and_enqueue


def _setup_logging() -> logging.Logger:
    return configure_logging("endorsenyc.cli")


def _open(logger: logging.Logger):
    conn = init_db()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    log_event(logger, logging.INFO, "db_migrated", path=conn.path, version=get_schema_version(conn))
    return 0


def _cmd_db_seed(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    seed_sample_data(conn, logger)
    return 0


def _cmd_db_populate(args: argparse.Namespace, logger: logging.Logger) -> int:
    data = None
    if args.path:
        try:
            data = load_population_file(args.path)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "populate_error", error=str(exc))
            return 1
    conn = init_db()
    try:
        populate_endorsements(conn, data, logger)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "populate_error", error=str(exc))
        return 1
    return 0


def _cmd_db_clean_duplicates(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    report = clean_duplicates(conn, logger)
    for table, before in report["before"].items():
        log_event(
            logger,
            logging.INFO,
            "table_count",
            table=table,
            before=before,
            after=report["after"][table],
        )
    return 0


def _cmd_feeds_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        feeds = load_feeds_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "feeds_import_error", error=str(exc))
        return 1
    if not feeds:
        log_event(logger, logging.ERROR, "feeds_import_error", error="no feeds found")
        return 1

    conn = init_db()
    if args.replace:
        removed = clear_feeds(conn)
        log_event(logger, logging.INFO, "feeds_cleared", count=removed)
    for feed in feeds:
        feed_id = feed.get("id") or slugify(str(feed.get("name") or feed["url"]))
        try:
            upsert_feed(conn, {**feed, "id": feed_id})
        except ValueError as exc:
            log_event(logger, logging.ERROR, "feeds_import_error", feed_id=feed_id, error=str(exc))
            return 1
    log_event(logger, logging.INFO, "feeds_imported", count=len(feeds), path=args.path)
    return 0


def _cmd_feeds_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    feeds = list_feeds(conn, active_only=False)
    if not feeds:
        log_event(
            logger,
            logging.WARNING,
            "no_feeds",
            hint="Import feeds with `endorsenyc feeds import feeds.yml` or `endorsenyc db seed`",
        )
        return 1
    for feed in feeds:
        log_event(
            logger,
            logging.INFO,
            "feed",
            feed_id=feed.id,
            active=feed.is_active,
            high_priority=feed.is_high_priority,
            url=feed.url,
            last_check_at=feed.last_check_at,
            error_count=feed.error_count,
        )
    log_event(logger, logging.INFO, "feeds_listed", count=len(feeds))
    return 0


def _cmd_feeds_test(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    result = probe_feed(args.url, config, logger)
    log_event(logger, logging.INFO, "feed_test", url=args.url, **result)
    return 0 if result.get("valid") else 1


def _cmd_feeds_check(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    if args.feed_id:
        feed = get_feed(conn, args.feed_id)
        if not feed:
            log_event(logger, logging.ERROR, "feed_not_found", feed_id=args.feed_id)
            return 1
        feeds = [feed]
    else:
        feeds = list_feeds(conn, active_only=True)
    summary = check_feeds_and_enqueue(conn, config, feeds, logger)
    log_event(logger, logging.INFO, "feeds_check_summary", **summary)
    return 0 if not summary["feeds_failed"] else 1


def _cmd_feeds_generate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    endorsers = list_endorsers(conn)
    if args.category:
        feeds = feeds_by_category(endorsers, args.category)
    else:
        feeds = generate_all_feeds(endorsers, args.min_influence)
    log_event(logger, logging.INFO, "feeds_generated", **generator_stats(endorsers, feeds))
    if args.dry_run:
        for feed in feeds:
            log_event(logger, logging.INFO, "generated_feed", feed_id=feed["id"], url=feed["url"])
        return 0
    sync_generated_feeds(conn, feeds, logger)
    return 0


def _cmd_classify(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        classifier = EndorsementClassifier(load_classifier_rules(conn))
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    result = classifier.classify(
        args.text,
        args.source_url,
        args.source_type,
        author=args.author,
        organization=args.organization,
    )
    logger.info(json.dumps(asdict(result), indent=2, sort_keys=True))
    return 0


def _cmd_scrape(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        if args.endorser:
            summary = scrape_for_endorser(conn, config, args.endorser, logger)
        elif args.candidate:
            summary = scrape_for_candidate(conn, config, args.candidate, logger)
        else:
            summary = scrape_all(conn, config, logger)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "scrape_error", error=str(exc))
        return 1
    return 0 if not summary["errors"] else 1


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    payload: dict[str, object] = {}
    if args.feed_id:
        payload["feed_id"] = args.feed_id
    if args.endorser_id:
        payload["endorser_id"] = args.endorser_id
    if args.candidate_id:
        payload["candidate_id"] = args.candidate_id
    job_id = enqueue(
        conn,
        config,
        args.job_type,
        payload or None,
        priority=args.priority,
        debounce=args.debounce,
    )
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    for job in list_jobs(conn, limit=args.limit, queue=args.queue, status=args.status):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            queue=job.queue,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            requested_at=job.requested_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_jobs_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    for queue, stats in get_queue_stats(conn, config).items():
        log_event(logger, logging.INFO, "queue_stats", queue=queue, **stats)
    return 0


def _cmd_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    status = get_system_status(conn)
    status["queues"] = get_queue_stats(conn, config)
    logger.info(json_dumps(status))
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "admin_serving", host=args.host, port=args.port)
    uvicorn.run("endorsenyc.admin:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="endorsenyc", description="EndorseNYC CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)
    db_seed = db_subparsers.add_parser("seed", help="Load sample candidates, endorsers and feeds")
    db_seed.set_defaults(func=_cmd_db_seed)
    db_populate = db_subparsers.add_parser(
        "populate", help="Add known candidates, endorsers and endorsements that are missing"
    )
    db_populate.add_argument("path", nargs="?", help="YAML file; defaults to the bundled data")
    db_populate.set_defaults(func=_cmd_db_populate)
    db_clean = db_subparsers.add_parser("clean-duplicates", help="Merge duplicate rows")
    db_clean.set_defaults(func=_cmd_db_clean_duplicates)

    feeds_parser = subparsers.add_parser("feeds", help="Manage monitored feeds")
    feeds_subparsers = feeds_parser.add_subparsers(dest="feeds_command", required=True)
    feeds_import = feeds_subparsers.add_parser("import", help="Import feeds from YAML")
    feeds_import.add_argument("path")
    feeds_import.add_argument("--replace", action="store_true", help="Remove existing feeds first")
    feeds_import.set_defaults(func=_cmd_feeds_import)
    feeds_list = feeds_subparsers.add_parser("list", help="List feeds")
    feeds_list.set_defaults(func=_cmd_feeds_list)
    feeds_test = feeds_subparsers.add_parser("test", help="Fetch and parse a feed URL")
    feeds_test.add_argument("url")
    feeds_test.set_defaults(func=_cmd_feeds_test)
    feeds_check = feeds_subparsers.add_parser("check", help="Check feeds now")
    feeds_check.add_argument("--feed-id", help="Check a single feed")
    feeds_check.set_defaults(func=_cmd_feeds_check)
    feeds_generate = feeds_subparsers.add_parser(
        "generate", help="Generate feeds for curated sources and endorsers"
    )
    feeds_generate.add_argument("--min-influence", type=int, default=HIGH_INFLUENCE_THRESHOLD)
    feeds_generate.add_argument("--category", help="Only endorsers in this category")
    feeds_generate.add_argument("--dry-run", action="store_true")
    feeds_generate.set_defaults(func=_cmd_feeds_generate)

    classify_parser = subparsers.add_parser("classify", help="Classify a piece of text")
    classify_parser.add_argument("text")
    classify_parser.add_argument("--source-url", default="")
    classify_parser.add_argument("--source-type", choices=SOURCE_TYPES, default="website")
    classify_parser.add_argument("--author")
    classify_parser.add_argument("--organization")
    classify_parser.set_defaults(func=_cmd_classify)

    scrape_parser = subparsers.add_parser("scrape", help="Search the web for endorsements")
    scrape_target = scrape_parser.add_mutually_exclusive_group()
    scrape_target.add_argument("--endorser", help="Endorser id")
    scrape_target.add_argument("--candidate", help="Candidate id")
    scrape_parser.set_defaults(func=_cmd_scrape)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=sorted(JOB_QUEUES))
    jobs_enqueue.add_argument("--feed-id")
    jobs_enqueue.add_argument("--endorser-id")
    jobs_enqueue.add_argument("--candidate-id")
    jobs_enqueue.add_argument("--priority", type=int, default=0)
    jobs_enqueue.add_argument(
        "--debounce",
        action="store_true",
        help="Avoid enqueuing if a job of the same type is queued/running",
    )
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)
    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20)
    jobs_list.add_argument("--queue")
    jobs_list.add_argument("--status")
    jobs_list.set_defaults(func=_cmd_jobs_list)
    jobs_stats = jobs_subparsers.add_parser("stats", help="Per-queue job counts")
    jobs_stats.set_defaults(func=_cmd_jobs_stats)

    status_parser = subparsers.add_parser("status", help="Show system status")
    status_parser.set_defaults(func=_cmd_status)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
