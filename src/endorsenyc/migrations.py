from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("endorsenyc.migrations")
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS candidates (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            party TEXT NULL,
            photo_url TEXT NULL,
            website TEXT NULL,
            bio TEXT NULL,
            campaign_color TEXT NULL,
            position_summary_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS endorsers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            display_name TEXT NULL,
            title TEXT NULL,
            organization TEXT NULL,
            category TEXT NOT NULL,
            subcategory TEXT NULL,
            borough TEXT NULL,
            influence_score INTEGER NOT NULL DEFAULT 0,
            twitter_handle TEXT NULL,
            instagram_handle TEXT NULL,
            linkedin_url TEXT NULL,
            personal_website TEXT NULL,
            is_organization INTEGER NOT NULL DEFAULT 0,
            verification_status TEXT NOT NULL DEFAULT 'unverified',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS endorsements (
            id TEXT PRIMARY KEY,
            endorser_id TEXT NOT NULL REFERENCES endorsers(id),
            candidate_id TEXT NOT NULL REFERENCES candidates(id),
            source_url TEXT NULL,
            source_type TEXT NOT NULL,
            source_title TEXT NULL,
            quote TEXT NULL,
            endorsement_type TEXT NOT NULL DEFAULT 'endorsement',
            sentiment TEXT NOT NULL DEFAULT 'positive',
            confidence TEXT NOT NULL DEFAULT 'reported',
            strength TEXT NOT NULL DEFAULT 'standard',
            endorsed_at TEXT NULL,
            discovered_at TEXT NOT NULL,
            verified_by TEXT NULL,
            verified_at TEXT NULL,
            verification_notes TEXT NULL,
            is_retracted INTEGER NOT NULL DEFAULT 0,
            retraction_reason TEXT NULL,
            retracted_at TEXT NULL,
            context_tags_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_endorsements_pair ON endorsements(endorser_id, candidate_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_endorsements_endorsed_at ON endorsements(endorsed_at)"
    )


def _migration_feeds(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feeds (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            category TEXT NULL,
            check_frequency_minutes INTEGER NOT NULL DEFAULT 30,
            is_active INTEGER NOT NULL DEFAULT 1,
            is_high_priority INTEGER NOT NULL DEFAULT 0,
            keywords_json TEXT NULL,
            exclude_keywords_json TEXT NULL,
            last_check_at TEXT NULL,
            last_success_at TEXT NULL,
            error_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feed_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NULL,
            status TEXT NOT NULL,
            http_status INTEGER NULL,
            items_found INTEGER NOT NULL DEFAULT 0,
            items_accepted INTEGER NOT NULL DEFAULT 0,
            skipped_stale INTEGER NOT NULL DEFAULT 0,
            skipped_filters INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_feed_runs_feed ON feed_runs(feed_id, started_at DESC)"
    )


def _migration_jobs_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            queue TEXT NOT NULL,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            requested_at TEXT NOT NULL,
            not_before TEXT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_queue_status ON jobs(queue, status, priority, requested_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_locked ON jobs(locked_by, locked_at)"
    )


def _migration_classifications(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS classifications (
            id TEXT PRIMARY KEY,
            item_key TEXT NOT NULL UNIQUE,
            feed_id TEXT NULL,
            source_url TEXT NULL,
            source_type TEXT NOT NULL,
            title TEXT NULL,
            raw_text TEXT NOT NULL,
            author TEXT NULL,
            confidence REAL NOT NULL,
            candidate_mentions_json TEXT NOT NULL,
            endorsement_type TEXT NOT NULL,
            sentiment TEXT NOT NULL,
            requires_human_review INTEGER NOT NULL,
            reasoning TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            endorsement_id TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_classifications_status ON classifications(status, created_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            subject_key TEXT NOT NULL,
            payload_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _migration_api_secrets(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_secrets (
            name TEXT PRIMARY KEY,
            key_id TEXT NOT NULL,
            value_enc TEXT NOT NULL,
            value_last4 TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_feeds", _migration_feeds),
        ("003_jobs_table", _migration_jobs_table),
        ("004_classifications", _migration_classifications),
        ("005_api_secrets", _migration_api_secrets),
    ]
