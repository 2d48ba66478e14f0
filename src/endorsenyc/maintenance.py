from __future__ import annotations

import logging

from .storage import count_table
from .utils import log_event, normalize_url

_TABLES = ("candidates", "endorsers", "endorsements", "feeds")


def clean_duplicates(conn, logger: logging.Logger) -> dict[str, dict[str, int]]:
    """Merge duplicate rows left behind by repeated imports or seeding.

    Candidates and endorsers are matched by name and the oldest row wins;
    endorsements pointing at a removed row are moved to the survivor.
    Endorsements are duplicates when endorser, candidate, source URL and
    endorsement date all match. Feeds are duplicates by normalized URL.
    """
    before = {table: count_table(conn, table) for table in _TABLES}
    conn.begin_immediate()
    try:
        merged_candidates = _merge_by_name(conn, "candidates", "candidate_id")
        merged_endorsers = _merge_by_name(conn, "endorsers", "endorser_id")
        removed_endorsements = _remove_duplicate_endorsements(conn)
        removed_feeds = _remove_duplicate_feeds(conn)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    after = {table: count_table(conn, table) for table in _TABLES}
    log_event(
        logger,
        logging.INFO,
        "duplicates_cleaned",
        candidates=merged_candidates,
        endorsers=merged_endorsers,
        endorsements=removed_endorsements,
        feeds=removed_feeds,
    )
    return {"before": before, "after": after}


def _merge_by_name(conn, table: str, foreign_key: str) -> int:
    names = conn.execute(
        f"SELECT name FROM {table} GROUP BY name HAVING COUNT(*) > 1"
    ).fetchall()
    removed = 0
    for (name,) in names:
        ids = [
            row[0]
            for row in conn.execute(
                f"SELECT id FROM {table} WHERE name = ? ORDER BY created_at ASC, id ASC",
                (name,),
            ).fetchall()
        ]
        keep_id, duplicate_ids = ids[0], ids[1:]
        for duplicate_id in duplicate_ids:
            conn.execute(
                f"UPDATE endorsements SET {foreign_key} = ? WHERE {foreign_key} = ?",
                (keep_id, duplicate_id),
            )
            conn.execute(f"DELETE FROM {table} WHERE id = ?", (duplicate_id,))
            removed += 1
    return removed


def _remove_duplicate_endorsements(conn) -> int:
    groups = conn.execute(
        """
        SELECT endorser_id, candidate_id, source_url, endorsed_at
        FROM endorsements
        GROUP BY endorser_id, candidate_id, source_url, endorsed_at
        HAVING COUNT(*) > 1
        """
    ).fetchall()
    removed = 0
    for endorser_id, candidate_id, source_url, endorsed_at in groups:
        ids = [
            row[0]
            for row in conn.execute(
                """
                SELECT id FROM endorsements
                WHERE endorser_id = ? AND candidate_id = ?
                  AND source_url IS ? AND endorsed_at IS ?
                ORDER BY created_at ASC, id ASC
                """,
                (endorser_id, candidate_id, source_url, endorsed_at),
            ).fetchall()
        ]
        keep_id = ids[0]
        for duplicate_id in ids[1:]:
            conn.execute(
                "UPDATE classifications SET endorsement_id = ? WHERE endorsement_id = ?",
                (keep_id, duplicate_id),
            )
            conn.execute("DELETE FROM endorsements WHERE id = ?", (duplicate_id,))
            removed += 1
    return removed


def _remove_duplicate_feeds(conn) -> int:
    rows = conn.execute("SELECT id, url FROM feeds ORDER BY created_at ASC, id ASC").fetchall()
    seen: set[str] = set()
    removed = 0
    for feed_id, url in rows:
        key = normalize_url(url)
        if key in seen:
            conn.execute("DELETE FROM feed_runs WHERE feed_id = ?", (feed_id,))
            conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            removed += 1
            continue
        seen.add(key)
    return removed
