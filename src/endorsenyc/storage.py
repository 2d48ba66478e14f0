from __future__ import annotations

import json
import uuid
from datetime import timedelta
from typing import Any, Iterable

from .db import DBConn, connect_db, get_state_db_path
from .models import (
    CLASSIFICATION_STATUSES,
    CONFIDENCE_LEVELS,
    ENDORSEMENT_TYPES,
    ENDORSER_CATEGORIES,
    NOTIFICATION_KINDS,
    SENTIMENTS,
    SOURCE_TYPES,
    STRENGTHS,
    VERIFICATION_STATUSES,
    Candidate,
    ClassificationResult,
    Endorsement,
    Endorser,
    Feed,
    Job,
)
from .security.secrets import decrypt_secret, encrypt_secret
from .utils import json_dumps, normalize_url, parse_iso, utc_now_iso, utc_now_iso_offset


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path or get_state_db_path())


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Candidates

_CANDIDATE_COLUMNS = (
    "id, name, party, photo_url, website, bio, campaign_color, position_summary_json, created_at"
)


def upsert_candidate(conn: Any, candidate: dict[str, Any]) -> Candidate:
    name = str(candidate.get("name") or "").strip()
    if not name:
        raise ValueError("candidate_name_required")
    candidate_id = str(candidate.get("id") or _new_id())
    existing = get_candidate(conn, candidate_id)
    created_at = existing.created_at if existing else utc_now_iso()
    conn.execute(
        """
        INSERT INTO candidates
            (id, name, party, photo_url, website, bio, campaign_color,
             position_summary_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            party = excluded.party,
            photo_url = excluded.photo_url,
            website = excluded.website,
            bio = excluded.bio,
            campaign_color = excluded.campaign_color,
            position_summary_json = excluded.position_summary_json
        """,
        (
            candidate_id,
            name,
            candidate.get("party"),
            candidate.get("photo_url"),
            candidate.get("website"),
            candidate.get("bio"),
            candidate.get("campaign_color"),
            json_dumps(candidate.get("position_summary") or {}),
            created_at,
        ),
    )
    conn.commit()
    return get_candidate(conn, candidate_id)  # type: ignore[return-value]


def get_candidate(conn: Any, candidate_id: str) -> Candidate | None:
    row = conn.execute(
        f"SELECT {_CANDIDATE_COLUMNS} FROM candidates WHERE id = ?", (candidate_id,)
    ).fetchone()
    return _row_to_candidate(row) if row else None


def get_candidate_by_name(conn: Any, name: str) -> Candidate | None:
    row = conn.execute(
        f"SELECT {_CANDIDATE_COLUMNS} FROM candidates WHERE name = ? ORDER BY created_at LIMIT 1",
        ((name or "").strip(),),
    ).fetchone()
    return _row_to_candidate(row) if row else None


def list_candidates(conn: Any) -> list[Candidate]:
    rows = conn.execute(
        f"SELECT {_CANDIDATE_COLUMNS} FROM candidates ORDER BY name"
    ).fetchall()
    return [_row_to_candidate(row) for row in rows]


def find_candidate_by_name(conn: Any, name: str) -> Candidate | None:
    """Resolve a free-form candidate name to a stored candidate.

    Tries an exact case-insensitive match, then substring containment in
    either direction, then any shared name part longer than two letters.
    """
    wanted = (name or "").strip().lower()
    if not wanted:
        return None
    candidates = list_candidates(conn)
    for candidate in candidates:
        if candidate.name.lower() == wanted:
            return candidate
    for candidate in candidates:
        stored = candidate.name.lower()
        if wanted in stored or stored in wanted:
            return candidate
    wanted_parts = {part for part in wanted.split() if len(part) > 2}
    for candidate in candidates:
        stored_parts = {part for part in candidate.name.lower().split() if len(part) > 2}
        if wanted_parts & stored_parts:
            return candidate
    return None


# Endorsers

_ENDORSER_COLUMNS = (
    "id, name, display_name, title, organization, category, subcategory, borough, "
    "influence_score, twitter_handle, instagram_handle, linkedin_url, personal_website, "
    "is_organization, verification_status, created_at, updated_at"
)


def create_endorser(conn: Any, endorser: dict[str, Any]) -> Endorser:
    name = str(endorser.get("name") or "").strip()
    if not name:
        raise ValueError("endorser_name_required")
    category = endorser.get("category")
    if category not in ENDORSER_CATEGORIES:
        raise ValueError("invalid_category")
    influence = endorser.get("influence_score")
    if influence is None:
        raise ValueError("influence_score_required")
    try:
        influence_score = int(influence)
    except (TypeError, ValueError) as exc:
        raise ValueError("invalid_influence_score") from exc
    if influence_score < 0 or influence_score > 100:
        raise ValueError("invalid_influence_score")
    status = endorser.get("verification_status") or "unverified"
    if status not in VERIFICATION_STATUSES:
        raise ValueError("invalid_verification_status")
    endorser_id = str(endorser.get("id") or _new_id())
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO endorsers ({_ENDORSER_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            endorser_id,
            name,
            endorser.get("display_name"),
            endorser.get("title"),
            endorser.get("organization"),
            category,
            endorser.get("subcategory"),
            endorser.get("borough"),
            influence_score,
            endorser.get("twitter_handle"),
            endorser.get("instagram_handle"),
            endorser.get("linkedin_url"),
            endorser.get("personal_website"),
            1 if endorser.get("is_organization") else 0,
            status,
            now,
            now,
        ),
    )
    conn.commit()
    return get_endorser(conn, endorser_id)  # type: ignore[return-value]


def get_endorser(conn: Any, endorser_id: str) -> Endorser | None:
    row = conn.execute(
        f"SELECT {_ENDORSER_COLUMNS} FROM endorsers WHERE id = ?", (endorser_id,)
    ).fetchone()
    return _row_to_endorser(row) if row else None


def get_endorser_by_name(conn: Any, name: str) -> Endorser | None:
    row = conn.execute(
        f"SELECT {_ENDORSER_COLUMNS} FROM endorsers WHERE name = ? ORDER BY created_at LIMIT 1",
        ((name or "").strip(),),
    ).fetchone()
    return _row_to_endorser(row) if row else None


def list_endorsers(
    conn: Any,
    category: str | None = None,
    min_influence: int | None = None,
    search: str | None = None,
) -> list[Endorser]:
    clauses: list[str] = []
    params: list[object] = []
    if category:
        clauses.append("category = ?")
        params.append(category)
    if min_influence is not None:
        clauses.append("influence_score >= ?")
        params.append(int(min_influence))
    if search:
        clauses.append("(LOWER(name) LIKE ? OR LOWER(COALESCE(organization, '')) LIKE ?)")
        needle = f"%{search.lower()}%"
        params.extend([needle, needle])
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"""
        SELECT {_ENDORSER_COLUMNS} FROM endorsers
        {where}
        ORDER BY influence_score DESC, name ASC
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_endorser(row) for row in rows]


def find_endorser_by_name(conn: Any, name: str) -> Endorser | None:
    wanted = (name or "").strip().lower()
    if not wanted:
        return None
    handle = wanted if wanted.startswith("@") else f"@{wanted}"
    row = conn.execute(
        f"""
        SELECT {_ENDORSER_COLUMNS} FROM endorsers
        WHERE LOWER(name) = ?
           OR LOWER(COALESCE(display_name, '')) = ?
           OR LOWER(COALESCE(twitter_handle, '')) = ?
           OR LOWER(COALESCE(instagram_handle, '')) = ?
        ORDER BY influence_score DESC
        LIMIT 1
        """,
        (wanted, wanted, handle, handle),
    ).fetchone()
    return _row_to_endorser(row) if row else None


# Endorsements

_ENDORSEMENT_COLUMNS = (
    "id, endorser_id, candidate_id, source_url, source_type, source_title, quote, "
    "endorsement_type, sentiment, confidence, strength, endorsed_at, discovered_at, "
    "verified_by, verified_at, verification_notes, is_retracted, retraction_reason, "
    "retracted_at, context_tags_json, created_at, updated_at"
)


def create_endorsement(conn: Any, endorsement: dict[str, Any]) -> Endorsement:
    endorser_id = str(endorsement.get("endorser_id") or "")
    candidate_id = str(endorsement.get("candidate_id") or "")
    if not get_endorser(conn, endorser_id):
        raise ValueError("endorser_not_found")
    if not get_candidate(conn, candidate_id):
        raise ValueError("candidate_not_found")
    source_type = endorsement.get("source_type") or "website"
    endorsement_type = endorsement.get("endorsement_type") or "endorsement"
    sentiment = endorsement.get("sentiment") or "positive"
    confidence = endorsement.get("confidence") or "reported"
    strength = endorsement.get("strength") or "standard"
    _require_choice(source_type, SOURCE_TYPES, "invalid_source_type")
    _require_choice(endorsement_type, ENDORSEMENT_TYPES, "invalid_endorsement_type")
    _require_choice(sentiment, SENTIMENTS, "invalid_sentiment")
    _require_choice(confidence, CONFIDENCE_LEVELS, "invalid_confidence")
    _require_choice(strength, STRENGTHS, "invalid_strength")
    endorsement_id = str(endorsement.get("id") or _new_id())
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO endorsements ({_ENDORSEMENT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            endorsement_id,
            endorser_id,
            candidate_id,
            endorsement.get("source_url"),
            source_type,
            endorsement.get("source_title"),
            endorsement.get("quote"),
            endorsement_type,
            sentiment,
            confidence,
            strength,
            endorsement.get("endorsed_at"),
            endorsement.get("discovered_at") or now,
            None,
            None,
            None,
            0,
            None,
            None,
            json_dumps(list(endorsement.get("context_tags") or [])),
            now,
            now,
        ),
    )
    conn.commit()
    return get_endorsement(conn, endorsement_id)  # type: ignore[return-value]


def get_endorsement(conn: Any, endorsement_id: str) -> Endorsement | None:
    row = conn.execute(
        f"SELECT {_ENDORSEMENT_COLUMNS} FROM endorsements WHERE id = ?", (endorsement_id,)
    ).fetchone()
    return _row_to_endorsement(row) if row else None


def list_endorsements(
    conn: Any,
    candidate_id: str | None = None,
    endorser_id: str | None = None,
    confidence: str | None = None,
    include_retracted: bool = True,
    limit: int = 100,
) -> list[Endorsement]:
    clauses: list[str] = []
    params: list[object] = []
    if candidate_id:
        clauses.append("candidate_id = ?")
        params.append(candidate_id)
    if endorser_id:
        clauses.append("endorser_id = ?")
        params.append(endorser_id)
    if confidence:
        clauses.append("confidence = ?")
        params.append(confidence)
    if not include_retracted:
        clauses.append("is_retracted = 0")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(int(limit))
    rows = conn.execute(
        f"""
        SELECT {_ENDORSEMENT_COLUMNS} FROM endorsements
        {where}
        ORDER BY COALESCE(endorsed_at, discovered_at) DESC
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_endorsement(row) for row in rows]


def find_endorsement(
    conn: Any,
    endorser_id: str,
    candidate_id: str,
    source_url: str | None,
    endorsed_at: str | None,
) -> Endorsement | None:
    row = conn.execute(
        f"""
        SELECT {_ENDORSEMENT_COLUMNS} FROM endorsements
        WHERE endorser_id = ? AND candidate_id = ?
          AND source_url IS ? AND endorsed_at IS ?
        ORDER BY created_at
        LIMIT 1
        """,
        (endorser_id, candidate_id, source_url, endorsed_at),
    ).fetchone()
    return _row_to_endorsement(row) if row else None


def upgrade_confidence(
    conn: Any,
    endorsement_id: str,
    confidence: str,
    verified_by: str,
    notes: str | None = None,
) -> Endorsement:
    _require_choice(confidence, CONFIDENCE_LEVELS, "invalid_confidence")
    current = get_endorsement(conn, endorsement_id)
    if not current:
        raise ValueError("endorsement_not_found")
    if CONFIDENCE_LEVELS.index(confidence) < CONFIDENCE_LEVELS.index(current.confidence):
        raise ValueError("confidence_downgrade")
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE endorsements
        SET confidence = ?, verified_by = ?, verified_at = ?, verification_notes = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (confidence, verified_by, now, notes, now, endorsement_id),
    )
    conn.commit()
    return get_endorsement(conn, endorsement_id)  # type: ignore[return-value]


def retract_endorsement(conn: Any, endorsement_id: str, reason: str) -> Endorsement:
    current = get_endorsement(conn, endorsement_id)
    if not current:
        raise ValueError("endorsement_not_found")
    if current.is_retracted:
        return current
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE endorsements
        SET is_retracted = 1, retraction_reason = ?, retracted_at = ?, updated_at = ?
        WHERE id = ?
        """,
        (reason, now, now, endorsement_id),
    )
    conn.commit()
    return get_endorsement(conn, endorsement_id)  # type: ignore[return-value]


def list_review_queue(conn: Any, kind: str = "all") -> dict[str, list[dict[str, object]]]:
    if kind not in {"all", "unverified", "retractions", "duplicates", "classifications"}:
        raise ValueError("invalid_queue_type")
    queue: dict[str, list[dict[str, object]]] = {}
    if kind in {"all", "unverified"}:
        queue["unverified"] = _endorsement_rows(
            conn,
            "WHERE e.confidence IN ('reported', 'rumored') AND e.is_retracted = 0",
        )
    if kind in {"all", "retractions"}:
        queue["retractions"] = _endorsement_rows(conn, "WHERE e.is_retracted = 1")
    if kind in {"all", "duplicates"}:
        rows = conn.execute(
            """
            SELECT e.endorser_id, r.name, e.candidate_id, c.name, COUNT(*) AS total
            FROM endorsements e
            JOIN endorsers r ON r.id = e.endorser_id
            JOIN candidates c ON c.id = e.candidate_id
            GROUP BY e.endorser_id, e.candidate_id
            HAVING COUNT(*) > 1
            ORDER BY total DESC
            """
        ).fetchall()
        queue["duplicates"] = [
            {
                "endorser_id": row[0],
                "endorser_name": row[1],
                "candidate_id": row[2],
                "candidate_name": row[3],
                "count": int(row[4]),
            }
            for row in rows
        ]
    if kind in {"all", "classifications"}:
        queue["classifications"] = list_classifications(conn, status="pending")
    return queue


def _endorsement_rows(conn: Any, where: str, limit: int = 200) -> list[dict[str, object]]:
    rows = conn.execute(
        f"""
        SELECT e.id, r.name, c.name, e.source_url, e.quote, e.confidence,
               e.endorsement_type, e.endorsed_at, e.retraction_reason
        FROM endorsements e
        JOIN endorsers r ON r.id = e.endorser_id
        JOIN candidates c ON c.id = e.candidate_id
        {where}
        ORDER BY e.discovered_at DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [
        {
            "id": row[0],
            "endorser_name": row[1],
            "candidate_name": row[2],
            "source_url": row[3],
            "quote": row[4],
            "confidence": row[5],
            "endorsement_type": row[6],
            "endorsed_at": row[7],
            "retraction_reason": row[8],
        }
        for row in rows
    ]


# Feeds

_FEED_COLUMNS = (
    "id, name, url, category, check_frequency_minutes, is_active, is_high_priority, "
    "keywords_json, exclude_keywords_json, last_check_at, last_success_at, error_count, "
    "last_error"
)


def upsert_feed(conn: Any, feed: dict[str, Any]) -> Feed:
    url = str(feed.get("url") or "").strip()
    if not url:
        raise ValueError("feed_url_required")
    feed_id = str(feed.get("id") or _new_id())
    owner = get_feed_by_url(conn, url)
    if owner and owner.id != feed_id:
        raise ValueError("feed_url_exists")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO feeds
            (id, name, url, category, check_frequency_minutes, is_active, is_high_priority,
             keywords_json, exclude_keywords_json, error_count, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            url = excluded.url,
            category = excluded.category,
            check_frequency_minutes = excluded.check_frequency_minutes,
            is_active = excluded.is_active,
            is_high_priority = excluded.is_high_priority,
            keywords_json = excluded.keywords_json,
            exclude_keywords_json = excluded.exclude_keywords_json,
            updated_at = excluded.updated_at
        """,
        (
            feed_id,
            str(feed.get("name") or url),
            url,
            feed.get("category"),
            int(feed.get("check_frequency_minutes") or 30),
            1 if feed.get("is_active", True) else 0,
            1 if feed.get("is_high_priority") else 0,
            json_dumps(list(feed.get("keywords") or [])),
            json_dumps(list(feed.get("exclude_keywords") or [])),
            now,
            now,
        ),
    )
    conn.commit()
    return get_feed(conn, feed_id)  # type: ignore[return-value]


def add_feed(conn: Any, feed: dict[str, Any]) -> bool:
    feed_id = feed.get("id")
    if feed_id and get_feed(conn, str(feed_id)):
        return False
    if get_feed_by_url(conn, str(feed.get("url") or "")):
        return False
    upsert_feed(conn, feed)
    return True


def delete_feed(conn: Any, feed_id: str) -> bool:
    cursor = conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
    conn.commit()
    return cursor.rowcount == 1


def clear_feeds(conn: Any) -> int:
    cursor = conn.execute("DELETE FROM feeds")
    conn.commit()
    return cursor.rowcount


def get_feed(conn: Any, feed_id: str) -> Feed | None:
    row = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,)).fetchone()
    return _row_to_feed(row) if row else None


def get_feed_by_url(conn: Any, url: str) -> Feed | None:
    if not url:
        return None
    wanted = normalize_url(url)
    for feed in list_feeds(conn, active_only=False):
        if normalize_url(feed.url) == wanted:
            return feed
    return None


def list_feeds(
    conn: Any, active_only: bool = True, high_priority_only: bool = False
) -> list[Feed]:
    clauses: list[str] = []
    if active_only:
        clauses.append("is_active = 1")
    if high_priority_only:
        clauses.append("is_high_priority = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT {_FEED_COLUMNS} FROM feeds {where} ORDER BY name"
    ).fetchall()
    return [_row_to_feed(row) for row in rows]


def list_due_feeds(conn: Any, now_iso: str) -> list[Feed]:
    due: list[Feed] = []
    for feed in list_feeds(conn, active_only=True):
        if not feed.last_check_at:
            due.append(feed)
            continue
        next_check = _offset_iso(feed.last_check_at, feed.check_frequency_minutes * 60)
        if next_check <= now_iso:
            due.append(feed)
    return due


def record_feed_check(
    conn: Any,
    feed_id: str,
    *,
    started_at: str,
    finished_at: str,
    status: str,
    http_status: int | None,
    items_found: int,
    items_accepted: int,
    skipped_stale: int,
    skipped_filters: int,
    error: str | None,
) -> None:
    conn.execute(
        """
        INSERT INTO feed_runs
            (feed_id, started_at, finished_at, status, http_status, items_found,
             items_accepted, skipped_stale, skipped_filters, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            feed_id,
            started_at,
            finished_at,
            status,
            http_status,
            items_found,
            items_accepted,
            skipped_stale,
            skipped_filters,
            error,
        ),
    )
    if status == "ok":
        conn.execute(
            """
            UPDATE feeds
            SET last_check_at = ?, last_success_at = ?, error_count = 0, last_error = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (finished_at, finished_at, finished_at, feed_id),
        )
    else:
        conn.execute(
            """
            UPDATE feeds
            SET last_check_at = ?, error_count = error_count + 1, last_error = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (finished_at, error, finished_at, feed_id),
        )
    conn.commit()


def list_feed_runs(conn: Any, feed_id: str, limit: int = 20) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT started_at, finished_at, status, http_status, items_found, items_accepted,
               skipped_stale, skipped_filters, error
        FROM feed_runs
        WHERE feed_id = ?
        ORDER BY started_at DESC
        LIMIT ?
        """,
        (feed_id, limit),
    ).fetchall()
    keys = (
        "started_at",
        "finished_at",
        "status",
        "http_status",
        "items_found",
        "items_accepted",
        "skipped_stale",
        "skipped_filters",
        "error",
    )
    return [dict(zip(keys, row)) for row in rows]


def feed_stats(conn: Any) -> dict[str, object]:
    feeds = list_feeds(conn, active_only=False)
    checks = [feed.last_check_at for feed in feeds if feed.last_check_at]
    return {
        "total_feeds": len(feeds),
        "active_feeds": sum(1 for feed in feeds if feed.is_active),
        "last_check": max(checks) if checks else None,
        "feed_details": [
            {
                "id": feed.id,
                "name": feed.name,
                "url": feed.url,
                "is_active": feed.is_active,
                "last_check_at": feed.last_check_at,
                "error_count": feed.error_count,
            }
            for feed in feeds
        ],
    }


# Classifications and notifications


def classification_exists(conn: Any, item_key: str) -> bool:
    row = conn.execute("SELECT 1 FROM classifications WHERE item_key = ?", (item_key,)).fetchone()
    return row is not None


def insert_classification(
    conn: Any,
    item_key: str,
    result: ClassificationResult,
    *,
    classification_id: str | None = None,
    status: str = "pending",
    endorsement_id: str | None = None,
    feed_id: str | None = None,
    title: str | None = None,
    author: str | None = None,
) -> str | None:
    if status not in CLASSIFICATION_STATUSES:
        raise ValueError("invalid_classification_status")
    classification_id = classification_id or _new_id()
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO classifications
            (id, item_key, feed_id, source_url, source_type, title, raw_text, author,
             confidence, candidate_mentions_json, endorsement_type, sentiment,
             requires_human_review, reasoning, status, endorsement_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            classification_id,
            item_key,
            feed_id,
            result.source_url,
            result.source_type,
            title,
            result.raw_text,
            author,
            float(result.confidence),
            json_dumps(result.candidate_mentions),
            result.endorsement_type,
            result.sentiment,
            1 if result.requires_human_review else 0,
            result.reasoning,
            status,
            endorsement_id,
            now,
            now,
        ),
    )
    conn.commit()
    return classification_id if cursor.rowcount == 1 else None


def list_classifications(
    conn: Any, status: str | None = None, limit: int = 200
) -> list[dict[str, object]]:
    params: list[object] = []
    where = ""
    if status:
        where = "WHERE status = ?"
        params.append(status)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, item_key, feed_id, source_url, title, author, confidence,
               candidate_mentions_json, endorsement_type, sentiment, requires_human_review,
               reasoning, status, endorsement_id, created_at
        FROM classifications
        {where}
        ORDER BY created_at DESC
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [
        {
            "id": row[0],
            "item_key": row[1],
            "feed_id": row[2],
            "source_url": row[3],
            "title": row[4],
            "author": row[5],
            "confidence": row[6],
            "candidate_mentions": _load_json_list(row[7]),
            "endorsement_type": row[8],
            "sentiment": row[9],
            "requires_human_review": bool(row[10]),
            "reasoning": row[11],
            "status": row[12],
            "endorsement_id": row[13],
            "created_at": row[14],
        }
        for row in rows
    ]


def insert_notification(
    conn: Any, kind: str, subject_key: str, payload: dict[str, object] | None
) -> str:
    if kind not in NOTIFICATION_KINDS:
        raise ValueError("invalid_notification_kind")
    notification_id = _new_id()
    conn.execute(
        """
        INSERT INTO notifications (id, kind, subject_key, payload_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (notification_id, kind, subject_key, json_dumps(payload or {}), utc_now_iso()),
    )
    conn.commit()
    return notification_id


def list_notifications(conn: Any, limit: int = 50) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT id, kind, subject_key, payload_json, created_at
        FROM notifications
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [
        {
            "id": row[0],
            "kind": row[1],
            "subject_key": row[2],
            "payload": json.loads(row[3]) if row[3] else {},
            "created_at": row[4],
        }
        for row in rows
    ]


# Jobs

_JOB_COLUMNS = (
    "id, queue, job_type, status, priority, attempts, max_attempts, payload_json, "
    "result_json, requested_at, not_before, started_at, finished_at, locked_by, locked_at, error"
)


def enqueue_job(
    conn: Any,
    queue: str,
    job_type: str,
    payload: dict[str, object] | None,
    *,
    priority: int = 0,
    max_attempts: int = 3,
    delay_seconds: float = 0,
    debounce: bool = False,
) -> str:
    if debounce:
        pending = _pending_job_id(conn, job_type)
        if pending:
            return pending
    job_id = _new_job_id()
    now = utc_now_iso()
    not_before = utc_now_iso_offset(seconds=delay_seconds) if delay_seconds > 0 else None
    conn.execute(
        f"""
        INSERT INTO jobs ({_JOB_COLUMNS})
        VALUES (?, ?, ?, 'queued', ?, 0, ?, ?, NULL, ?, ?, NULL, NULL, NULL, NULL, NULL)
        """,
        (
            job_id,
            queue,
            job_type,
            int(priority),
            int(max_attempts),
            json_dumps(payload) if payload else None,
            now,
            not_before,
        ),
    )
    conn.commit()
    return job_id


def claim_next_job(
    conn: DBConn,
    worker_id: str,
    queues: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    now = utc_now_iso()
    conn.begin_immediate()
    try:
        if lock_timeout_seconds is not None:
            cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
            conn.execute(
                """
                UPDATE jobs
                SET status = 'queued',
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    error = 'stale_lock_requeued'
                WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (cutoff,),
            )
        params: list[object] = [now]
        queue_clause = ""
        if queues:
            placeholders = ",".join(["?"] * len(queues))
            queue_clause = f" AND queue IN ({placeholders})"
            params.extend(queues)
        row = conn.execute(
            f"""
            SELECT id FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL
              AND (not_before IS NULL OR not_before <= ?) {queue_clause}
            ORDER BY priority DESC, requested_at ASC
            LIMIT 1
            """,
            tuple(params),
        ).fetchone()
        if not row:
            conn.commit()
            return None
        job_id = row[0]
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', attempts = attempts + 1, started_at = ?,
                locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, job_id),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    if cursor.rowcount != 1:
        return None
    return get_job(conn, job_id)


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def retry_job(conn: Any, job_id: str, error: str, delay_seconds: float) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued',
            not_before = ?,
            started_at = NULL,
            locked_by = NULL,
            locked_at = NULL,
            error = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso_offset(seconds=delay_seconds), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    limit: int = 50,
    queue: str | None = None,
    status: str | None = None,
) -> list[Job]:
    clauses: list[str] = []
    params: list[object] = []
    if queue:
        clauses.append("queue = ?")
        params.append(queue)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(int(limit))
    rows = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        {where}
        ORDER BY requested_at DESC
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_job(row) for row in rows]


def has_pending_job(conn: Any, job_type: str) -> bool:
    return _pending_job_id(conn, job_type) is not None


def queue_stats(conn: Any, queues: Iterable[str]) -> dict[str, dict[str, int]]:
    now = utc_now_iso()
    stats: dict[str, dict[str, int]] = {}
    for queue in queues:
        row = conn.execute(
            """
            SELECT
                SUM(CASE WHEN status = 'queued' AND (not_before IS NULL OR not_before <= ?)
                    THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'queued' AND not_before > ? THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'succeeded' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END)
            FROM jobs
            WHERE queue = ?
            """,
            (now, now, queue),
        ).fetchone()
        waiting, delayed, active, completed, failed = (int(value or 0) for value in row)
        stats[queue] = {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }
    return stats


def clean_finished_jobs(conn: Any, older_than_iso: str, keep_per_queue: int) -> int:
    cursor = conn.execute(
        """
        DELETE FROM jobs
        WHERE status IN ('succeeded', 'failed') AND finished_at IS NOT NULL AND finished_at < ?
        """,
        (older_than_iso,),
    )
    removed = cursor.rowcount
    queues = [row[0] for row in conn.execute("SELECT DISTINCT queue FROM jobs").fetchall()]
    for queue in queues:
        cursor = conn.execute(
            """
            DELETE FROM jobs
            WHERE queue = ? AND status IN ('succeeded', 'failed') AND id NOT IN (
                SELECT id FROM jobs
                WHERE queue = ? AND status IN ('succeeded', 'failed')
                ORDER BY finished_at DESC
                LIMIT ?
            )
            """,
            (queue, queue, int(keep_per_queue)),
        )
        removed += cursor.rowcount
    conn.commit()
    return removed


# Secrets


def set_api_secret(conn: Any, name: str, value: str) -> dict[str, object]:
    key_id, value_enc = encrypt_secret(value, _secret_aad(name))
    last4 = value[-4:] if len(value) >= 4 else value
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO api_secrets (name, key_id, value_enc, value_last4, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(name) DO UPDATE SET
            key_id = excluded.key_id,
            value_enc = excluded.value_enc,
            value_last4 = excluded.value_last4,
            updated_at = excluded.updated_at
        """,
        (name, key_id, value_enc, last4, now, now),
    )
    conn.commit()
    return {"name": name, "key_id": key_id, "last4": last4}


def load_api_secret(conn: Any, name: str) -> str | None:
    row = conn.execute(
        "SELECT value_enc FROM api_secrets WHERE name = ?", (name,)
    ).fetchone()
    if not row:
        return None
    return decrypt_secret(row[0], _secret_aad(name))


def get_api_secret_info(conn: Any, name: str) -> dict[str, object] | None:
    row = conn.execute(
        "SELECT key_id, value_last4, updated_at FROM api_secrets WHERE name = ?", (name,)
    ).fetchone()
    if not row:
        return None
    return {"name": name, "key_id": row[0], "last4": row[1], "updated_at": row[2]}


def clear_api_secret(conn: Any, name: str) -> None:
    conn.execute("DELETE FROM api_secrets WHERE name = ?", (name,))
    conn.commit()


def _secret_aad(name: str) -> bytes:
    return f"secret:{name}".encode("utf-8")


# Status


def count_table(conn: Any, table: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    return int(row[0]) if row else 0


def get_schema_version(conn: Any) -> str | None:
    row = conn.execute(
        "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
    ).fetchone()
    return row[0] if row else None


def get_system_status(conn: Any) -> dict[str, object]:
    return {
        "schema_version": get_schema_version(conn),
        "counts": {
            table: count_table(conn, table)
            for table in (
                "candidates",
                "endorsers",
                "endorsements",
                "feeds",
                "classifications",
                "notifications",
                "jobs",
            )
        },
        "feeds": {
            key: value for key, value in feed_stats(conn).items() if key != "feed_details"
        },
        "pending_review": len(list_classifications(conn, status="pending")),
    }


# Row mapping


def _row_to_candidate(row: tuple) -> Candidate:
    (
        candidate_id,
        name,
        party,
        photo_url,
        website,
        bio,
        campaign_color,
        position_summary_json,
        created_at,
    ) = row
    try:
        position_summary = json.loads(position_summary_json) if position_summary_json else {}
    except json.JSONDecodeError:
        position_summary = {}
    return Candidate(
        id=candidate_id,
        name=name,
        party=party,
        photo_url=photo_url,
        website=website,
        bio=bio,
        campaign_color=campaign_color,
        position_summary=position_summary,
        created_at=created_at,
    )


def _row_to_endorser(row: tuple) -> Endorser:
    return Endorser(
        id=row[0],
        name=row[1],
        display_name=row[2],
        title=row[3],
        organization=row[4],
        category=row[5],
        subcategory=row[6],
        borough=row[7],
        influence_score=int(row[8]),
        twitter_handle=row[9],
        instagram_handle=row[10],
        linkedin_url=row[11],
        personal_website=row[12],
        is_organization=bool(row[13]),
        verification_status=row[14],
        created_at=row[15],
        updated_at=row[16],
    )


def _row_to_endorsement(row: tuple) -> Endorsement:
    return Endorsement(
        id=row[0],
        endorser_id=row[1],
        candidate_id=row[2],
        source_url=row[3],
        source_type=row[4],
        source_title=row[5],
        quote=row[6],
        endorsement_type=row[7],
        sentiment=row[8],
        confidence=row[9],
        strength=row[10],
        endorsed_at=row[11],
        discovered_at=row[12],
        verified_by=row[13],
        verified_at=row[14],
        verification_notes=row[15],
        is_retracted=bool(row[16]),
        retraction_reason=row[17],
        retracted_at=row[18],
        context_tags=_load_json_list(row[19]),
        created_at=row[20],
        updated_at=row[21],
    )


def _row_to_feed(row: tuple) -> Feed:
    return Feed(
        id=row[0],
        name=row[1],
        url=row[2],
        category=row[3],
        check_frequency_minutes=int(row[4]),
        is_active=bool(row[5]),
        is_high_priority=bool(row[6]),
        keywords=_load_json_list(row[7]),
        exclude_keywords=_load_json_list(row[8]),
        last_check_at=row[9],
        last_success_at=row[10],
        error_count=int(row[11] or 0),
        last_error=row[12],
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        queue,
        job_type,
        status,
        priority,
        attempts,
        max_attempts,
        payload_json,
        result_json,
        requested_at,
        not_before,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    try:
        result = json.loads(result_json) if result_json else None
    except json.JSONDecodeError:
        result = None
    return Job(
        id=job_id,
        queue=queue,
        job_type=job_type,
        status=status,
        priority=int(priority),
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        payload=payload,
        result=result,
        requested_at=requested_at,
        not_before=not_before,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _load_json_list(value: str | None) -> list:
    if not value:
        return []
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return []
    return loaded if isinstance(loaded, list) else []


def _require_choice(value: object, choices: tuple[str, ...], error: str) -> None:
    if value not in choices:
        raise ValueError(error)


def _pending_job_id(conn: Any, job_type: str) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        ORDER BY requested_at DESC
        LIMIT 1
        """,
        (job_type,),
    ).fetchone()
    return row[0] if row else None


def _offset_iso(value: str, seconds: int) -> str:
    return (parse_iso(value) + timedelta(seconds=seconds)).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
