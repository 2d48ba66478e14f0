import logging

from endorsenyc.maintenance import clean_duplicates
from endorsenyc.storage import (
    create_endorsement,
    create_endorser,
    init_db,
    list_endorsements,
    upsert_candidate,
    upsert_feed,
)
from endorsenyc.utils import utc_now_iso


def test_clean_duplicates_merges_and_repoints(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    upsert_candidate(conn, {"id": "mamdani-1", "name": "Zohran Mamdani"})
    upsert_candidate(conn, {"id": "mamdani-2", "name": "Zohran Mamdani"})
    create_endorser(conn, {"id": "aoc-1", "name": "AOC", "category": "politician", "influence_score": 96})
    create_endorser(conn, {"id": "aoc-2", "name": "AOC", "category": "politician", "influence_score": 96})
    create_endorsement(
        conn,
        {"endorser_id": "aoc-1", "candidate_id": "mamdani-1", "source_url": "https://example.com/a"},
    )
    create_endorsement(
        conn,
        {"endorser_id": "aoc-2", "candidate_id": "mamdani-2", "source_url": "https://example.com/a"},
    )
    create_endorsement(
        conn,
        {"endorser_id": "aoc-2", "candidate_id": "mamdani-2", "source_url": "https://example.com/b"},
    )
    upsert_feed(conn, {"id": "nyt", "name": "NYT", "url": "https://example.com/feed"})
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO feeds (id, name, url, check_frequency_minutes, is_active, is_high_priority,
                           error_count, created_at, updated_at)
        VALUES (?, ?, ?, 30, 1, 0, 0, ?, ?)
        """,
        ("nyt-copy", "NYT copy", "https://EXAMPLE.com/feed?utm_source=rss", now, now),
    )
    conn.commit()

    report = clean_duplicates(conn, logging.getLogger("test"))

    assert report["before"] == {"candidates": 2, "endorsers": 2, "endorsements": 3, "feeds": 2}
    assert report["after"] == {"candidates": 1, "endorsers": 1, "endorsements": 2, "feeds": 1}
    remaining = list_endorsements(conn)
    assert {e.candidate_id for e in remaining} == {"mamdani-1"}
    assert {e.endorser_id for e in remaining} == {"aoc-1"}
    assert sorted(e.source_url for e in remaining) == [
        "https://example.com/a",
        "https://example.com/b",
    ]
    assert conn.execute("SELECT id FROM feeds").fetchall() == [("nyt",)]


def test_clean_duplicates_noop_on_clean_data(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    upsert_candidate(conn, {"id": "adams", "name": "Eric Adams"})
    report = clean_duplicates(conn, logging.getLogger("test"))
    assert report["before"] == report["after"]
