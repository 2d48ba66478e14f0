import logging
from datetime import date

import pytest

from endorsenyc.populate import POPULATION_DATA, normalize_endorsed_at, populate_endorsements
from endorsenyc.seed import seed_sample_data
from endorsenyc.storage import (
    count_table,
    get_candidate_by_name,
    get_endorser_by_name,
    init_db,
    list_endorsements,
)


def test_populate_twice_inserts_nothing_new(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    logger = logging.getLogger("test")

    first = populate_endorsements(conn, logger=logger)
    second = populate_endorsements(conn, logger=logger)

    total = sum(len(entries) for entries in POPULATION_DATA.values())
    assert first == {
        "candidates_added": 5,
        "endorsers_added": len(POPULATION_DATA["endorsers"]),
        "endorsements_added": len(POPULATION_DATA["endorsements"]),
        "existing": 0,
        "skipped_unresolved": 0,
    }
    assert second == {
        "candidates_added": 0,
        "endorsers_added": 0,
        "endorsements_added": 0,
        "existing": total,
        "skipped_unresolved": 0,
    }
    assert count_table(conn, "candidates") == 5
    assert count_table(conn, "endorsements") == len(POPULATION_DATA["endorsements"])

    walden = get_candidate_by_name(conn, "Jim Walden")
    assert walden is not None
    assert walden.party == "Independent"
    endorsements = list_endorsements(conn, candidate_id=walden.id)
    assert [e.endorser_id for e in endorsements] == [get_endorser_by_name(conn, "Cyrus Vance Jr.").id]
    assert endorsements[0].source_type == "website"
    assert endorsements[0].strength == "standard"
    assert endorsements[0].endorsed_at == "2024-07-29T00:00:00+00:00"


def test_populate_matches_seeded_rows_by_name(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    logger = logging.getLogger("test")
    seed_sample_data(conn, logger)
    endorsers_before = count_table(conn, "endorsers")

    counts = populate_endorsements(conn, logger=logger)

    assert counts["candidates_added"] == 1
    assert count_table(conn, "candidates") == 5
    assert get_candidate_by_name(conn, "Eric Adams").id == "eric-adams"
    assert get_endorser_by_name(conn, "Bernie Sanders").id == "bernie-sanders"
    assert count_table(conn, "endorsers") == endorsers_before + counts["endorsers_added"]
    assert counts["endorsers_added"] < len(POPULATION_DATA["endorsers"])


def test_populate_custom_data_skips_unknown_names(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    data = {
        "candidates": [{"name": "Jim Walden", "party": "Independent"}],
        "endorsers": [{"name": "Cyrus Vance Jr.", "category": "politician", "influence_score": 70}],
        "endorsements": [
            {
                "endorser_name": "Cyrus Vance Jr.",
                "candidate_name": "Jim Walden",
                "source_url": "https://cityandstateny.com",
                "endorsed_at": date(2024, 7, 29),
            },
            {"endorser_name": "Nobody", "candidate_name": "Jim Walden"},
        ],
    }

    counts = populate_endorsements(conn, data, logging.getLogger("test"))
    again = populate_endorsements(
        conn,
        {"endorsements": [{**data["endorsements"][0], "endorsed_at": "2024-07-29"}]},
        logging.getLogger("test"),
    )

    assert counts["endorsements_added"] == 1
    assert counts["skipped_unresolved"] == 1
    assert again["endorsements_added"] == 0
    assert again["existing"] == 1
    assert list_endorsements(conn)[0].confidence == "reported"


def test_normalize_endorsed_at():
    assert normalize_endorsed_at(None) is None
    assert normalize_endorsed_at(date(2024, 7, 29)) == "2024-07-29T00:00:00+00:00"
    assert normalize_endorsed_at("2024-07-29") == "2024-07-29T00:00:00+00:00"
    assert normalize_endorsed_at("2024-07-29T14:00:00-04:00") == "2024-07-29T18:00:00+00:00"
    with pytest.raises(ValueError, match="invalid_endorsed_at"):
        normalize_endorsed_at("last summer")
