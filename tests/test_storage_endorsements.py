import pytest

from endorsenyc.storage import (
    create_endorsement,
    create_endorser,
    find_candidate_by_name,
    find_endorser_by_name,
    get_system_status,
    init_db,
    list_endorsements,
    list_endorsers,
    list_review_queue,
    retract_endorsement,
    upgrade_confidence,
    upsert_candidate,
)


def _seed(conn):
    upsert_candidate(
        conn,
        {
            "id": "zohran-mamdani",
            "name": "Zohran Mamdani",
            "party": "Democratic",
            "position_summary": {"housing": "Rent freeze"},
        },
    )
    upsert_candidate(conn, {"id": "eric-adams", "name": "Eric Adams"})
    create_endorser(
        conn,
        {
            "id": "aoc",
            "name": "Alexandria Ocasio-Cortez",
            "display_name": "AOC",
            "organization": "U.S. House of Representatives",
            "category": "politician",
            "influence_score": 96,
            "twitter_handle": "@AOC",
        },
    )
    create_endorser(
        conn,
        {"id": "uft", "name": "United Federation of Teachers", "category": "union", "influence_score": 90},
    )


def test_create_endorsement_defaults(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn)
    endorsement = create_endorsement(
        conn, {"endorser_id": "aoc", "candidate_id": "zohran-mamdani", "source_url": "https://x"}
    )
    assert endorsement.confidence == "reported"
    assert endorsement.strength == "standard"
    assert endorsement.sentiment == "positive"
    assert endorsement.is_retracted is False
    assert endorsement.discovered_at


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"endorser_id": "nobody"}, "endorser_not_found"),
        ({"candidate_id": "nobody"}, "candidate_not_found"),
        ({"confidence": "certain"}, "invalid_confidence"),
        ({"source_type": "fax"}, "invalid_source_type"),
        ({"strength": "mild"}, "invalid_strength"),
    ],
)
def test_create_endorsement_validation(tmp_path, overrides, error):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn)
    payload = {"endorser_id": "aoc", "candidate_id": "zohran-mamdani", **overrides}
    with pytest.raises(ValueError) as excinfo:
        create_endorsement(conn, payload)
    assert str(excinfo.value) == error


def test_endorser_validation(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(ValueError, match="invalid_category"):
        create_endorser(conn, {"name": "X", "category": "astronaut", "influence_score": 50})
    with pytest.raises(ValueError, match="invalid_influence_score"):
        create_endorser(conn, {"name": "X", "category": "media", "influence_score": 101})
    with pytest.raises(ValueError, match="influence_score_required"):
        create_endorser(conn, {"name": "X", "category": "media"})


def test_confidence_only_moves_up(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn)
    endorsement = create_endorsement(
        conn, {"endorser_id": "aoc", "candidate_id": "zohran-mamdani", "confidence": "rumored"}
    )

    confirmed = upgrade_confidence(conn, endorsement.id, "confirmed", "editor@example.com", "Call")
    assert confirmed.confidence == "confirmed"
    assert confirmed.verified_by == "editor@example.com"
    assert confirmed.verified_at is not None
    assert confirmed.verification_notes == "Call"

    with pytest.raises(ValueError, match="confidence_downgrade"):
        upgrade_confidence(conn, endorsement.id, "reported", "editor@example.com")
    with pytest.raises(ValueError, match="endorsement_not_found"):
        upgrade_confidence(conn, "missing", "confirmed", "editor@example.com")


def test_retraction_is_kept_and_idempotent(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn)
    endorsement = create_endorsement(conn, {"endorser_id": "aoc", "candidate_id": "eric-adams"})

    retracted = retract_endorsement(conn, endorsement.id, "Withdrew support")
    again = retract_endorsement(conn, endorsement.id, "Different reason")

    assert retracted.is_retracted is True
    assert again.retraction_reason == "Withdrew support"
    assert again.retracted_at == retracted.retracted_at
    assert len(list_endorsements(conn)) == 1
    assert list_endorsements(conn, include_retracted=False) == []


def test_name_resolution(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn)
    assert find_candidate_by_name(conn, "zohran mamdani").id == "zohran-mamdani"
    assert find_candidate_by_name(conn, "Mayor Eric Adams").id == "eric-adams"
    assert find_candidate_by_name(conn, "Mamdani").id == "zohran-mamdani"
    assert find_candidate_by_name(conn, "Jane Doe") is None
    assert find_endorser_by_name(conn, "aoc").id == "aoc"
    assert find_endorser_by_name(conn, "@aoc").id == "aoc"
    assert find_endorser_by_name(conn, "Nobody") is None


def test_list_endorsers_filters(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn)
    assert [e.id for e in list_endorsers(conn)] == ["aoc", "uft"]
    assert [e.id for e in list_endorsers(conn, category="union")] == ["uft"]
    assert [e.id for e in list_endorsers(conn, min_influence=95)] == ["aoc"]
    assert [e.id for e in list_endorsers(conn, search="house")] == ["aoc"]


def test_review_queue_and_status(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn)
    first = create_endorsement(conn, {"endorser_id": "aoc", "candidate_id": "zohran-mamdani"})
    create_endorsement(conn, {"endorser_id": "aoc", "candidate_id": "zohran-mamdani"})
    retract_endorsement(conn, first.id, "Duplicate post")

    queue = list_review_queue(conn)
    assert len(queue["unverified"]) == 1
    assert queue["retractions"][0]["retraction_reason"] == "Duplicate post"
    assert queue["duplicates"][0]["count"] == 2
    assert queue["classifications"] == []
    assert set(list_review_queue(conn, "retractions")) == {"retractions"}
    with pytest.raises(ValueError, match="invalid_queue_type"):
        list_review_queue(conn, "bogus")

    status = get_system_status(conn)
    assert status["counts"]["endorsements"] == 2
    assert status["counts"]["candidates"] == 2
    assert status["schema_version"] == "005_api_secrets"
