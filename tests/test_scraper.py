import json
import logging

import pytest

from endorsenyc import scraper
from endorsenyc.config import load_runtime_config
from endorsenyc.storage import (
    create_endorser,
    init_db,
    list_endorsements,
    set_api_secret,
    upsert_candidate,
)

LOGGER = logging.getLogger("test")


def _reply(**overrides) -> str:
    item = {
        "source_url": "https://example.com/sanders-mamdani",
        "source_title": "Sanders backs Mamdani",
        "quote": "Zohran is the future of this city",
        "endorsement_type": "endorsement",
        "sentiment": "positive",
        "confidence": "high",
        "strength": "moderate",
        "endorsed_at": "2025-06-01",
        "candidate_name": "Zohran Mamdani",
    }
    item.update(overrides)
    return json.dumps({"endorsements": [item]})


def _seed(conn):
    upsert_candidate(conn, {"id": "zohran-mamdani", "name": "Zohran Mamdani"})
    upsert_candidate(conn, {"id": "andrew-cuomo", "name": "Andrew Cuomo"})
    create_endorser(
        conn,
        {"id": "bernie-sanders", "name": "Bernie Sanders", "category": "politician", "influence_score": 98},
    )


def test_no_endorsement_marker_returns_empty():
    assert scraper.parse_response("NO ENDORSEMENT FOUND", "Bernie Sanders") == []
    assert scraper.parse_response("", "Bernie Sanders") == []


def test_parse_json_reply_normalizes_aliases():
    results = scraper.parse_response(_reply(), "Bernie Sanders")
    assert len(results) == 1
    found = results[0]
    assert found.endorser_name == "Bernie Sanders"
    assert found.candidate_name == "Zohran Mamdani"
    assert found.confidence == "confirmed"
    assert found.strength == "standard"
    assert found.endorsed_at == "2025-06-01T00:00:00+00:00"


def test_parse_fenced_json_reply():
    text = "Here is what I found:\n```json\n" + _reply(confidence="low") + "\n```\nThanks!"
    results = scraper.parse_response(text, "Bernie Sanders")
    assert [item.confidence for item in results] == ["rumored"]


def test_invalid_items_are_dropped():
    reply = json.dumps(
        {
            "endorsements": [
                json.loads(_reply())["endorsements"][0],
                {"candidate_name": "Eric Adams", "sentiment": "ecstatic"},
                "not an object",
            ]
        }
    )
    results = scraper.parse_response(reply, "Bernie Sanders", LOGGER)
    assert [item.candidate_name for item in results] == ["Zohran Mamdani"]


def test_free_text_fallback_extracts_url_and_quote():
    text = 'Sanders told reporters "Mamdani has my full support" (https://example.com/story).'
    results = scraper.parse_response(text, "Bernie Sanders")
    assert len(results) == 1
    found = results[0]
    assert found.candidate_name == "Zohran Mamdani"
    assert found.source_url == "https://example.com/story"
    assert found.quote == "Mamdani has my full support"
    assert found.source_title == "Extracted from search results"
    assert found.confidence == "reported"


def test_free_text_without_signals_is_ignored():
    assert scraper.extract_from_text("The weather was nice today.", "Bernie Sanders") == []


def test_free_text_unknown_candidate():
    results = scraper.extract_from_text("They endorsed someone new", "Bernie Sanders")
    assert results[0].candidate_name == scraper.UNKNOWN_CANDIDATE


def test_build_prompt_mentions_marker():
    prompt = scraper.build_prompt("Bernie Sanders")
    assert '"Bernie Sanders" endorsement 2025 NYC mayor election' in prompt
    assert scraper.NO_ENDORSEMENT_MARKER in prompt


def test_resolve_api_key_prefers_env(tmp_path, monkeypatch, master_key):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    with pytest.raises(ValueError) as excinfo:
        scraper.resolve_api_key(conn, config)
    assert str(excinfo.value) == "api_key_missing"

    set_api_secret(conn, scraper.API_KEY_SECRET, "sk-stored")
    assert scraper.resolve_api_key(conn, config) == "sk-stored"

    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    assert scraper.resolve_api_key(conn, config) == "sk-env"


def test_scrape_for_endorser_saves_once(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    _seed(conn)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    prompts = []

    def fake_search(scraper_config, api_key, prompt, logger=None):
        prompts.append((api_key, prompt))
        return _reply()

    monkeypatch.setattr(scraper, "web_search_completion", fake_search)
    monkeypatch.setattr(scraper.time, "sleep", lambda seconds: None)

    summary = scraper.scrape_for_endorser(conn, config, "bernie-sanders", LOGGER)
    again = scraper.scrape_for_endorser(conn, config, "bernie-sanders", LOGGER)

    assert summary["endorsers_searched"] == 1
    assert summary["endorsements_found"] == 1
    assert summary["endorsements_saved"] == 1
    assert summary["errors"] == 0
    assert again["endorsements_saved"] == 0
    assert prompts[0][0] == "sk-test"
    assert "Bernie Sanders" in prompts[0][1]

    stored = list_endorsements(conn, endorser_id="bernie-sanders")
    assert len(stored) == 1
    assert stored[0].candidate_id == "zohran-mamdani"
    assert stored[0].source_type == "website"
    assert stored[0].context_tags == ["scraped"]
    assert stored[0].confidence == "confirmed"


def test_scrape_skips_unresolved_candidates(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    _seed(conn)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(
        scraper, "web_search_completion", lambda *args, **kwargs: _reply(candidate_name="Jane Doe")
    )
    monkeypatch.setattr(scraper.time, "sleep", lambda seconds: None)

    summary = scraper.scrape_all(conn, config, LOGGER)

    assert summary["endorsements_found"] == 1
    assert summary["endorsements_saved"] == 0


def test_scrape_for_candidate_filters_results(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    _seed(conn)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(scraper, "web_search_completion", lambda *args, **kwargs: _reply())
    monkeypatch.setattr(scraper.time, "sleep", lambda seconds: None)

    summary = scraper.scrape_for_candidate(conn, config, "andrew-cuomo", LOGGER)

    assert summary["endorsements_found"] == 0
    assert list_endorsements(conn) == []


def test_search_errors_are_counted(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    _seed(conn)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    def failing_search(*args, **kwargs):
        raise ValueError("http_error 500: upstream")

    monkeypatch.setattr(scraper, "web_search_completion", failing_search)
    monkeypatch.setattr(scraper.time, "sleep", lambda seconds: None)

    summary = scraper.scrape_all(conn, config, LOGGER)
    assert summary["errors"] == 1
    assert summary["endorsements_saved"] == 0


def test_unknown_ids_raise(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    with pytest.raises(ValueError, match="endorser_not_found"):
        scraper.scrape_for_endorser(conn, config, "nobody", LOGGER)
    with pytest.raises(ValueError, match="candidate_not_found"):
        scraper.scrape_for_candidate(conn, config, "nobody", LOGGER)
