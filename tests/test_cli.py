import json
import logging

import pytest

from endorsenyc import cli
from endorsenyc.storage import (
    count_table,
    get_candidate_by_name,
    get_feed,
    init_db,
    list_endorsements,
    list_jobs,
    upsert_feed,
)

LOGGER = logging.getLogger("test")


def _run(argv: list[str]) -> int:
    args = cli.build_parser().parse_args(argv)
    return args.func(args, LOGGER)


def test_feeds_import_and_replace(tmp_path):
    path = tmp_path / "feeds.yml"
    path.write_text(
        """
feeds:
  - name: NYT Politics
    url: https://rss.nytimes.com/services/xml/rss/nyt/Politics.xml
    is_high_priority: true
    keywords: [endorse]
""",
        encoding="utf-8",
    )
    upsert_feed(init_db(), {"id": "old", "name": "Old", "url": "https://example.com/old"})

    assert _run(["feeds", "import", str(path), "--replace"]) == 0

    conn = init_db()
    assert get_feed(conn, "old") is None
    feed = get_feed(conn, "nyt-politics")
    assert feed is not None
    assert feed.is_high_priority is True
    assert feed.keywords == ["endorse"]


def test_feeds_import_rejects_bad_file(tmp_path):
    path = tmp_path / "feeds.yml"
    path.write_text("- name: missing url\n", encoding="utf-8")
    assert _run(["feeds", "import", str(path)]) == 1


def test_feeds_list_without_feeds_fails():
    assert _run(["feeds", "list"]) == 1


def test_db_seed_then_generate_dry_run():
    assert _run(["db", "seed"]) == 0
    assert _run(["feeds", "generate", "--dry-run"]) == 0
    assert _run(["feeds", "list"]) == 0


def test_classify_command_logs_result(caplog):
    with caplog.at_level(logging.INFO, logger="test"):
        code = _run(["classify", "Proud to endorse Zohran Mamdani", "--source-type", "twitter"])
    assert code == 0
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["candidate_mentions"] == ["zohran mamdani"]


def test_jobs_enqueue_with_debounce():
    assert _run(["jobs", "enqueue", "check_all_feeds", "--debounce"]) == 0
    assert _run(["jobs", "enqueue", "check_all_feeds", "--debounce"]) == 0
    jobs = list_jobs(init_db())
    assert len(jobs) == 1
    assert jobs[0].queue == "fetch"


def test_jobs_enqueue_rejects_unknown_type():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["jobs", "enqueue", "build_site"])


def test_scrape_without_api_key_fails():
    assert _run(["scrape"]) == 1


def test_status_and_migrate():
    assert _run(["db", "migrate"]) == 0
    assert _run(["status"]) == 0
    assert _run(["jobs", "stats"]) == 0


def test_db_populate_from_yaml(tmp_path):
    path = tmp_path / "population.yml"
    path.write_text(
        """
candidates:
  - name: Jim Walden
    party: Independent
endorsers:
  - name: Cyrus Vance Jr.
    category: politician
    influence_score: 70
endorsements:
  - endorser_name: Cyrus Vance Jr.
    candidate_name: Jim Walden
    source_url: https://cityandstateny.com
    source_title: City & State NY
    confidence: confirmed
    endorsed_at: 2024-07-29
""",
        encoding="utf-8",
    )

    assert _run(["db", "populate", str(path)]) == 0
    assert _run(["db", "populate", str(path)]) == 0

    conn = init_db()
    walden = get_candidate_by_name(conn, "Jim Walden")
    assert walden is not None
    endorsements = list_endorsements(conn, candidate_id=walden.id)
    assert len(endorsements) == 1
    assert endorsements[0].endorsed_at == "2024-07-29T00:00:00+00:00"


def test_db_populate_defaults_and_bad_file(tmp_path):
    assert _run(["db", "populate"]) == 0
    assert count_table(init_db(), "candidates") == 5

    path = tmp_path / "population.yml"
    path.write_text("endorsements:\n  - candidate_name: Jim Walden\n", encoding="utf-8")
    assert _run(["db", "populate", str(path)]) == 1
    assert _run(["db", "populate", str(tmp_path / "missing.yml")]) == 1
