import json
from datetime import date, datetime, timezone

from pydantic import BaseModel

from endorsenyc.models import FeedItem, ScrapedEndorsement
from endorsenyc.storage import claim_next_job, complete_job, enqueue_job, init_db, list_jobs
from endorsenyc.utils import json_dumps


class PayloadModel(BaseModel):
    name: str


def _scraped() -> ScrapedEndorsement:
    return ScrapedEndorsement(
        endorser_name="Bernie Sanders",
        candidate_name="Zohran Mamdani",
        source_url="https://example.com/a",
        source_title="Title",
        quote=None,
        endorsement_type="endorsement",
        sentiment="positive",
        confidence="confirmed",
        strength="strong",
        endorsed_at=None,
    )


def test_json_dumps_handles_supported_types():
    payload = {
        "scraped": _scraped(),
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "model": PayloadModel(name="example"),
        "set": {"b", "a"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["scraped"]["candidate_name"] == "Zohran Mamdani"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["model"]["name"] == "example"
    assert decoded["set"] == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_json_dumps_serializes_nested_dataclasses():
    item = FeedItem(
        title="AOC endorses Mamdani",
        description="",
        content="",
        link="https://example.com/a",
        pub_date="2025-06-01T12:00:00+00:00",
        author="AOC",
        categories=["politics"],
        source="NYT",
    )
    decoded = json.loads(json_dumps({"items": [item], "checked_at": datetime(2025, 6, 1, tzinfo=timezone.utc)}))
    assert decoded["items"][0]["categories"] == ["politics"]
    assert decoded["checked_at"] == "2025-06-01T00:00:00+00:00"


def test_job_result_serialization_handles_complex_types(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_job(conn, "scrape", "scrape_endorsements", None)
    job = claim_next_job(conn, "worker-1")
    assert job is not None
    result = {
        "endorsements": [_scraped()],
        "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "model": PayloadModel(name="example"),
    }
    assert complete_job(conn, job_id, result=result) is True
    stored = list_jobs(conn, limit=1)[0].result
    assert stored["endorsements"][0]["endorser_name"] == "Bernie Sanders"
    assert stored["when"].startswith("2025-01-01")
