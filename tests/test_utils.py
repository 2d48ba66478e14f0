from endorsenyc.utils import normalize_url, parse_date_value, slugify, stable_id


def test_normalize_url_strips_tracking_and_sorts():
    url = "https://Example.com/path?utm_source=news&b=2&a=1"
    assert normalize_url(url) == "https://example.com/path?a=1&b=2"


def test_normalize_url_drops_fragment():
    assert normalize_url("https://example.com/story#comments") == "https://example.com/story"


def test_slugify_handles_accents_and_length():
    assert slugify("Alexandria Ocasio-Cortez") == "alexandria-ocasio-cortez"
    assert slugify("Crème Brûlée Café") == "creme-brulee-cafe"
    assert slugify("") == "untitled"
    assert slugify("a" * 100, max_length=10) == "a" * 10


def test_parse_date_value_formats():
    rfc = parse_date_value("Mon, 02 Jun 2025 14:30:00 GMT")
    assert rfc is not None
    assert rfc.isoformat() == "2025-06-02T14:30:00+00:00"

    iso = parse_date_value("2025-06-01")
    assert iso is not None
    assert iso.isoformat() == "2025-06-01T00:00:00+00:00"

    assert parse_date_value("not a date") is None
    assert parse_date_value(None) is None


def test_stable_id_is_deterministic():
    assert stable_id("a", "b") == stable_id("a", "b")
    assert stable_id("a", "b") != stable_id("ab")
