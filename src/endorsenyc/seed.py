from __future__ import annotations

import logging
from typing import Any

from .storage import add_feed, count_table, create_endorser, upsert_candidate
from .utils import log_event, slugify

_FEED_EXCLUDE = ["obituary", "death", "funeral"]
_FEED_KEYWORDS = ["endorsement", "endorse", "mayor", "nyc", "new york"]

SAMPLE_CANDIDATES: list[dict[str, Any]] = [
    {
        "name": "Eric Adams",
        "party": "Democratic",
        "photo_url": "/images/candidates/adams.jpeg",
        "website": "https://ericadams2025.com",
        "bio": "Current Mayor of New York City, former NYPD officer and Brooklyn Borough President",
        "campaign_color": "#1E40AF",
        "position_summary": {
            "public_safety": "Supports increased police presence and tough-on-crime policies",
            "housing": "Advocates for affordable housing and development",
            "education": "Supports charter schools and school choice",
            "economy": "Pro-business policies and economic development",
        },
    },
    {
        "name": "Andrew Cuomo",
        "party": "Democratic",
        "photo_url": "/images/candidates/cuomo.jpeg",
        "website": "https://andrewcuomo.com",
        "bio": "Former Governor of New York, former Attorney General, son of former Governor Mario Cuomo",
        "campaign_color": "#DC2626",
        "position_summary": {
            "public_safety": "Supports criminal justice reform and police accountability",
            "housing": "Advocates for tenant protections and affordable housing",
            "education": "Supports public education and teacher unions",
            "economy": "Progressive economic policies and worker protections",
        },
    },
    {
        "name": "Zohran Mamdani",
        "party": "Democratic",
        "photo_url": "/images/candidates/mamdani.jpeg",
        "website": "https://zohranmamdani.com",
        "bio": "New York State Assemblymember representing Astoria, progressive activist",
        "campaign_color": "#059669",
        "position_summary": {
            "public_safety": "Supports police reform and community safety alternatives",
            "housing": "Advocates for rent control and tenant rights",
            "education": "Supports public education and student debt relief",
            "economy": "Progressive policies including universal basic income",
        },
    },
    {
        "name": "Curtis Sliwa",
        "party": "Republican",
        "photo_url": "/images/candidates/sliwa.jpeg",
        "website": "https://curtissliwa.com",
        "bio": "Founder of Guardian Angels, radio host, and former mayoral candidate",
        "campaign_color": "#7C2D12",
        "position_summary": {
            "public_safety": "Supports increased police presence and tough-on-crime policies",
            "housing": "Advocates for property rights and development",
            "education": "Supports school choice and charter schools",
            "economy": "Pro-business policies and tax cuts",
        },
    },
]


def _endorser(
    name: str,
    category: str,
    subcategory: str,
    influence_score: int,
    title: str | None = None,
    organization: str | None = None,
    twitter_handle: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "name": name,
        "category": category,
        "subcategory": subcategory,
        "influence_score": influence_score,
        "title": title,
        "organization": organization,
        "twitter_handle": twitter_handle,
        **extra,
    }


_HOUSE = "U.S. House of Representatives"

SAMPLE_ENDORSERS: list[dict[str, Any]] = [
    _endorser(
        "Alexandria Ocasio-Cortez", "politician", "federal_representative", 96,
        "U.S. Representative", _HOUSE, "@AOC",
        display_name="AOC", borough="Queens/Bronx", instagram_handle="@ocasio_cortez",
    ),
    _endorser("Bernie Sanders", "politician", "federal_senator", 98,
              "U.S. Senator", "U.S. Senate", "@BernieSanders"),
    _endorser("Chuck Schumer", "politician", "federal_senator", 95,
              "U.S. Senator", "U.S. Senate", "@SenSchumer"),
    _endorser("Kirsten Gillibrand", "politician", "federal_senator", 88,
              "U.S. Senator", "U.S. Senate", "@SenGillibrand"),
    _endorser("Jerry Nadler", "politician", "federal_representative", 85,
              "U.S. Representative", _HOUSE, "@RepJerryNadler", borough="Manhattan"),
    _endorser("Hakeem Jeffries", "politician", "federal_representative", 92,
              "U.S. Representative", _HOUSE, "@RepJeffries", borough="Brooklyn"),
    _endorser("Kathy Hochul", "politician", "state_executive", 94,
              "Governor", "State of New York", "@GovKathyHochul"),
    _endorser("Eric Adams", "politician", "city_executive", 95,
              "Mayor", "City of New York", "@NYCMayor", borough="Brooklyn"),
    _endorser("Michael Mulgrew", "union", "teachers_union", 90,
              "President", "United Federation of Teachers", "@UFT"),
    _endorser("Bill Ackman", "business", "finance", 91,
              "CEO", "Pershing Square Capital Management"),
    _endorser("Lin-Manuel Miranda", "celebrity", "entertainment", 89,
              "Composer/Actor", None, "@Lin_Manuel", borough="Manhattan"),
    _endorser("Cardinal Timothy Dolan", "religious", "catholic", 88,
              "Archbishop", "Roman Catholic Archdiocese of New York", "@CardinalDolan"),
    _endorser("New York Working Families Party", "nonprofit", "political_organization", 84,
              twitter_handle="@NYWFP", is_organization=True),
    _endorser("New York Times Editorial Board", "media", "newspaper", 94,
              twitter_handle="@NYTOpinion", is_organization=True),
    _endorser("Manhattan Institute", "academic", "think_tank", 79,
              twitter_handle="@ManhattanInst", is_organization=True),
]

SAMPLE_FEEDS: list[dict[str, Any]] = [
    {
        "name": "NYT Politics",
        "url": "https://rss.nytimes.com/services/xml/rss/nyt/Politics.xml",
        "category": "political_news",
        "is_high_priority": True,
        "keywords": _FEED_KEYWORDS,
        "exclude_keywords": _FEED_EXCLUDE,
    },
    {
        "name": "AMNY Politics",
        "url": "https://www.amny.com/politics/feed/",
        "category": "political_news",
        "is_high_priority": True,
        "keywords": _FEED_KEYWORDS,
        "exclude_keywords": _FEED_EXCLUDE,
    },
    {
        "name": "Labor Press",
        "url": "https://laborpress.org/feed/",
        "category": "union_labor",
        "keywords": _FEED_KEYWORDS + ["labor"],
        "exclude_keywords": _FEED_EXCLUDE,
    },
    {
        "name": "Crain's New York Business",
        "url": "https://www.crainsnewyork.com/rss.xml",
        "category": "business_finance",
        "keywords": _FEED_KEYWORDS + ["business"],
        "exclude_keywords": _FEED_EXCLUDE,
    },
]


def seed_sample_data(conn, logger: logging.Logger) -> dict[str, int]:
    """Load the sample candidates, endorsers and feeds into empty tables."""
    inserted = {"candidates": 0, "endorsers": 0, "feeds": 0}
    if count_table(conn, "candidates") == 0:
        for candidate in SAMPLE_CANDIDATES:
            upsert_candidate(conn, {"id": slugify(candidate["name"]), **candidate})
            inserted["candidates"] += 1
    if count_table(conn, "endorsers") == 0:
        for endorser in SAMPLE_ENDORSERS:
            create_endorser(conn, {"id": slugify(endorser["name"]), **endorser})
            inserted["endorsers"] += 1
    if count_table(conn, "feeds") == 0:
        for feed in SAMPLE_FEEDS:
            if add_feed(conn, {"id": slugify(feed["name"]), **feed}):
                inserted["feeds"] += 1
    log_event(logger, logging.INFO, "sample_data_seeded", **inserted)
    return inserted
