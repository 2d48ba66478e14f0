from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote_plus

from .models import Endorser
from .storage import add_feed
from .utils import log_event, normalize_url, slugify

HIGH_INFLUENCE_THRESHOLD = 70
DEFAULT_EXCLUDE = ["obituary", "death", "funeral"]

FEED_TEMPLATES: dict[str, dict[str, Any]] = {
    "politician": {
        "keywords": ["endorsement", "endorse", "support", "mayor", "nyc", "new york", "candidate"],
        "exclude_keywords": DEFAULT_EXCLUDE + ["arrest", "scandal"],
        "check_frequency_minutes": 15,
    },
    "union": {
        "keywords": ["endorsement", "endorse", "support", "labor", "union", "workers", "mayor"],
        "exclude_keywords": DEFAULT_EXCLUDE,
        "check_frequency_minutes": 30,
    },
    "business": {
        "keywords": ["endorsement", "endorse", "support", "mayor", "nyc", "business"],
        "exclude_keywords": DEFAULT_EXCLUDE,
        "check_frequency_minutes": 30,
    },
    "media": {
        "keywords": ["endorsement", "endorse", "support", "mayor", "nyc"],
        "exclude_keywords": DEFAULT_EXCLUDE,
        "check_frequency_minutes": 30,
    },
    "celebrity": {
        "keywords": ["endorsement", "endorse", "support", "mayor", "nyc"],
        "exclude_keywords": DEFAULT_EXCLUDE,
        "check_frequency_minutes": 30,
    },
    "religious": {
        "keywords": ["endorsement", "endorse", "support", "mayor", "nyc", "community"],
        "exclude_keywords": DEFAULT_EXCLUDE,
        "check_frequency_minutes": 30,
    },
    "nonprofit": {
        "keywords": ["endorsement", "endorse", "support", "mayor", "nyc", "advocacy"],
        "exclude_keywords": DEFAULT_EXCLUDE,
        "check_frequency_minutes": 30,
    },
    "academic": {
        "keywords": ["endorsement", "endorse", "support", "mayor", "nyc", "academic"],
        "exclude_keywords": DEFAULT_EXCLUDE,
        "check_frequency_minutes": 30,
    },
}

_BASE_KEYWORDS = ["endorsement", "endorse", "mayor", "nyc", "new york"]

NEWS_SOURCES: dict[str, list[tuple[str, str, list[str]]]] = {
    "nyc-political": [
        ("NYT Politics", "https://rss.nytimes.com/services/xml/rss/nyt/Politics.xml", []),
        ("AMNY Politics", "https://www.amny.com/politics/feed/", []),
        ("Gothamist Politics", "https://gothamist.com/feed/politics", []),
        ("City & State NY", "https://www.cityandstateny.com/feed", []),
        ("THE CITY", "https://www.thecity.nyc/feed", []),
        ("Politico New York", "https://www.politico.com/rss/state_news_ny.xml", []),
    ],
    "union-news": [
        ("Labor Press", "https://laborpress.org/feed/", ["labor"]),
        ("AFL-CIO", "https://aflcio.org/feed", ["labor"]),
        ("SEIU", "https://www.seiu.org/feed", ["labor"]),
    ],
    "business-news": [
        ("Crain's New York Business", "https://www.crainsnewyork.com/rss.xml", ["business"]),
        ("Commercial Observer", "https://commercialobserver.com/feed/", ["business", "real_estate"]),
    ],
    "religious-news": [
        ("Catholic New York", "https://cny.org/feed/", ["catholic"]),
        ("Amsterdam News", "https://amsterdamnews.com/feed/", ["community"]),
        ("El Diario", "https://eldiariony.com/feed/", ["latino"]),
    ],
    "entertainment-news": [
        ("Variety", "https://variety.com/feed/", ["entertainment"]),
        ("Page Six", "https://pagesix.com/feed/", ["celebrity"]),
    ],
    "nonprofit-news": [
        ("Nonprofit Quarterly", "https://nonprofitquarterly.org/feed/", ["nonprofit"]),
    ],
    "academic-news": [
        ("Urban Institute", "https://www.urban.org/feed", ["policy"]),
        ("Center for an Urban Future", "https://nycfuture.org/feed", ["policy"]),
    ],
}

SEARCH_FEED_BASE = "https://news.google.com/rss/search"


def search_terms(endorser: Endorser) -> list[str]:
    terms = [endorser.name]
    if endorser.display_name:
        terms.append(endorser.display_name)
    if endorser.organization and endorser.organization != endorser.name:
        terms.append(endorser.organization)
    if endorser.twitter_handle:
        terms.append(endorser.twitter_handle.replace("@", ""))
    if endorser.title:
        terms.append(endorser.title)
    seen: set[str] = set()
    unique: list[str] = []
    for term in terms:
        key = term.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(term.strip())
    return unique


def search_feed_url(term: str) -> str:
    query = quote_plus(f'"{term}" NYC mayor')
    return f"{SEARCH_FEED_BASE}?q={query}&hl=en-US&gl=US&ceid=US:en"


def curated_feeds() -> list[dict[str, Any]]:
    feeds: list[dict[str, Any]] = []
    for group, sources in NEWS_SOURCES.items():
        for index, (name, url, extra_keywords) in enumerate(sources):
            feeds.append(
                {
                    "id": f"{group}-{index}",
                    "name": name,
                    "url": url,
                    "category": group,
                    "check_frequency_minutes": 30,
                    "is_active": True,
                    "is_high_priority": False,
                    "keywords": _BASE_KEYWORDS + extra_keywords,
                    "exclude_keywords": list(DEFAULT_EXCLUDE),
                }
            )
    return feeds


def endorser_feeds(endorser: Endorser) -> list[dict[str, Any]]:
    template = FEED_TEMPLATES.get(endorser.category)
    if not template:
        return []
    frequency = int(template["check_frequency_minutes"])
    return [
        {
            "id": f"endorser-{slugify(endorser.id, 40)}-{index}",
            "name": f"{endorser.name} Mentions",
            "url": search_feed_url(term),
            "category": endorser.category,
            "check_frequency_minutes": frequency,
            "is_active": True,
            "is_high_priority": frequency <= 15,
            "keywords": list(template["keywords"]),
            "exclude_keywords": list(template["exclude_keywords"]),
        }
        for index, term in enumerate(search_terms(endorser))
    ]


def feeds_by_influence(endorsers: list[Endorser], min_influence: int) -> list[dict[str, Any]]:
    feeds: list[dict[str, Any]] = []
    for endorser in endorsers:
        if endorser.influence_score >= min_influence:
            feeds.extend(endorser_feeds(endorser))
    return feeds


def feeds_by_category(endorsers: list[Endorser], category: str) -> list[dict[str, Any]]:
    feeds: list[dict[str, Any]] = []
    for endorser in endorsers:
        if endorser.category == category:
            feeds.extend(endorser_feeds(endorser))
    return feeds


def generate_all_feeds(
    endorsers: list[Endorser], min_influence: int = HIGH_INFLUENCE_THRESHOLD
) -> list[dict[str, Any]]:
    return dedupe_feeds(curated_feeds() + feeds_by_influence(endorsers, min_influence))


def dedupe_feeds(feeds: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen_ids: set[str] = set()
    seen_urls: set[str] = set()
    unique: list[dict[str, Any]] = []
    for feed in feeds:
        url_key = normalize_url(str(feed["url"]))
        if feed["id"] in seen_ids or url_key in seen_urls:
            continue
        seen_ids.add(feed["id"])
        seen_urls.add(url_key)
        unique.append(feed)
    return unique


def generator_stats(endorsers: list[Endorser], feeds: list[dict[str, Any]]) -> dict[str, object]:
    by_category: dict[str, int] = {}
    for endorser in endorsers:
        by_category[endorser.category] = by_category.get(endorser.category, 0) + 1
    return {
        "total_endorsers": len(endorsers),
        "high_influence_endorsers": sum(
            1 for endorser in endorsers if endorser.influence_score >= HIGH_INFLUENCE_THRESHOLD
        ),
        "total_feeds": len(feeds),
        "endorsers_by_category": by_category,
    }


def sync_generated_feeds(conn, feeds: list[dict[str, Any]], logger: logging.Logger) -> int:
    added = 0
    for feed in feeds:
        if add_feed(conn, feed):
            added += 1
    log_event(logger, logging.INFO, "generated_feeds_synced", total=len(feeds), added=added)
    return added
