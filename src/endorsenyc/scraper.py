"""Web-search backed endorsement discovery.

For each endorser an OpenAI-compatible search model is asked whether the
person or organization has endorsed anyone in the 2025 NYC mayoral race.
Replies are parsed leniently: a structured JSON document, a JSON fenced
block, or as a last resort a best-effort scan of free text.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import asdict
from typing import Any

import jsonschema

from .config import Config
from .llm import web_search_completion
from .models import (
    CONFIDENCE_LEVELS,
    ENDORSEMENT_TYPES,
    SENTIMENTS,
    STRENGTHS,
    Endorser,
    ScrapedEndorsement,
)
from .storage import (
    create_endorsement,
    find_candidate_by_name,
    get_candidate,
    get_endorser,
    list_endorsements,
    list_endorsers,
    load_api_secret,
)
from .utils import log_event, parse_date_value

API_KEY_SECRET = "openai_api_key"
NO_ENDORSEMENT_MARKER = "NO ENDORSEMENT FOUND"
UNKNOWN_CANDIDATE = "Unknown"

# Most specific first; the first hit wins.
CANDIDATE_ALIASES: tuple[tuple[str, str], ...] = (
    ("zohran mamdani", "Zohran Mamdani"),
    ("eric adams", "Eric Adams"),
    ("andrew cuomo", "Andrew Cuomo"),
    ("curtis sliwa", "Curtis Sliwa"),
    ("mamdani", "Zohran Mamdani"),
    ("adams", "Eric Adams"),
    ("cuomo", "Andrew Cuomo"),
    ("sliwa", "Curtis Sliwa"),
)

CONFIDENCE_ALIASES = {
    "high": "confirmed",
    "medium": "reported",
    "low": "rumored",
    "unknown": "reported",
}
STRENGTH_ALIASES = {"moderate": "standard"}

_OPTIONAL_TEXT = {"type": ["string", "null"]}

ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["candidate_name", "endorsement_type", "sentiment", "confidence", "strength"],
    "properties": {
        "candidate_name": {"type": "string", "minLength": 1},
        "source_url": _OPTIONAL_TEXT,
        "source_title": _OPTIONAL_TEXT,
        "quote": _OPTIONAL_TEXT,
        "endorsement_type": {"enum": list(ENDORSEMENT_TYPES)},
        "sentiment": {"enum": list(SENTIMENTS)},
        "confidence": {"enum": list(CONFIDENCE_LEVELS)},
        "strength": {"enum": list(STRENGTHS)},
        "endorsed_at": _OPTIONAL_TEXT,
    },
}

_FENCED_JSON = re.compile(r"```json\s*(\{.*\})\s*```", re.DOTALL)
_URL = re.compile(r"https?://[^\s\)\]\"']+")
_QUOTED = re.compile(r'"([^"]+)"')


def search_query(endorser_name: str) -> str:
    return f'"{endorser_name}" endorsement 2025 NYC mayor election'


def build_prompt(endorser_name: str) -> str:
    return f"""Search for: {search_query(endorser_name)}

Search for recent news articles and statements about {endorser_name} making endorsements for NYC mayor in 2025.

Please provide:
1. Any direct endorsements or statements of support for any NYC mayoral candidate
2. The source URL and title
3. Any relevant quotes
4. The date of the endorsement (if mentioned)
5. The type of endorsement (endorsement, un_endorsement, conditional, rumored)
6. Which candidate they endorsed (if mentioned)

If no endorsement is found, respond with exactly: "{NO_ENDORSEMENT_MARKER}"

If endorsements are found, respond with ONLY valid JSON in this exact format:
{{
  "endorsements": [
    {{
      "source_url": "URL",
      "source_title": "Article title",
      "quote": "Relevant quote",
      "endorsement_type": "endorsement|un_endorsement|conditional|rumored",
      "sentiment": "positive|negative|neutral",
      "confidence": "rumored|reported|confirmed",
      "strength": "weak|standard|strong|enthusiastic",
      "endorsed_at": "YYYY-MM-DD",
      "candidate_name": "Name of endorsed candidate"
    }}
  ]
}}

IMPORTANT: Respond with ONLY the JSON or "{NO_ENDORSEMENT_MARKER}". Do not include any other text, explanations, or formatting."""


def parse_response(
    text: str | None, endorser_name: str, logger: logging.Logger | None = None
) -> list[ScrapedEndorsement]:
    if not text or NO_ENDORSEMENT_MARKER in text:
        return []
    document = _load_json(text)
    if document is None:
        match = _FENCED_JSON.search(text)
        if match:
            document = _load_json(match.group(1))
    if document is None:
        if logger:
            log_event(logger, logging.INFO, "scrape_reply_unstructured", endorser=endorser_name)
        return extract_from_text(text, endorser_name)
    items = document.get("endorsements") if isinstance(document, dict) else None
    if not isinstance(items, list):
        return []
    results: list[ScrapedEndorsement] = []
    for raw in items:
        scraped = _to_scraped(raw, endorser_name, logger)
        if scraped:
            results.append(scraped)
    return results


def extract_from_text(text: str, endorser_name: str) -> list[ScrapedEndorsement]:
    lowered = text.lower()
    url_match = _URL.search(text)
    quote_match = _QUOTED.search(text)
    if not (url_match or quote_match or "endors" in lowered or "support" in lowered):
        return []
    candidate_name = UNKNOWN_CANDIDATE
    for needle, canonical in CANDIDATE_ALIASES:
        if needle in lowered:
            candidate_name = canonical
            break
    return [
        ScrapedEndorsement(
            endorser_name=endorser_name,
            candidate_name=candidate_name,
            source_url=url_match.group(0) if url_match else None,
            source_title="Extracted from search results",
            quote=quote_match.group(1) if quote_match else text[:300],
            endorsement_type="endorsement",
            sentiment="positive",
            confidence="reported",
            strength="standard",
            endorsed_at=None,
        )
    ]


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _normalize_item(raw: dict[str, Any]) -> dict[str, Any]:
    item = dict(raw)
    item["candidate_name"] = str(item.get("candidate_name") or UNKNOWN_CANDIDATE).strip()
    for key, default in (
        ("endorsement_type", "endorsement"),
        ("sentiment", "positive"),
        ("confidence", "reported"),
        ("strength", "standard"),
    ):
        value = item.get(key)
        item[key] = str(value).strip().lower() if value else default
    item["confidence"] = CONFIDENCE_ALIASES.get(item["confidence"], item["confidence"])
    item["strength"] = STRENGTH_ALIASES.get(item["strength"], item["strength"])
    return item


def _to_scraped(
    raw: Any, endorser_name: str, logger: logging.Logger | None
) -> ScrapedEndorsement | None:
    if not isinstance(raw, dict):
        return None
    item = _normalize_item(raw)
    try:
        jsonschema.validate(item, ITEM_SCHEMA)
    except jsonschema.ValidationError as exc:
        if logger:
            log_event(
                logger,
                logging.WARNING,
                "scrape_item_invalid",
                endorser=endorser_name,
                error=exc.message,
            )
        return None
    endorsed_at = parse_date_value(item.get("endorsed_at")) if item.get("endorsed_at") else None
    return ScrapedEndorsement(
        endorser_name=endorser_name,
        candidate_name=item["candidate_name"],
        source_url=item.get("source_url") or None,
        source_title=item.get("source_title") or None,
        quote=item.get("quote") or None,
        endorsement_type=item["endorsement_type"],
        sentiment=item["sentiment"],
        confidence=item["confidence"],
        strength=item["strength"],
        endorsed_at=endorsed_at.isoformat() if endorsed_at else None,
    )


def resolve_api_key(conn, config: Config) -> str:
    api_key = os.environ.get(config.scraper.api_key_env, "")
    if api_key:
        return api_key
    stored = load_api_secret(conn, API_KEY_SECRET)
    if not stored:
        raise ValueError("api_key_missing")
    return stored


def search_endorser(
    config: Config, api_key: str, endorser: Endorser, logger: logging.Logger
) -> list[ScrapedEndorsement]:
    reply = web_search_completion(config.scraper, api_key, build_prompt(endorser.name), logger)
    return parse_response(reply, endorser.name, logger)


def save_endorsements(
    conn, endorsements: list[ScrapedEndorsement], endorser_id: str, logger: logging.Logger
) -> int:
    saved = 0
    for scraped in endorsements:
        candidate = None
        if scraped.candidate_name and scraped.candidate_name != UNKNOWN_CANDIDATE:
            candidate = find_candidate_by_name(conn, scraped.candidate_name)
        if not candidate:
            log_event(
                logger,
                logging.INFO,
                "scrape_candidate_unresolved",
                endorser=scraped.endorser_name,
                candidate=scraped.candidate_name,
                source_url=scraped.source_url,
            )
            continue
        if scraped.source_url and any(
            existing.source_url == scraped.source_url
            for existing in list_endorsements(conn, candidate_id=candidate.id, endorser_id=endorser_id)
        ):
            continue
        try:
            create_endorsement(
                conn,
                {
                    "endorser_id": endorser_id,
                    "candidate_id": candidate.id,
                    "source_url": scraped.source_url,
                    "source_type": "website",
                    "source_title": scraped.source_title or "Unknown Source",
                    "quote": scraped.quote or "",
                    "endorsement_type": scraped.endorsement_type,
                    "sentiment": scraped.sentiment,
                    "confidence": scraped.confidence,
                    "strength": scraped.strength,
                    "endorsed_at": scraped.endorsed_at,
                    "context_tags": ["scraped"],
                },
            )
        except ValueError as exc:
            log_event(
                logger,
                logging.ERROR,
                "scrape_save_failed",
                endorser=scraped.endorser_name,
                candidate=scraped.candidate_name,
                error=str(exc),
            )
            continue
        saved += 1
    return saved


def _scrape_endorsers(
    conn,
    config: Config,
    endorsers: list[Endorser],
    logger: logging.Logger,
    candidate_name: str | None = None,
) -> dict[str, object]:
    if not config.scraper.enabled:
        raise ValueError("scraper_disabled")
    api_key = resolve_api_key(conn, config)
    summary: dict[str, Any] = {
        "endorsers_searched": 0,
        "endorsements_found": 0,
        "endorsements_saved": 0,
        "errors": 0,
        "endorsements": [],
    }
    for index, endorser in enumerate(endorsers):
        summary["endorsers_searched"] += 1
        log_event(
            logger,
            logging.INFO,
            "scrape_endorser_started",
            endorser=endorser.name,
            position=index + 1,
            total=len(endorsers),
        )
        try:
            found = search_endorser(config, api_key, endorser, logger)
            if candidate_name:
                wanted = candidate_name.lower()
                found = [item for item in found if wanted in item.candidate_name.lower()]
            summary["endorsements_found"] += len(found)
            summary["endorsements_saved"] += save_endorsements(conn, found, endorser.id, logger)
            summary["endorsements"].extend(asdict(item) for item in found)
        except Exception as exc:  # noqa: BLE001
            summary["errors"] += 1
            log_event(logger, logging.ERROR, "scrape_endorser_failed", endorser=endorser.name, error=str(exc))
        if config.scraper.delay_seconds > 0:
            time.sleep(config.scraper.delay_seconds)
    log_event(
        logger,
        logging.INFO,
        "scrape_completed",
        endorsers_searched=summary["endorsers_searched"],
        endorsements_found=summary["endorsements_found"],
        endorsements_saved=summary["endorsements_saved"],
        errors=summary["errors"],
    )
    return summary


def scrape_all(conn, config: Config, logger: logging.Logger) -> dict[str, object]:
    return _scrape_endorsers(conn, config, list_endorsers(conn), logger)


def scrape_for_endorser(
    conn, config: Config, endorser_id: str, logger: logging.Logger
) -> dict[str, object]:
    endorser = get_endorser(conn, endorser_id)
    if not endorser:
        raise ValueError("endorser_not_found")
    return _scrape_endorsers(conn, config, [endorser], logger)


def scrape_for_candidate(
    conn, config: Config, candidate_id: str, logger: logging.Logger
) -> dict[str, object]:
    candidate = get_candidate(conn, candidate_id)
    if not candidate:
        raise ValueError("candidate_not_found")
    return _scrape_endorsers(conn, config, list_endorsers(conn), logger, candidate_name=candidate.name)
