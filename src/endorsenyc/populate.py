"""Rerunnable bulk load of known candidates, endorsers and endorsements.

Unlike ``seed_sample_data`` this never looks at table counts. Candidates and
endorsers are matched on their exact name and endorsements on
endorser, candidate, source URL and endorsement date, so running it twice
leaves the database unchanged.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any

from .seed import _endorser
from .storage import (
    create_endorsement,
    create_endorser,
    find_endorsement,
    get_candidate,
    get_candidate_by_name,
    get_endorser,
    get_endorser_by_name,
    upsert_candidate,
)
from .utils import log_event, parse_date_value, slugify, stable_id

_CITY_AND_STATE = {"source_url": "https://cityandstateny.com", "source_title": "City & State NY"}
_JULY_29 = "2024-07-29"


def _endorsed(endorser_name: str, candidate_name: str) -> dict[str, Any]:
    return {
        "endorser_name": endorser_name,
        "candidate_name": candidate_name,
        **_CITY_AND_STATE,
        "endorsement_type": "endorsement",
        "confidence": "confirmed",
        "endorsed_at": _JULY_29,
    }


POPULATION_DATA: dict[str, list[dict[str, Any]]] = {
    "candidates": [
        {"name": "Zohran Mamdani", "party": "Democrat"},
        {"name": "Eric Adams", "party": "Democrat (Independent)"},
        {"name": "Andrew Cuomo", "party": "Democrat (Independent)"},
        {"name": "Jim Walden", "party": "Independent"},
        {"name": "Curtis Sliwa", "party": "Republican"},
    ],
    "endorsers": [
        _endorser("Elizabeth Warren", "politician", "federal_senator", 95,
                  "U.S. Senator", "U.S. Senate", "@SenWarren"),
        _endorser("Bernie Sanders", "politician", "federal_senator", 94,
                  "U.S. Senator", "U.S. Senate", "@BernieSanders"),
        _endorser(
            "Alexandria Ocasio-Cortez", "politician", "federal_representative", 96,
            "U.S. Representative", "U.S. House of Representatives", "@AOC",
            display_name="AOC", borough="Queens/Bronx", instagram_handle="@ocasio_cortez",
        ),
        _endorser("Letitia James", "politician", "state_official", 90,
                  "Attorney General", "New York State", "@NewYorkStateAG"),
        _endorser("Brad Lander", "politician", "city_official", 85,
                  "Comptroller", "New York City", "@bradlander", borough="Brooklyn"),
        _endorser("Jumaane Williams", "politician", "city_official", 88,
                  "Public Advocate", "New York City", "@JumaaneWilliams", borough="Brooklyn"),
        _endorser("District Council 37", "union", "public_sector", 88,
                  organization="DC37", is_organization=True),
        _endorser("New York Working Families Party", "nonprofit", "political_party", 85,
                  organization="WFP", twitter_handle="@NYWFP", is_organization=True),
        _endorser("New York City Democratic Socialists of America", "nonprofit",
                  "political_organization", 80,
                  organization="NYC DSA", twitter_handle="@nyc_dsa", is_organization=True),
        _endorser("Bill Ackman", "business", "finance", 88,
                  "CEO", "Pershing Square Capital Management", "@BillAckman", borough="Manhattan"),
        _endorser("Queens County Republican Party", "nonprofit", "political_party", 75,
                  organization="Queens GOP", borough="Queens", is_organization=True),
        _endorser("George Pataki", "politician", "former_state_official", 75,
                  "Former Governor", "Former New York State", "@GovernorPataki"),
        _endorser("Cyrus Vance Jr.", "politician", "former_city_official", 70,
                  "Former District Attorney", "New York County", borough="Manhattan"),
    ],
    "endorsements": [
        _endorsed("Elizabeth Warren", "Zohran Mamdani"),
        _endorsed("Bernie Sanders", "Zohran Mamdani"),
        _endorsed("Alexandria Ocasio-Cortez", "Zohran Mamdani"),
        _endorsed("Letitia James", "Zohran Mamdani"),
        _endorsed("Brad Lander", "Zohran Mamdani"),
        _endorsed("Jumaane Williams", "Zohran Mamdani"),
        _endorsed("District Council 37", "Zohran Mamdani"),
        _endorsed("New York Working Families Party", "Zohran Mamdani"),
        _endorsed("New York City Democratic Socialists of America", "Zohran Mamdani"),
        _endorsed("Bill Ackman", "Eric Adams"),
        _endorsed("Queens County Republican Party", "Curtis Sliwa"),
        _endorsed("George Pataki", "Curtis Sliwa"),
        _endorsed("Cyrus Vance Jr.", "Jim Walden"),
    ],
}


def normalize_endorsed_at(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).isoformat()
    if isinstance(value, str) and len(value.strip()) == 10:
        value = f"{value.strip()}T00:00:00+00:00"
    parsed = parse_date_value(value)
    if parsed is None:
        raise ValueError("invalid_endorsed_at")
    return parsed.isoformat()


def _free_id(conn, lookup, name: str, kind: str) -> str:
    slug = slugify(name)
    if slug and lookup(conn, slug) is None:
        return slug
    return stable_id(kind, name)


def populate_endorsements(
    conn, data: dict[str, Any] | None = None, logger: logging.Logger | None = None
) -> dict[str, int]:
    """Insert whatever part of ``data`` is not already stored.

    Endorsements naming an endorser or candidate that does not exist are
    skipped and counted under ``skipped_unresolved``.
    """
    logger = logger or logging.getLogger("endorsenyc")
    data = POPULATION_DATA if data is None else data
    counts = {
        "candidates_added": 0,
        "endorsers_added": 0,
        "endorsements_added": 0,
        "existing": 0,
        "skipped_unresolved": 0,
    }

    for candidate in data.get("candidates") or []:
        name = str(candidate.get("name") or "").strip()
        if get_candidate_by_name(conn, name):
            counts["existing"] += 1
            continue
        candidate_id = candidate.get("id") or _free_id(conn, get_candidate, name, "candidate")
        upsert_candidate(conn, {**candidate, "id": candidate_id, "name": name})
        counts["candidates_added"] += 1

    for endorser in data.get("endorsers") or []:
        name = str(endorser.get("name") or "").strip()
        if get_endorser_by_name(conn, name):
            counts["existing"] += 1
            continue
        endorser_id = endorser.get("id") or _free_id(conn, get_endorser, name, "endorser")
        create_endorser(conn, {**endorser, "id": endorser_id, "name": name})
        counts["endorsers_added"] += 1

    for entry in data.get("endorsements") or []:
        endorser = get_endorser_by_name(conn, entry.get("endorser_name") or "")
        candidate = get_candidate_by_name(conn, entry.get("candidate_name") or "")
        if endorser is None or candidate is None:
            log_event(
                logger,
                logging.WARNING,
                "populate_endorsement_unresolved",
                endorser_name=entry.get("endorser_name"),
                candidate_name=entry.get("candidate_name"),
            )
            counts["skipped_unresolved"] += 1
            continue
        source_url = entry.get("source_url")
        endorsed_at = normalize_endorsed_at(entry.get("endorsed_at"))
        if find_endorsement(conn, endorser.id, candidate.id, source_url, endorsed_at):
            counts["existing"] += 1
            continue
        create_endorsement(
            conn,
            {
                "endorser_id": endorser.id,
                "candidate_id": candidate.id,
                "source_url": source_url,
                "source_type": entry.get("source_type") or "website",
                "source_title": entry.get("source_title"),
                "quote": entry.get("quote"),
                "endorsement_type": entry.get("endorsement_type") or "endorsement",
                "confidence": entry.get("confidence") or "reported",
                "sentiment": entry.get("sentiment") or "positive",
                "strength": entry.get("strength") or "standard",
                "endorsed_at": endorsed_at,
            },
        )
        counts["endorsements_added"] += 1

    log_event(logger, logging.INFO, "endorsements_populated", **counts)
    return counts
