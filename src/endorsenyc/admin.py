from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .classifier import EndorsementClassifier, load_classifier_rules
from .config import ConfigError, bootstrap_runtime_config, get_runtime_config, load_runtime_config, set_runtime_config
from .db import DBConn, get_state_db_path
from .dispatcher import enqueue, get_queue_stats
from .feeds import probe_feed
from .models import SOURCE_TYPES
from .populate import populate_endorsements
from .scraper import API_KEY_SECRET
from .storage import (
    clear_api_secret,
    create_endorsement,
    create_endorser,
    delete_feed,
    feed_stats,
    get_api_secret_info,
    get_feed,
    get_system_status,
    init_db,
    list_candidates,
    list_endorsements,
    list_endorsers,
    list_feeds,
    list_jobs,
    list_review_queue,
    retract_endorsement,
    set_api_secret,
    upgrade_confidence,
    upsert_feed,
)
from .utils import configure_logging, log_event

app = FastAPI(title="EndorseNYC Admin API")

ADMIN_TOKEN_ENV = "ENYC_ADMIN_TOKEN"
ADMIN_COOKIE_NAME = "enyc_admin_token"


def _setup_logging() -> logging.Logger:
    return configure_logging("endorsenyc.admin")


logger = _setup_logging()


def _require_admin_token(request: Request) -> None:
    token = os.environ.get(ADMIN_TOKEN_ENV)
    if not token:
        return
    header = request.headers.get("X-Admin-Token")
    if header and header == token:
        return
    if request.cookies.get(ADMIN_COOKIE_NAME) == token:
        return
    raise HTTPException(status_code=401, detail="unauthorized")


def _get_conn() -> Iterator[DBConn]:
    conn = init_db(get_state_db_path())
    try:
        bootstrap_runtime_config(conn)
        yield conn
    finally:
        conn.close()


def _http_error(exc: ValueError) -> HTTPException:
    detail = str(exc)
    status = 404 if detail.endswith("_not_found") else 400
    return HTTPException(status_code=status, detail=detail)


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("endorsenyc")
    except Exception:  # noqa: BLE001
        return "unknown"


class EndorserRequest(BaseModel):
    name: str
    category: str
    influence_score: int | None = None
    display_name: str | None = None
    title: str | None = None
    organization: str | None = None
    subcategory: str | None = None
    borough: str | None = None
    twitter_handle: str | None = None
    instagram_handle: str | None = None
    linkedin_url: str | None = None
    personal_website: str | None = None
    is_organization: bool = False
    verification_status: str | None = None


class EndorsementRequest(BaseModel):
    endorser_id: str
    candidate_id: str
    source_url: str | None = None
    source_type: str | None = None
    source_title: str | None = None
    quote: str | None = None
    endorsement_type: str | None = None
    sentiment: str | None = None
    confidence: str | None = None
    strength: str | None = None
    endorsed_at: str | None = None
    context_tags: list[str] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    confidence: str = "confirmed"
    verified_by: str
    notes: str | None = None


class RetractRequest(BaseModel):
    reason: str


class FeedRequest(BaseModel):
    id: str | None = None
    name: str
    url: str
    category: str | None = None
    check_frequency_minutes: int = 30
    is_active: bool = True
    is_high_priority: bool = False
    keywords: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)


class FeedTestRequest(BaseModel):
    url: str


class FeedCheckRequest(BaseModel):
    feed_id: str | None = None
    due_only: bool = False


class ClassifyRequest(BaseModel):
    text: str
    source_url: str = ""
    source_type: str = "website"
    author: str | None = None
    organization: str | None = None


class ScrapeRequest(BaseModel):
    endorser_id: str | None = None
    candidate_id: str | None = None


class JobRequest(BaseModel):
    job_type: str
    payload: dict[str, object] | None = None
    priority: int = 0


class RuntimeConfigRequest(BaseModel):
    config: dict


class PopulateRequest(BaseModel):
    candidates: list[dict] = Field(default_factory=list)
    endorsers: list[dict] = Field(default_factory=list)
    endorsements: list[dict] = Field(default_factory=list)


class ApiKeyRequest(BaseModel):
    api_key: str


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/candidates")
def candidates(conn: DBConn = Depends(_get_conn)) -> list[dict[str, object]]:
    return [asdict(candidate) for candidate in list_candidates(conn)]


@app.get("/endorsers")
def endorsers_list(
    category: str | None = None,
    min_influence: int | None = None,
    search: str | None = None,
    conn: DBConn = Depends(_get_conn),
) -> list[dict[str, object]]:
    return [
        asdict(endorser)
        for endorser in list_endorsers(conn, category=category, min_influence=min_influence, search=search)
    ]


@app.post("/endorsers", dependencies=[Depends(_require_admin_token)])
def endorsers_create(payload: EndorserRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    try:
        endorser = create_endorser(conn, payload.model_dump())
    except ValueError as exc:
        raise _http_error(exc) from exc
    log_event(logger, logging.INFO, "endorser_created", endorser_id=endorser.id, name=endorser.name)
    return asdict(endorser)


@app.get("/endorsements")
def endorsements_list(
    candidate_id: str | None = None,
    endorser_id: str | None = None,
    confidence: str | None = None,
    include_retracted: bool = True,
    limit: int = 100,
    conn: DBConn = Depends(_get_conn),
) -> list[dict[str, object]]:
    rows = list_endorsements(
        conn,
        candidate_id=candidate_id,
        endorser_id=endorser_id,
        confidence=confidence,
        include_retracted=include_retracted,
        limit=limit,
    )
    return [asdict(endorsement) for endorsement in rows]


@app.post("/endorsements", dependencies=[Depends(_require_admin_token)])
def endorsements_create(
    payload: EndorsementRequest, conn: DBConn = Depends(_get_conn)
) -> dict[str, object]:
    try:
        endorsement = create_endorsement(conn, payload.model_dump())
    except ValueError as exc:
        raise _http_error(exc) from exc
    log_event(logger, logging.INFO, "endorsement_created", endorsement_id=endorsement.id)
    return asdict(endorsement)


@app.post("/endorsements/{endorsement_id}/confirm", dependencies=[Depends(_require_admin_token)])
def endorsements_confirm(
    endorsement_id: str, payload: ConfirmRequest, conn: DBConn = Depends(_get_conn)
) -> dict[str, object]:
    try:
        endorsement = upgrade_confidence(
            conn, endorsement_id, payload.confidence, payload.verified_by, payload.notes
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    log_event(
        logger,
        logging.INFO,
        "endorsement_confirmed",
        endorsement_id=endorsement_id,
        confidence=endorsement.confidence,
    )
    return asdict(endorsement)


@app.post("/endorsements/{endorsement_id}/retract", dependencies=[Depends(_require_admin_token)])
def endorsements_retract(
    endorsement_id: str, payload: RetractRequest, conn: DBConn = Depends(_get_conn)
) -> dict[str, object]:
    try:
        endorsement = retract_endorsement(conn, endorsement_id, payload.reason)
    except ValueError as exc:
        raise _http_error(exc) from exc
    log_event(logger, logging.INFO, "endorsement_retracted", endorsement_id=endorsement_id)
    return asdict(endorsement)


@app.get("/feeds")
def feeds_list(conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    return {
        "feeds": [asdict(feed) for feed in list_feeds(conn, active_only=False)],
        "stats": feed_stats(conn),
    }


@app.post("/feeds", dependencies=[Depends(_require_admin_token)])
def feeds_create(payload: FeedRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    try:
        feed = upsert_feed(conn, payload.model_dump())
    except ValueError as exc:
        raise _http_error(exc) from exc
    log_event(logger, logging.INFO, "feed_saved", feed_id=feed.id, url=feed.url)
    return asdict(feed)


@app.delete("/feeds/{feed_id}", dependencies=[Depends(_require_admin_token)])
def feeds_delete(feed_id: str, conn: DBConn = Depends(_get_conn)) -> dict[str, str]:
    if not delete_feed(conn, feed_id):
        raise HTTPException(status_code=404, detail="feed_not_found")
    log_event(logger, logging.INFO, "feed_deleted", feed_id=feed_id)
    return {"status": "deleted"}


@app.post("/feeds/test", dependencies=[Depends(_require_admin_token)])
def feeds_test(payload: FeedTestRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return probe_feed(payload.url, config, logger)


@app.post("/feeds/check", dependencies=[Depends(_require_admin_token)])
def feeds_check(payload: FeedCheckRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, str]:
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.feed_id:
        if not get_feed(conn, payload.feed_id):
            raise HTTPException(status_code=404, detail="feed_not_found")
        job_id = enqueue(conn, config, "check_feed", {"feed_id": payload.feed_id})
    else:
        job_id = enqueue(
            conn, config, "check_all_feeds", {"due_only": payload.due_only}, debounce=True
        )
    log_event(logger, logging.INFO, "feed_check_enqueued", job_id=job_id, feed_id=payload.feed_id)
    return {"job_id": job_id}


@app.post("/classify")
def classify(payload: ClassifyRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    if payload.source_type not in SOURCE_TYPES:
        raise HTTPException(status_code=400, detail="invalid_source_type")
    try:
        classifier = EndorsementClassifier(load_classifier_rules(conn))
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    result = classifier.classify(
        payload.text,
        payload.source_url,
        payload.source_type,
        author=payload.author,
        organization=payload.organization,
    )
    return asdict(result)


@app.get("/admin/queue", dependencies=[Depends(_require_admin_token)])
def review_queue(
    queue_type: str = Query("all", alias="type"), conn: DBConn = Depends(_get_conn)
) -> dict[str, object]:
    try:
        return list_review_queue(conn, queue_type)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/admin/scrape-endorsements", dependencies=[Depends(_require_admin_token)])
def scrape_status(conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    stored = get_api_secret_info(conn, API_KEY_SECRET)
    return {
        "enabled": config.scraper.enabled,
        "model": config.scraper.model,
        "api_key_configured": bool(os.environ.get(config.scraper.api_key_env) or stored),
        "api_key_last4": stored["last4"] if stored else None,
        "recent_jobs": [
            {
                "id": job.id,
                "status": job.status,
                "requested_at": job.requested_at,
                "finished_at": job.finished_at,
                "result": job.result or {},
                "error": job.error,
            }
            for job in list_jobs(conn, limit=10, queue="scrape")
        ],
    }


@app.post("/admin/scrape-endorsements", dependencies=[Depends(_require_admin_token)])
def scrape_enqueue(payload: ScrapeRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, str]:
    if payload.endorser_id and payload.candidate_id:
        raise HTTPException(status_code=400, detail="endorser_or_candidate_only")
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    job_payload = {key: value for key, value in payload.model_dump().items() if value}
    job_id = enqueue(conn, config, "scrape_endorsements", job_payload or None)
    log_event(logger, logging.INFO, "scrape_enqueued", job_id=job_id, **job_payload)
    return {"job_id": job_id}


@app.get("/system-status")
def system_status(conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    status = get_system_status(conn)
    status["queues"] = get_queue_stats(conn, config)
    status["version"] = _get_version()
    return status


@app.post("/jobs/enqueue", dependencies=[Depends(_require_admin_token)])
def jobs_enqueue(job: JobRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, str]:
    try:
        config = load_runtime_config(conn)
        job_id = enqueue(conn, config, job.job_type, job.payload, priority=job.priority)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=job.job_type)
    return {"job_id": job_id}


@app.get("/jobs")
def jobs(
    limit: int = 20,
    queue: str | None = None,
    status: str | None = None,
    conn: DBConn = Depends(_get_conn),
) -> list[dict[str, object]]:
    return [
        {
            "id": job.id,
            "queue": job.queue,
            "job_type": job.job_type,
            "status": job.status,
            "priority": job.priority,
            "attempts": job.attempts,
            "requested_at": job.requested_at,
            "started_at": job.started_at or "",
            "finished_at": job.finished_at or "",
            "error": job.error or "",
            "result": job.result or {},
        }
        for job in list_jobs(conn, limit=limit, queue=queue, status=status)
    ]


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get(conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(
    payload: RuntimeConfigRequest, conn: DBConn = Depends(_get_conn)
) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(logger, logging.INFO, "runtime_config_updated")
    return {"status": "ok"}


@app.put("/admin/scraper/api-key", dependencies=[Depends(_require_admin_token)])
def scraper_api_key_set(payload: ApiKeyRequest, conn: DBConn = Depends(_get_conn)) -> dict[str, object]:
    if not payload.api_key.strip():
        raise HTTPException(status_code=400, detail="api_key_required")
    try:
        stored = set_api_secret(conn, API_KEY_SECRET, payload.api_key.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(logger, logging.INFO, "scraper_api_key_updated", last4=stored["last4"])
    return {"status": "ok", "last4": stored["last4"]}


@app.delete("/admin/scraper/api-key", dependencies=[Depends(_require_admin_token)])
def scraper_api_key_clear(conn: DBConn = Depends(_get_conn)) -> dict[str, str]:
    clear_api_secret(conn, API_KEY_SECRET)
    log_event(logger, logging.INFO, "scraper_api_key_cleared")
    return {"status": "ok"}


@app.post("/admin/populate", dependencies=[Depends(_require_admin_token)])
def populate(
    payload: PopulateRequest | None = None, conn: DBConn = Depends(_get_conn)
) -> dict[str, object]:
    data = payload.model_dump() if payload else None
    try:
        counts = populate_endorsements(conn, data, logger)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"status": "ok", **counts}
