from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .config import Config
from .models import Feed, FeedItem
from .storage import record_feed_check
from .utils import extract_published_at, log_event, normalize_url, stable_id, utc_now, utc_now_iso


@dataclass(frozen=True)
class FeedResult:
    feed_id: str
    status: str
    http_status: int | None
    feed_title: str | None
    found_count: int
    accepted_count: int
    skipped_stale: int
    skipped_filters: int
    error: str | None
    items: list[FeedItem]


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int,
    backoff_seconds: int,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, None, str(exc)
        except URLError as exc:
            if attempt >= max_retries:
                return None, None, str(exc)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except (OSError, ValueError) as exc:
            return None, None, str(exc)
    return None, None, "Unknown fetch error"


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    if "<" not in value:
        return _normalize_text(value)
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return _normalize_text(soup.get_text(" ", strip=True))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _keyword_match(text: str, keywords: list[str]) -> list[str]:
    lowered = text.lower()
    return [keyword for keyword in keywords if keyword.lower() in lowered]


def passes_filters(text: str, keywords: list[str], exclude_keywords: list[str]) -> bool:
    if keywords and not _keyword_match(text, keywords):
        return False
    if exclude_keywords and _keyword_match(text, exclude_keywords):
        return False
    return True


def entry_to_item(entry: Any, feed_name: str, fetched_at: datetime) -> FeedItem:
    title = strip_html(entry.get("title"))
    description = strip_html(entry.get("summary") or entry.get("description"))
    content_blocks = entry.get("content") or []
    content = ""
    if content_blocks:
        content = strip_html(content_blocks[0].get("value"))
    published = extract_published_at(entry) or fetched_at
    categories = [
        str(tag.get("term"))
        for tag in entry.get("tags") or []
        if tag.get("term")
    ]
    return FeedItem(
        title=title,
        description=description,
        content=content or description,
        link=entry.get("link") or "",
        pub_date=published.isoformat(),
        author=entry.get("author") or None,
        categories=categories,
        source=feed_name,
    )


def parse_feed_items(
    content: bytes | str,
    feed: Feed,
    max_item_age_hours: int,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> tuple[str | None, list[FeedItem], dict[str, int]]:
    """Parse a syndication document into filtered feed items.

    Items older than ``max_item_age_hours`` are dropped; items without any
    date count as fresh. The include/exclude keyword filters are applied to
    the title plus the HTML-stripped snippet.
    """
    now = now or utc_now()
    parsed = feedparser.parse(content)
    if parsed.bozo and logger:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            feed_id=feed.id,
            error=str(parsed.bozo_exception),
        )
    entries = parsed.entries or []
    cutoff = now - timedelta(hours=max_item_age_hours)
    items: list[FeedItem] = []
    counts = {"found": len(entries), "skipped_stale": 0, "skipped_filters": 0}
    for entry in entries:
        published = extract_published_at(entry)
        if published and published < cutoff:
            counts["skipped_stale"] += 1
            continue
        item = entry_to_item(entry, feed.name, now)
        if not passes_filters(f"{item.title} {item.description}", feed.keywords, feed.exclude_keywords):
            counts["skipped_filters"] += 1
            continue
        items.append(item)
    title = parsed.feed.get("title") if parsed.feed else None
    return title, items, counts


def check_feed(feed: Feed, config: Config, logger: logging.Logger) -> FeedResult:
    http_cfg = config.ingest.http
    http_status, content, error = _fetch_url(
        feed.url,
        headers={"User-Agent": http_cfg.user_agent},
        timeout=http_cfg.timeout_seconds,
        max_retries=http_cfg.max_retries,
        backoff_seconds=http_cfg.backoff_seconds,
    )
    if error or not content:
        log_event(
            logger,
            logging.ERROR,
            "feed_fetch_failed",
            feed_id=feed.id,
            url=feed.url,
            error=error or "empty response",
        )
        return FeedResult(
            feed_id=feed.id,
            status="error",
            http_status=http_status,
            feed_title=None,
            found_count=0,
            accepted_count=0,
            skipped_stale=0,
            skipped_filters=0,
            error=error or "empty response",
            items=[],
        )

    title, items, counts = parse_feed_items(
        content, feed, config.ingest.max_item_age_hours, logger=logger
    )
    log_event(
        logger,
        logging.INFO,
        "feed_parsed",
        feed_id=feed.id,
        found_count=counts["found"],
        accepted_count=len(items),
        skipped_stale=counts["skipped_stale"],
        skipped_filters=counts["skipped_filters"],
    )
    return FeedResult(
        feed_id=feed.id,
        status="ok",
        http_status=http_status,
        feed_title=title,
        found_count=counts["found"],
        accepted_count=len(items),
        skipped_stale=counts["skipped_stale"],
        skipped_filters=counts["skipped_filters"],
        error=None,
        items=items,
    )


def check_and_record(conn, feed: Feed, config: Config, logger: logging.Logger) -> FeedResult:
    started_at = utc_now_iso()
    try:
        result = check_feed(feed, config, logger)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "feed_check_error", feed_id=feed.id, error=str(exc))
        result = FeedResult(
            feed_id=feed.id,
            status="error",
            http_status=None,
            feed_title=None,
            found_count=0,
            accepted_count=0,
            skipped_stale=0,
            skipped_filters=0,
            error=str(exc),
            items=[],
        )
    record_feed_check(
        conn,
        feed.id,
        started_at=started_at,
        finished_at=utc_now_iso(),
        status=result.status,
        http_status=result.http_status,
        items_found=result.found_count,
        items_accepted=result.accepted_count,
        skipped_stale=result.skipped_stale,
        skipped_filters=result.skipped_filters,
        error=result.error,
    )
    return result


def check_feeds(
    conn, feeds: list[Feed], config: Config, logger: logging.Logger
) -> list[FeedResult]:
    results = [check_and_record(conn, feed, config, logger) for feed in feeds]
    log_event(
        logger,
        logging.INFO,
        "feeds_checked",
        feeds=len(results),
        errors=sum(1 for result in results if result.status != "ok"),
        items=sum(result.accepted_count for result in results),
    )
    return results


def probe_feed(url: str, config: Config, logger: logging.Logger) -> dict[str, object]:
    http_cfg = config.ingest.http
    _, content, error = _fetch_url(
        url,
        headers={"User-Agent": http_cfg.user_agent},
        timeout=http_cfg.timeout_seconds,
        max_retries=0,
        backoff_seconds=0,
    )
    if error or not content:
        log_event(logger, logging.WARNING, "feed_probe_failed", url=url, error=error or "empty")
        return {"valid": False, "error": error or "empty response"}
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        return {"valid": False, "error": str(parsed.bozo_exception)}
    return {
        "valid": True,
        "title": parsed.feed.get("title") if parsed.feed else None,
        "item_count": len(parsed.entries or []),
    }


def item_key(item: FeedItem) -> str:
    if item.link:
        return stable_id(normalize_url(item.link))
    return stable_id(item.source, item.title, item.pub_date)


def item_text(item: FeedItem) -> str:
    return f"{item.title} {item.description}".strip()


def item_to_payload(item: FeedItem) -> dict[str, object]:
    return {
        "title": item.title,
        "description": item.description,
        "content": item.content,
        "link": item.link,
        "pub_date": item.pub_date,
        "author": item.author,
        "categories": list(item.categories),
        "source": item.source,
    }


def item_from_payload(payload: dict[str, Any]) -> FeedItem:
    return FeedItem(
        title=str(payload.get("title") or ""),
        description=str(payload.get("description") or ""),
        content=str(payload.get("content") or ""),
        link=str(payload.get("link") or ""),
        pub_date=str(payload.get("pub_date") or ""),
        author=payload.get("author") or None,
        categories=[str(value) for value in payload.get("categories") or []],
        source=str(payload.get("source") or ""),
    )
