from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any

from ..config import ScraperConfig
from ..utils import log_event

SEARCH_SYSTEM_PROMPT = (
    "You are a political research assistant tracking endorsements in the "
    "2025 New York City mayoral election. Only report endorsements you can "
    "attribute to a published source."
)


def web_search_completion(
    config: ScraperConfig,
    api_key: str,
    prompt: str,
    logger: logging.Logger | None = None,
) -> str:
    """Run one chat completion with the provider's web search tool enabled."""
    if not api_key:
        raise ValueError("api_key_missing")
    payload = {
        "model": config.model,
        "web_search_options": {
            "search_context_size": config.search_context_size,
            "user_location": {
                "type": "approximate",
                "approximate": dict(config.user_location),
            },
        },
        "messages": [
            {"role": "system", "content": SEARCH_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
    }
    url = _join_url(config.base_url, "/chat/completions")
    response = _http_request("POST", url, _auth_headers(api_key), payload, config.timeout_seconds)
    content = _read_openai(response)
    if logger:
        log_event(logger, logging.DEBUG, "llm_search_completed", model=config.model, chars=len(content))
    return content


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ValueError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ValueError(f"network_error: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ValueError("openai_missing_choices")
    return choices[0].get("message", {}).get("content") or ""


def _auth_headers(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + "/" + path.lstrip("/")
