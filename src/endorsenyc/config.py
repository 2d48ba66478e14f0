from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    feeds_file: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class IngestConfig:
    http: HttpConfig
    max_item_age_hours: int
    default_source_type: str


@dataclass(frozen=True)
class QueueConfig:
    concurrency: int
    attempts: int
    backoff_seconds: float


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    retention_hours: int
    keep_finished: int
    queues: dict[str, QueueConfig]


@dataclass(frozen=True)
class SchedulesConfig:
    enabled: bool
    all_feeds_minutes: int
    high_priority_feeds_minutes: int
    daily_cleanup_hour_utc: int


@dataclass(frozen=True)
class PipelineConfig:
    auto_approve: bool
    auto_approve_confidence: str
    classify_priority: int
    high_confidence_priority: int
    review_priority: int


@dataclass(frozen=True)
class ScraperConfig:
    enabled: bool
    base_url: str
    model: str
    timeout_seconds: int
    delay_seconds: float
    search_context_size: str
    api_key_env: str
    user_location: dict[str, str]


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    ingest: IngestConfig
    jobs: JobsConfig
    schedules: SchedulesConfig
    pipeline: PipelineConfig
    scraper: ScraperConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "EndorseNYC",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "feeds_file": "/config/feeds.yml",
    },
    "ingest": {
        "http": {
            "timeout_seconds": 10,
            "user_agent": "EndorseNYC/1.0 (NYC Endorsement Tracker)",
            "max_retries": 0,
            "backoff_seconds": 2,
        },
        "max_item_age_hours": 24,
        "default_source_type": "rss",
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "retention_hours": 24,
        "keep_finished": 1000,
        "queues": {
            "fetch": {"concurrency": 5, "attempts": 3, "backoff_seconds": 2.0},
            "classify": {"concurrency": 3, "attempts": 3, "backoff_seconds": 2.0},
            "notify": {"concurrency": 2, "attempts": 3, "backoff_seconds": 2.0},
            "scrape": {"concurrency": 1, "attempts": 1, "backoff_seconds": 2.0},
        },
    },
    "schedules": {
        "enabled": True,
        "all_feeds_minutes": 15,
        "high_priority_feeds_minutes": 5,
        "daily_cleanup_hour_utc": 2,
    },
    "pipeline": {
        "auto_approve": True,
        "auto_approve_confidence": "reported",
        "classify_priority": 5,
        "high_confidence_priority": 10,
        "review_priority": 5,
    },
    "scraper": {
        "enabled": True,
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-search-preview",
        "timeout_seconds": 60,
        "delay_seconds": 2.0,
        "search_context_size": "medium",
        "api_key_env": "OPENAI_API_KEY",
        "user_location": {
            "country": "US",
            "city": "New York",
            "region": "New York",
        },
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    pipeline = cfg["pipeline"]
    if pipeline["auto_approve_confidence"] not in ("rumored", "reported", "confirmed"):
        errors.append("config.runtime.pipeline.auto_approve_confidence must be a confidence level")
    hour = cfg["schedules"]["daily_cleanup_hour_utc"]
    if hour < 0 or hour > 23:
        errors.append("config.runtime.schedules.daily_cleanup_hour_utc must be 0-23")
    for name, queue in cfg["jobs"]["queues"].items():
        if queue["concurrency"] < 1:
            errors.append(f"config.runtime.jobs.queues.{name}.concurrency must be >= 1")
        if queue["attempts"] < 1:
            errors.append(f"config.runtime.jobs.queues.{name}.attempts must be >= 1")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    ingest_cfg = cfg.get("ingest") or {}
    jobs_cfg = cfg.get("jobs") or {}
    schedules_cfg = cfg.get("schedules") or {}
    pipeline_cfg = cfg.get("pipeline") or {}
    scraper_cfg = cfg.get("scraper") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        feeds_file=str(paths_cfg.get("feeds_file")),
    )

    http_cfg = ingest_cfg.get("http") or {}
    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
        max_retries=int(http_cfg.get("max_retries")),
        backoff_seconds=int(http_cfg.get("backoff_seconds")),
    )
    ingest = IngestConfig(
        http=http,
        max_item_age_hours=int(ingest_cfg.get("max_item_age_hours")),
        default_source_type=str(ingest_cfg.get("default_source_type")),
    )

    queues = {
        name: QueueConfig(
            concurrency=int(queue_cfg.get("concurrency")),
            attempts=int(queue_cfg.get("attempts")),
            backoff_seconds=float(queue_cfg.get("backoff_seconds")),
        )
        for name, queue_cfg in (jobs_cfg.get("queues") or {}).items()
    }
    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        retention_hours=int(jobs_cfg.get("retention_hours")),
        keep_finished=int(jobs_cfg.get("keep_finished")),
        queues=queues,
    )

    schedules = SchedulesConfig(
        enabled=bool(schedules_cfg.get("enabled")),
        all_feeds_minutes=int(schedules_cfg.get("all_feeds_minutes")),
        high_priority_feeds_minutes=int(schedules_cfg.get("high_priority_feeds_minutes")),
        daily_cleanup_hour_utc=int(schedules_cfg.get("daily_cleanup_hour_utc")),
    )

    pipeline = PipelineConfig(
        auto_approve=bool(pipeline_cfg.get("auto_approve")),
        auto_approve_confidence=str(pipeline_cfg.get("auto_approve_confidence")),
        classify_priority=int(pipeline_cfg.get("classify_priority")),
        high_confidence_priority=int(pipeline_cfg.get("high_confidence_priority")),
        review_priority=int(pipeline_cfg.get("review_priority")),
    )

    scraper = ScraperConfig(
        enabled=bool(scraper_cfg.get("enabled")),
        base_url=str(scraper_cfg.get("base_url")),
        model=str(scraper_cfg.get("model")),
        timeout_seconds=int(scraper_cfg.get("timeout_seconds")),
        delay_seconds=float(scraper_cfg.get("delay_seconds")),
        search_context_size=str(scraper_cfg.get("search_context_size")),
        api_key_env=str(scraper_cfg.get("api_key_env")),
        user_location=dict(scraper_cfg.get("user_location") or {}),
    )

    return Config(
        app=app,
        paths=paths,
        ingest=ingest,
        jobs=jobs,
        schedules=schedules,
        pipeline=pipeline,
        scraper=scraper,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))


def load_feeds_file(path: str) -> list[dict[str, Any]]:
    if not os.path.exists(path):
        raise ConfigError(f"Feeds file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("feeds") or []
    if not isinstance(data, list):
        raise ConfigError("feeds file must contain a list of feeds")
    feeds: list[dict[str, Any]] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigError(f"feeds[{index}] must be a mapping")
        if not entry.get("url"):
            raise ConfigError(f"feeds[{index}].url is required")
        for key in ("keywords", "exclude_keywords"):
            value = entry.get(key)
            if value is not None and not isinstance(value, list):
                raise ConfigError(f"feeds[{index}].{key} must be a list")
        feeds.append(entry)
    return feeds


def load_population_file(path: str) -> dict[str, list[dict[str, Any]]]:
    if not os.path.exists(path):
        raise ConfigError(f"Population file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("population file must be a mapping")
    population: dict[str, list[dict[str, Any]]] = {}
    for section in ("candidates", "endorsers", "endorsements"):
        entries = data.get(section) or []
        if not isinstance(entries, list):
            raise ConfigError(f"{section} must be a list")
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ConfigError(f"{section}[{index}] must be a mapping")
        population[section] = entries
    for index, entry in enumerate(population["endorsements"]):
        for key in ("endorser_name", "candidate_name"):
            if not entry.get(key):
                raise ConfigError(f"endorsements[{index}].{key} is required")
    return population
