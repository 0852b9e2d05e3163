from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from typing import Any

import yaml

CONFIG_PATH_ENV = "AP_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_redirects: int


@dataclass(frozen=True)
class FetchConfig:
    max_attempts: int
    backoff_seconds: float
    cache_ttl_seconds: int
    excerpt_length: int


@dataclass(frozen=True)
class QueueConfig:
    batch_size: int
    stuck_minutes: int
    retention_days: int
    min_words: int


@dataclass(frozen=True)
class DiscoveryConfig:
    auto_pause_threshold: int
    stuck_minutes: int
    default_interval_minutes: int
    max_items_per_source: int
    campaign_pause_seconds: float


@dataclass(frozen=True)
class GenerationConfig:
    max_concurrent_calls: int
    acquire_retries: int
    acquire_backoff_seconds: float
    acquire_backoff_max_seconds: float
    max_retries: int
    retry_backoff_seconds: float
    timeout_seconds: int
    default_models: dict[str, str]


@dataclass(frozen=True)
class CircuitConfig:
    min_failures: int
    failure_rate: float
    window_ttl_seconds: int


@dataclass(frozen=True)
class NewsConfig:
    provider_order: list[str]
    language: str
    country: str
    searxng_url: str


@dataclass(frozen=True)
class Config:
    paths: PathsConfig
    http: HttpConfig
    fetch: FetchConfig
    queue: QueueConfig
    discovery: DiscoveryConfig
    generation: GenerationConfig
    circuit: CircuitConfig
    news: NewsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "data_dir": "data",
        "state_db": "data/state.sqlite3",
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": "autopress/0.1 (+https://github.com/autopress)",
        "max_redirects": 5,
    },
    "fetch": {
        "max_attempts": 3,
        "backoff_seconds": 1.0,
        "cache_ttl_seconds": 3600,
        "excerpt_length": 500,
    },
    "queue": {
        "batch_size": 5,
        "stuck_minutes": 30,
        "retention_days": 30,
        "min_words": 100,
    },
    "discovery": {
        "auto_pause_threshold": 5,
        "stuck_minutes": 30,
        "default_interval_minutes": 60,
        "max_items_per_source": 20,
        "campaign_pause_seconds": 1.0,
    },
    "generation": {
        "max_concurrent_calls": 10,
        "acquire_retries": 5,
        "acquire_backoff_seconds": 0.5,
        "acquire_backoff_max_seconds": 8.0,
        "max_retries": 2,
        "retry_backoff_seconds": 2.0,
        "timeout_seconds": 120,
        "default_models": {
            "openai": "gpt-4o-mini",
            "anthropic": "claude-3-5-haiku-latest",
            "gemini": "gemini-1.5-flash",
            "deepseek": "deepseek-chat",
        },
    },
    "circuit": {
        "min_failures": 10,
        "failure_rate": 0.8,
        "window_ttl_seconds": 3600,
    },
    "news": {
        "provider_order": ["serpapi", "newsapi", "google_news"],
        "language": "en",
        "country": "us",
        "searxng_url": "",
    },
}

# Sections whose keys are free-form rather than fixed by the defaults.
_OPEN_SECTIONS = {"generation.default_models"}


def default_config() -> Config:
    return build_config(copy.deepcopy(DEFAULT_CONFIG))


def load_config(path: str | None = None) -> Config:
    path = path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    raw: dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        raw = loaded
    elif path != DEFAULT_CONFIG_PATH:
        raise ConfigError(f"config file not found: {path}")
    return config_from_dict(raw)


def config_from_dict(overrides: dict[str, Any]) -> Config:
    merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), overrides)
    errors = validate_config(merged)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return build_config(merged)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    return errors


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    if path.split(".", 1)[-1] in _OPEN_SECTIONS:
        for key, item in value.items():
            if not isinstance(item, str):
                errors.append(f"{path}.{key} must be a string")
        return
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            errors.append(f"missing {path}.{key}")
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
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
        elif value < 0:
            errors.append(f"{path} must not be negative")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        elif value < 0:
            errors.append(f"{path} must not be negative")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")


def build_config(cfg: dict[str, Any]) -> Config:
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    fetch_cfg = cfg["fetch"]
    queue_cfg = cfg["queue"]
    discovery_cfg = cfg["discovery"]
    generation_cfg = cfg["generation"]
    circuit_cfg = cfg["circuit"]
    news_cfg = cfg["news"]

    return Config(
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        http=HttpConfig(
            timeout_seconds=int(http_cfg["timeout_seconds"]),
            user_agent=str(http_cfg["user_agent"]),
            max_redirects=int(http_cfg["max_redirects"]),
        ),
        fetch=FetchConfig(
            max_attempts=max(1, int(fetch_cfg["max_attempts"])),
            backoff_seconds=float(fetch_cfg["backoff_seconds"]),
            cache_ttl_seconds=int(fetch_cfg["cache_ttl_seconds"]),
            excerpt_length=int(fetch_cfg["excerpt_length"]),
        ),
        queue=QueueConfig(
            batch_size=int(queue_cfg["batch_size"]),
            stuck_minutes=int(queue_cfg["stuck_minutes"]),
            retention_days=int(queue_cfg["retention_days"]),
            min_words=int(queue_cfg["min_words"]),
        ),
        discovery=DiscoveryConfig(
            auto_pause_threshold=max(1, int(discovery_cfg["auto_pause_threshold"])),
            stuck_minutes=int(discovery_cfg["stuck_minutes"]),
            default_interval_minutes=int(discovery_cfg["default_interval_minutes"]),
            max_items_per_source=int(discovery_cfg["max_items_per_source"]),
            campaign_pause_seconds=float(discovery_cfg["campaign_pause_seconds"]),
        ),
        generation=GenerationConfig(
            max_concurrent_calls=max(1, int(generation_cfg["max_concurrent_calls"])),
            acquire_retries=int(generation_cfg["acquire_retries"]),
            acquire_backoff_seconds=float(generation_cfg["acquire_backoff_seconds"]),
            acquire_backoff_max_seconds=float(generation_cfg["acquire_backoff_max_seconds"]),
            max_retries=int(generation_cfg["max_retries"]),
            retry_backoff_seconds=float(generation_cfg["retry_backoff_seconds"]),
            timeout_seconds=int(generation_cfg["timeout_seconds"]),
            default_models=dict(generation_cfg["default_models"]),
        ),
        circuit=CircuitConfig(
            min_failures=int(circuit_cfg["min_failures"]),
            failure_rate=float(circuit_cfg["failure_rate"]),
            window_ttl_seconds=int(circuit_cfg["window_ttl_seconds"]),
        ),
        news=NewsConfig(
            provider_order=list(news_cfg["provider_order"]),
            language=str(news_cfg["language"]),
            country=str(news_cfg["country"]),
            searxng_url=str(news_cfg["searxng_url"]),
        ),
    )
