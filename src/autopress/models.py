from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class SourceType(str, Enum):
    RSS = "rss"
    SITEMAP = "sitemap"
    YOUTUBE = "youtube"
    AMAZON = "amazon"
    NEWS = "news"
    WEB = "web"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class RotationStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    LEAST_USED = "least_used"
    FAILOVER = "failover"


class Operation(str, Enum):
    REWRITE = "rewrite"
    TRANSLATE = "translate"
    HUMANIZE = "humanize"


GENERATION_BACKENDS = ("openai", "anthropic", "gemini", "deepseek")
DATA_PROVIDERS = ("newsapi", "serpapi", "youtube", "amazon")
KNOWN_PROVIDERS = GENERATION_BACKENDS + DATA_PROVIDERS


@dataclass(frozen=True)
class QueueItem:
    id: int
    campaign_id: str
    source_url: str
    source_type: str
    title: str
    excerpt: str
    source_data: dict[str, Any]
    priority: int
    status: str
    attempts: int
    discovered_at: str
    claimed_at: str | None
    processed_at: str | None
    result_post_id: str | None
    error_message: str | None


@dataclass(frozen=True)
class NewQueueItem:
    campaign_id: str
    source_url: str
    source_type: str
    title: str = ""
    excerpt: str = ""
    source_data: dict[str, Any] = field(default_factory=dict)
    priority: int = 50


@dataclass(frozen=True)
class EnqueueResult:
    item_id: int | None
    added: bool


@dataclass(frozen=True)
class Candidate:
    """One item a discoverer found for a source, before filtering."""

    url: str
    title: str
    excerpt: str = ""
    published_at: str | None = None
    author: str | None = None
    image_url: str | None = None
    categories: list[str] = field(default_factory=list)
    source_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderKey:
    id: int
    provider: str
    label: str
    secret_last4: str | None
    daily_quota: int
    monthly_quota: int
    requests_today: int
    requests_month: int
    tokens_used: int
    status: str
    last_used_at: str | None
    last_error: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class BackendConfig:
    campaign_id: str
    backend: str
    model: str | None
    strategy: str
    primary_key_id: int | None
    rotation_state: str | None
    options: dict[str, Any]


@dataclass(frozen=True)
class Campaign:
    id: str
    name: str
    campaign_type: str
    status: str
    discovery_interval_minutes: int
    sources: list[dict[str, Any]]
    settings: dict[str, Any]
    consecutive_errors: int
    discovery_in_progress: bool
    last_discovery_start: str | None
    last_discovery_end: str | None
    last_status: str | None
    last_error: str | None
    last_item_count: int


@dataclass(frozen=True)
class ProviderStatistics:
    provider: str
    campaign_id: str
    successes: int
    failures: int
    last_error: str | None
    last_success_at: str | None
    last_failure_at: str | None
    window_attempts: int
    window_failures: int
    window_started_at: str | None
    circuit_open: bool = False


@dataclass(frozen=True)
class DiscoverySuccess:
    campaign_id: str
    items_found: int
    items_added: int
    items_skipped: int
    source_errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DiscoveryNotDue:
    campaign_id: str
    reason: str


@dataclass(frozen=True)
class DiscoveryFailed:
    campaign_id: str
    reason: str
    code: str = "discovery_failed"
    paused: bool = False


DiscoveryOutcome = Union[DiscoverySuccess, DiscoveryNotDue, DiscoveryFailed]
