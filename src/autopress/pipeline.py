from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any

from .config import Config
from .discovery.amazon import MarketplaceDiscoverer
from .discovery.feeds import FeedDiscoverer
from .discovery.news import NewsDiscoverer
from .discovery.orchestrator import DiscoveryOrchestrator
from .discovery.sitemap import SitemapDiscoverer
from .discovery.web import WebPageDiscoverer
from .discovery.youtube import YouTubeDiscoverer
from .llm.limiter import ConcurrencyLimiter
from .llm.orchestrator import GenerationOrchestrator
from .llm.rotation import KeyRotator
from .models import SourceType
from .pipelines.content_fetch import ContentFetcher, FetchCache
from .pipelines.process_queue import QueueProcessor
from .publish import ArticlePublisher
from .queue import WorkQueue
from .search.fallback import ProviderFallbackChain, ProviderStatsStore
from .search.providers import build_providers
from .security.secrets import SecretBox
from .services.key_service import KeyStore


@dataclass
class Pipeline:
    config: Config
    conn: Any
    queue: WorkQueue
    keys: KeyStore
    rotator: KeyRotator
    limiter: ConcurrencyLimiter
    generation: GenerationOrchestrator
    fetcher: ContentFetcher
    cache: FetchCache
    search: ProviderFallbackChain
    discovery: DiscoveryOrchestrator
    publisher: ArticlePublisher
    processor: QueueProcessor


def build_limiter(config: Config) -> ConcurrencyLimiter:
    generation = config.generation
    return ConcurrencyLimiter(
        generation.max_concurrent_calls,
        retries=generation.acquire_retries,
        backoff_seconds=generation.acquire_backoff_seconds,
        max_backoff_seconds=generation.acquire_backoff_max_seconds,
    )


def build_pipeline(
    config: Config,
    conn: Any,
    *,
    limiter: ConcurrencyLimiter | None = None,
    secret_box: SecretBox | None = None,
    fetcher: ContentFetcher | None = None,
    backends: dict[str, Any] | None = None,
    logger: logging.Logger | None = None,
) -> Pipeline:
    """Wire every component around one database connection.

    Pass ``limiter`` to share the in-flight cap between pipelines built in the
    same process (the admin API builds one pipeline per request).
    """
    logger = logger or logging.getLogger("autopress")
    queue = WorkQueue(conn, logger=logger.getChild("queue"))
    keys = KeyStore(conn, secret_box=secret_box, logger=logger.getChild("keys"))
    rotator = KeyRotator(keys, rng=random.Random(), logger=logger.getChild("rotation"))
    limiter = limiter or build_limiter(config)
    generation = GenerationOrchestrator(
        conn,
        keys,
        rotator,
        limiter,
        config.generation,
        backends=backends,
        logger=logger.getChild("generation"),
    )
    cache = FetchCache(conn)
    fetcher = fetcher or ContentFetcher(config.http, config.fetch, cache=cache, logger=logger.getChild("fetch"))
    search = ProviderFallbackChain(
        build_providers(config.news.provider_order, fetcher, config.news),
        ProviderStatsStore(conn, config.circuit),
        keys,
        logger=logger.getChild("search"),
    )
    publisher = ArticlePublisher(conn, logger=logger.getChild("publish"))
    discoverers = {
        SourceType.RSS: FeedDiscoverer(fetcher),
        SourceType.SITEMAP: SitemapDiscoverer(fetcher),
        SourceType.YOUTUBE: YouTubeDiscoverer(fetcher, keys),
        SourceType.AMAZON: MarketplaceDiscoverer(fetcher),
        SourceType.NEWS: NewsDiscoverer(search),
        SourceType.WEB: WebPageDiscoverer(fetcher),
    }
    discovery = DiscoveryOrchestrator(
        conn,
        queue,
        discoverers,
        config.discovery,
        published=publisher,
        logger=logger.getChild("discovery"),
    )
    processor = QueueProcessor(
        queue,
        fetcher,
        generation,
        publisher,
        config.queue,
        logger=logger.getChild("process"),
    )
    return Pipeline(
        config=config,
        conn=conn,
        queue=queue,
        keys=keys,
        rotator=rotator,
        limiter=limiter,
        generation=generation,
        fetcher=fetcher,
        cache=cache,
        search=search,
        discovery=discovery,
        publisher=publisher,
        processor=processor,
    )


def sweep(pipeline: Pipeline) -> dict[str, int]:
    """Housekeeping shared by the worker tick and the ``sweep`` command."""
    config = pipeline.config
    return {
        "reclaimed": pipeline.queue.reclaim_stuck(config.queue.stuck_minutes * 60),
        "discoveries_reset": pipeline.discovery.reset_stuck(config.discovery.stuck_minutes * 60),
        "purged": pipeline.queue.purge_completed(config.queue.retention_days * 86400),
        "cache_purged": pipeline.cache.purge_expired(),
    }
