from __future__ import annotations

import logging
from typing import Any

from ..errors import DataError
from ..models import Campaign, Candidate, SourceType
from ..search.fallback import ProviderFallbackChain
from ..utils import log_event

DEFAULT_FRESHNESS = "24h"


class NewsDiscoverer:
    """Keyword news search through the provider fallback chain.

    Exclusion rules are not applied here; the orchestrator applies the same
    policy to every source type.
    """

    source_type = SourceType.NEWS

    def __init__(self, chain: ProviderFallbackChain, logger: logging.Logger | None = None) -> None:
        self.chain = chain
        self.logger = logger or logging.getLogger("autopress.discovery.news")

    def discover(self, campaign: Campaign, source: dict[str, Any]) -> list[Candidate]:
        keywords = source.get("keywords") or source.get("query")
        if isinstance(keywords, str):
            queries = [keywords.strip()] if keywords.strip() else []
        else:
            queries = [str(k).strip() for k in keywords or [] if str(k).strip()]
        if not queries:
            raise DataError("missing_keywords", "news source needs keywords")
        params = {
            "freshness": source.get("freshness") or DEFAULT_FRESHNESS,
            "max_results": int(source.get("max_results") or 20),
        }
        for key in ("language", "country"):
            if source.get(key):
                params[key] = source[key]
        candidates: list[Candidate] = []
        seen: set[str] = set()
        for query in queries:
            for candidate in self.chain.get_results(query, params, campaign_id=campaign.id):
                if candidate.url in seen:
                    continue
                seen.add(candidate.url)
                candidates.append(candidate)
        log_event(
            self.logger,
            logging.INFO,
            "news_searched",
            campaign_id=campaign.id,
            queries=len(queries),
            candidates=len(candidates),
        )
        return candidates
