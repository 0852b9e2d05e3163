from __future__ import annotations

import logging
from typing import Any

from ..errors import DataError, FetchError
from ..models import Campaign, Candidate, SourceType
from ..pipelines.content_fetch import ContentFetcher
from ..utils import log_event, truncate_text


class WebPageDiscoverer:
    """Explicit list of page URLs; metadata comes from the pages themselves."""

    source_type = SourceType.WEB

    def __init__(self, fetcher: ContentFetcher, logger: logging.Logger | None = None) -> None:
        self.fetcher = fetcher
        self.logger = logger or logging.getLogger("autopress.discovery.web")

    def discover(self, campaign: Campaign, source: dict[str, Any]) -> list[Candidate]:
        urls = source.get("urls") or ([source["url"]] if source.get("url") else [])
        if not urls:
            raise DataError("missing_source_url", "web source needs url or urls")
        candidates = []
        failures = 0
        for url in urls:
            try:
                result = self.fetcher.fetch(str(url))
            except FetchError as exc:
                failures += 1
                log_event(self.logger, logging.WARNING, "web_page_skipped", url=url, error=exc.describe())
                continue
            if result.kind != "html":
                continue
            candidates.append(
                Candidate(
                    url=result.final_url or str(url),
                    title=result.title or "",
                    excerpt=truncate_text(result.description or result.text, 500),
                    published_at=result.published_at,
                    author=result.author,
                    image_url=result.image_url,
                )
            )
        if failures and not candidates:
            raise FetchError("fetch_failed", f"none of the {len(urls)} pages could be fetched")
        return candidates
