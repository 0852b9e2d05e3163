from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any
from urllib.parse import unquote, urlsplit

from ..errors import DataError, FetchError
from ..models import Campaign, Candidate, SourceType
from ..pipelines.content_fetch import ContentFetcher, FetchOptions
from ..utils import log_event, parse_datetime, to_iso

MAX_DEPTH = 3
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(node: ET.Element, name: str) -> str | None:
    for child in node:
        if _local(child.tag) == name and child.text:
            return child.text.strip()
    return None


def _find(node: ET.Element, name: str) -> ET.Element | None:
    for child in node.iter():
        if _local(child.tag) == name:
            return child
    return None


def title_from_url(url: str) -> str:
    path = unquote(urlsplit(url).path).rstrip("/")
    slug = path.rsplit("/", 1)[-1] if path else ""
    slug = re.sub(r"\.(html?|php|aspx?)$", "", slug, flags=re.I)
    words = re.sub(r"[-_]+", " ", slug).strip()
    return words[:1].upper() + words[1:] if words else ""


class SitemapDiscoverer:
    """XML sitemaps, including sitemap indexes and news/image extensions."""

    source_type = SourceType.SITEMAP

    def __init__(self, fetcher: ContentFetcher, logger: logging.Logger | None = None) -> None:
        self.fetcher = fetcher
        self.logger = logger or logging.getLogger("autopress.discovery.sitemap")

    def discover(self, campaign: Campaign, source: dict[str, Any]) -> list[Candidate]:
        url = str(source.get("url") or "").strip()
        if not url:
            raise DataError("missing_source_url", "sitemap source has no url")
        pattern = source.get("url_pattern")
        matcher = re.compile(pattern) if pattern else None
        max_depth = min(MAX_DEPTH, int(source.get("max_depth") or MAX_DEPTH))
        candidates: list[Candidate] = []
        self._walk(url, 0, max_depth, candidates, set())
        if matcher:
            candidates = [c for c in candidates if matcher.search(c.url)]
        candidates.sort(key=lambda c: parse_datetime(c.published_at) or _EPOCH, reverse=True)
        log_event(
            self.logger,
            logging.INFO,
            "sitemap_parsed",
            campaign_id=campaign.id,
            url=url,
            candidates=len(candidates),
        )
        return candidates

    def _walk(
        self,
        url: str,
        depth: int,
        max_depth: int,
        out: list[Candidate],
        visited: set[str],
    ) -> None:
        if url in visited:
            return
        visited.add(url)
        response = self.fetcher.fetch_raw(url, FetchOptions(use_cache=False))
        try:
            root = ET.fromstring(response.body)
        except ET.ParseError as exc:
            raise DataError("sitemap_parse_error", f"invalid sitemap XML at {url}: {exc}") from exc
        kind = _local(root.tag)
        if kind == "sitemapindex":
            if depth >= max_depth:
                log_event(self.logger, logging.WARNING, "sitemap_depth_limit", url=url, depth=depth)
                return
            for node in root:
                if _local(node.tag) != "sitemap":
                    continue
                child_url = _child_text(node, "loc")
                if not child_url:
                    continue
                try:
                    self._walk(child_url, depth + 1, max_depth, out, visited)
                except (FetchError, DataError) as exc:
                    log_event(
                        self.logger,
                        logging.WARNING,
                        "sitemap_child_failed",
                        url=child_url,
                        parent=url,
                        error=exc.describe(),
                    )
            return
        if kind != "urlset":
            raise DataError("sitemap_parse_error", f"{url} is not a sitemap (root <{kind}>)")
        for node in root:
            if _local(node.tag) != "url":
                continue
            candidate = _url_node_to_candidate(node, url)
            if candidate is not None:
                out.append(candidate)


def _url_node_to_candidate(node: ET.Element, sitemap_url: str) -> Candidate | None:
    loc = _child_text(node, "loc")
    if not loc:
        return None
    news = _find(node, "news")
    news_title = _child_text(news, "title") if news is not None else None
    news_date = _child_text(news, "publication_date") if news is not None else None
    image = _find(node, "image")
    image_url = _child_text(image, "loc") if image is not None else None
    published = news_date or _child_text(node, "lastmod")
    extra: dict[str, Any] = {"sitemap": sitemap_url}
    sitemap_priority = _child_text(node, "priority")
    if sitemap_priority:
        try:
            extra["sitemap_priority"] = round(float(sitemap_priority) * 100)
        except ValueError:
            pass
    return Candidate(
        url=loc,
        title=news_title or title_from_url(loc),
        published_at=to_iso(published),
        image_url=image_url,
        extra=extra,
    )

