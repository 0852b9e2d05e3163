from __future__ import annotations

import logging
from typing import Any

import feedparser
from bs4 import BeautifulSoup

from ..errors import DataError
from ..models import Campaign, Candidate, SourceType
from ..pipelines.content_fetch import ContentFetcher, FetchOptions
from ..utils import log_event, to_iso, truncate_text

EXCERPT_LENGTH = 500


class FeedDiscoverer:
    """RSS and Atom feeds."""

    source_type = SourceType.RSS

    def __init__(self, fetcher: ContentFetcher, logger: logging.Logger | None = None) -> None:
        self.fetcher = fetcher
        self.logger = logger or logging.getLogger("autopress.discovery.feed")

    def discover(self, campaign: Campaign, source: dict[str, Any]) -> list[Candidate]:
        url = str(source.get("url") or "").strip()
        if not url:
            raise DataError("missing_source_url", "feed source has no url")
        response = self.fetcher.fetch_raw(url, FetchOptions(use_cache=False))
        parsed = feedparser.parse(response.body)
        if parsed.bozo and not parsed.entries:
            raise DataError(
                "feed_parse_error",
                f"could not parse feed {url}: {parsed.get('bozo_exception')}",
                context={"url": url},
            )
        feed_title = (parsed.feed.get("title") or "").strip() or None
        candidates = [_entry_to_candidate(entry, feed_title) for entry in parsed.entries]
        candidates = [candidate for candidate in candidates if candidate is not None]
        log_event(
            self.logger,
            logging.INFO,
            "feed_parsed",
            campaign_id=campaign.id,
            url=url,
            entries=len(parsed.entries),
            candidates=len(candidates),
        )
        return candidates


def _entry_to_candidate(entry: Any, feed_title: str | None) -> Candidate | None:
    link = entry.get("link") or entry.get("id")
    if not link:
        return None
    content_html = ""
    for content in entry.get("content") or []:
        if content.get("value"):
            content_html = content["value"]
            break
    summary_html = entry.get("summary") or entry.get("description") or content_html
    published = (
        entry.get("published_parsed")
        or entry.get("updated_parsed")
        or entry.get("published")
        or entry.get("updated")
    )
    categories = [tag.get("term") for tag in entry.get("tags") or [] if tag.get("term")]
    return Candidate(
        url=link,
        title=_text(entry.get("title")),
        excerpt=truncate_text(_text(summary_html), EXCERPT_LENGTH),
        published_at=to_iso(published),
        author=entry.get("author"),
        image_url=_entry_image(entry),
        categories=categories,
        source_name=feed_title,
        extra={"content_html": content_html} if content_html else {},
    )


def _entry_image(entry: Any) -> str | None:
    for media in entry.get("media_content") or []:
        if media.get("url") and str(media.get("medium", "image")) == "image":
            return media["url"]
    for thumb in entry.get("media_thumbnail") or []:
        if thumb.get("url"):
            return thumb["url"]
    for link in entry.get("links") or []:
        if link.get("rel") == "enclosure" and str(link.get("type", "")).startswith("image/"):
            return link.get("href")
    return None


def _text(html: str | None) -> str:
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
