from __future__ import annotations

import logging
from typing import Any, Callable

from ..config import QueueConfig
from ..errors import DataError, FetchError, PipelineError
from ..llm.orchestrator import GenerationOrchestrator
from ..models import QueueItem, SourceType
from ..publish import ArticlePublisher
from ..queue import WorkQueue
from ..services import campaign_service
from ..utils import log_event, truncate_text
from .content_fetch import ContentFetcher, extract_readable_text

# Source types whose text comes from the linked page and must reach the
# minimum length before generation.
_PAGE_TYPES = {SourceType.RSS.value, SourceType.SITEMAP.value, SourceType.NEWS.value, SourceType.WEB.value}


class QueueProcessor:
    """Turns pending queue items into published articles."""

    def __init__(
        self,
        queue: WorkQueue,
        fetcher: ContentFetcher,
        generation: GenerationOrchestrator,
        publisher: ArticlePublisher,
        config: QueueConfig,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.fetcher = fetcher
        self.generation = generation
        self.publisher = publisher
        self.config = config
        self.logger = logger or logging.getLogger("autopress.process")
        self._builders: dict[str, Callable[[QueueItem], str]] = {
            SourceType.RSS.value: self._page_text,
            SourceType.SITEMAP.value: self._page_text,
            SourceType.NEWS.value: self._page_text,
            SourceType.WEB.value: self._page_text,
            SourceType.YOUTUBE.value: _video_text,
            SourceType.AMAZON.value: _product_text,
        }

    def process_batch(self, limit: int | None = None, campaign_id: str | None = None) -> dict[str, Any]:
        limit = self.config.batch_size if limit is None else limit
        summary: dict[str, Any] = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
            "posts_created": 0,
            "errors": [],
        }
        for item in self.queue.dequeue_next(limit, campaign_id):
            if not self.queue.claim(item.id):
                summary["skipped"] += 1
                continue
            summary["processed"] += 1
            try:
                article_id = self.process_item(item)
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, PipelineError):
                    error = exc.describe()
                else:
                    error = f"{type(exc).__name__}: {exc}"
                self.queue.fail(item.id, error)
                summary["failed"] += 1
                summary["errors"].append({"item_id": item.id, "error": error})
                continue
            self.queue.complete(item.id, article_id)
            summary["succeeded"] += 1
            summary["posts_created"] += 1
        log_event(
            self.logger,
            logging.INFO,
            "queue_batch_processed",
            campaign_id=campaign_id or "all",
            processed=summary["processed"],
            succeeded=summary["succeeded"],
            failed=summary["failed"],
            skipped=summary["skipped"],
        )
        return summary

    def process_item(self, item: QueueItem) -> int:
        """Generate and publish one claimed item; returns the article id."""
        builder = self._builders.get(item.source_type)
        if builder is None:
            raise DataError("invalid_source_type", f"cannot build content for {item.source_type}")
        text = builder(item)
        if item.source_type in _PAGE_TYPES:
            words = len(text.split())
            if words < self.config.min_words:
                raise DataError(
                    "content_too_short",
                    f"{words} words, need at least {self.config.min_words}",
                )
        if not text.strip():
            raise DataError("content_too_short", "no source text")

        backend = campaign_service.get_backend_config(self.generation.conn, item.campaign_id)
        options = backend.options if backend else {}
        rewritten = self.generation.rewrite(item.campaign_id, text, title=item.title, source_url=item.source_url)
        content = rewritten.content
        title = str(rewritten.metadata.get("title") or item.title)
        excerpt = str(rewritten.metadata.get("excerpt") or truncate_text(item.excerpt, 300))
        tokens = rewritten.tokens_used
        if options.get("humanize"):
            humanized = self.generation.humanize(item.campaign_id, content)
            content = humanized.content
            tokens += humanized.tokens_used
        if options.get("translate_to"):
            translated = self.generation.translate(item.campaign_id, content, str(options["translate_to"]))
            content = translated.content
            tokens += translated.tokens_used

        metadata = {
            "source_type": item.source_type,
            "model": rewritten.model,
            "tokens_used": tokens,
            "keywords": rewritten.metadata.get("keywords") or [],
            "image_url": item.source_data.get("image_url"),
            "author": item.source_data.get("author"),
            "published_date": item.source_data.get("published_date"),
        }
        return self.publisher.publish(
            item.campaign_id,
            item,
            title=title,
            content=content,
            excerpt=excerpt,
            metadata={key: value for key, value in metadata.items() if value not in (None, [])},
        )

    def _page_text(self, item: QueueItem) -> str:
        try:
            result = self.fetcher.fetch(item.source_url)
        except FetchError as exc:
            log_event(
                self.logger,
                logging.WARNING,
                "source_page_unavailable",
                item_id=item.id,
                url=item.source_url,
                error=exc.describe(),
            )
            return _stored_text(item)
        if result.kind == "html" and result.text:
            return result.text
        return _stored_text(item)


def _stored_text(item: QueueItem) -> str:
    extra = item.source_data.get("extra") or {}
    if extra.get("content_html"):
        return extract_readable_text(extra["content_html"])
    return item.excerpt or ""


def _video_text(item: QueueItem) -> str:
    extra = item.source_data.get("extra") or {}
    lines = [f"Video: {item.title}"]
    if item.source_data.get("author"):
        lines.append(f"Channel: {item.source_data['author']}")
    lines.append(f"URL: {item.source_url}")
    description = extra.get("description") or item.excerpt
    if description:
        lines.extend(["", description])
    return "\n".join(lines)


def _product_text(item: QueueItem) -> str:
    extra = item.source_data.get("extra") or {}
    lines = [f"Product: {item.title}", f"URL: {item.source_url}"]
    if extra.get("price_text"):
        lines.append(f"Price: {extra['price_text']}")
    if extra.get("rating") is not None:
        lines.append(f"Rating: {extra['rating']} out of 5")
    if item.excerpt:
        lines.extend(["", item.excerpt])
    return "\n".join(lines)
