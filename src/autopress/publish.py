from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .errors import NotFoundError
from .models import QueueItem
from .utils import json_dumps, json_loads, log_event, utc_now_iso

_ARTICLE_COLUMNS = "id, campaign_id, queue_item_id, source_url, title, content, excerpt, metadata, created_at"


@dataclass(frozen=True)
class Article:
    id: int
    campaign_id: str
    queue_item_id: int | None
    source_url: str
    title: str
    content: str
    excerpt: str
    metadata: dict[str, Any]
    created_at: str


class ArticlePublisher:
    """Stores finished articles; rendering them for a site happens elsewhere."""

    def __init__(self, conn: Any, logger: logging.Logger | None = None) -> None:
        self.conn = conn
        self.logger = logger or logging.getLogger("autopress.publish")

    def publish(
        self,
        campaign_id: str,
        item: QueueItem,
        *,
        title: str,
        content: str,
        excerpt: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> int:
        article_id = self.conn.insert(
            """
            INSERT INTO articles
                (campaign_id, queue_item_id, source_url, title, content, excerpt, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(campaign_id),
                item.id,
                item.source_url,
                title or item.title,
                content,
                excerpt or "",
                json_dumps(metadata or {}),
                utc_now_iso(),
            ),
        )
        self.conn.commit()
        log_event(
            self.logger,
            logging.INFO,
            "article_published",
            campaign_id=campaign_id,
            article_id=article_id,
            item_id=item.id,
        )
        return article_id

    def url_exists(self, url: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM articles WHERE source_url = ?", (url,)).fetchone()
        return row is not None

    def get(self, article_id: int) -> Article:
        row = self.conn.execute(
            f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?",
            (int(article_id),),
        ).fetchone()
        if not row:
            raise NotFoundError("article_not_found", f"article {article_id} not found")
        return _row_to_article(row)

    def list_for_campaign(self, campaign_id: str, limit: int = 50) -> list[Article]:
        rows = self.conn.execute(
            f"""
            SELECT {_ARTICLE_COLUMNS} FROM articles
            WHERE campaign_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (str(campaign_id), int(limit)),
        ).fetchall()
        return [_row_to_article(row) for row in rows]


def _row_to_article(row: Any) -> Article:
    return Article(
        id=int(row[0]),
        campaign_id=str(row[1]),
        queue_item_id=int(row[2]) if row[2] is not None else None,
        source_url=row[3],
        title=row[4],
        content=row[5],
        excerpt=row[6] or "",
        metadata=json_loads(row[7], {}) or {},
        created_at=row[8],
    )
