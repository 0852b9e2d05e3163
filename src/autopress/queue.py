from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Iterable

from .errors import DataError, NotFoundError
from .models import EnqueueResult, NewQueueItem, QueueItem, QueueStatus, SourceType
from .utils import json_dumps, json_loads, log_event, utc_now, utc_now_iso

DEFAULT_PRIORITY = 50
DEFAULT_STUCK_SECONDS = 30 * 60

_ITEM_COLUMNS = """
    id, campaign_id, source_url, source_type, title, excerpt, source_data, priority,
    status, attempts, discovered_at, claimed_at, processed_at, result_post_id, error_message
"""

_SOURCE_TYPES = {member.value for member in SourceType}


def clamp_priority(value: Any) -> int:
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return max(0, min(100, priority))


class WorkQueue:
    """Durable per-campaign work queue backed by the ``queue_items`` table.

    Storage errors propagate to the caller; nothing here retries.
    """

    def __init__(self, conn: Any, logger: logging.Logger | None = None) -> None:
        self.conn = conn
        self.logger = logger or logging.getLogger("autopress.queue")

    def enqueue(self, item: NewQueueItem) -> EnqueueResult:
        missing = [
            name
            for name in ("campaign_id", "source_url", "source_type")
            if not str(getattr(item, name) or "").strip()
        ]
        if missing:
            raise DataError(
                "missing_required_fields",
                "missing required fields: " + ", ".join(missing),
                context={"fields": missing},
            )
        source_type = str(getattr(item.source_type, "value", item.source_type))
        if source_type not in _SOURCE_TYPES:
            raise DataError("invalid_source_type", f"unknown source type {source_type}")
        cursor = self.conn.execute(
            """
            INSERT INTO queue_items
                (campaign_id, source_url, source_type, title, excerpt, source_data,
                 priority, status, attempts, discovered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?)
            ON CONFLICT (campaign_id, source_url) DO NOTHING
            """,
            (
                str(item.campaign_id),
                item.source_url.strip(),
                source_type,
                item.title or "",
                item.excerpt or "",
                json_dumps(item.source_data or {}),
                clamp_priority(item.priority),
                utc_now_iso(),
            ),
        )
        added = cursor.rowcount == 1
        self.conn.commit()
        if not added:
            log_event(
                self.logger,
                logging.DEBUG,
                "queue_duplicate_skipped",
                campaign_id=item.campaign_id,
                url=item.source_url,
            )
            return EnqueueResult(item_id=None, added=False)
        item_id = self._lookup_id(str(item.campaign_id), item.source_url.strip())
        log_event(
            self.logger,
            logging.DEBUG,
            "queue_item_added",
            campaign_id=item.campaign_id,
            item_id=item_id,
            priority=clamp_priority(item.priority),
        )
        return EnqueueResult(item_id=item_id, added=True)

    def enqueue_batch(self, items: Iterable[NewQueueItem]) -> dict[str, int]:
        counts = {"added": 0, "skipped": 0, "failed": 0}
        for item in items:
            try:
                result = self.enqueue(item)
            except DataError as exc:
                counts["failed"] += 1
                log_event(
                    self.logger,
                    logging.WARNING,
                    "queue_item_rejected",
                    campaign_id=item.campaign_id,
                    url=item.source_url,
                    error=exc.describe(),
                )
                continue
            if result.added:
                counts["added"] += 1
            else:
                counts["skipped"] += 1
        return counts

    def dequeue_next(self, limit: int = 1, campaign_id: str | None = None) -> list[QueueItem]:
        if limit <= 0:
            return []
        params: list[Any] = [QueueStatus.PENDING.value]
        where = "status = ?"
        if campaign_id is not None:
            where += " AND campaign_id = ?"
            params.append(str(campaign_id))
        params.append(int(limit))
        rows = self.conn.execute(
            f"""
            SELECT {_ITEM_COLUMNS}
            FROM queue_items
            WHERE {where}
            ORDER BY priority DESC, discovered_at ASC, id ASC
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()
        return [_row_to_item(row) for row in rows]

    def claim(self, item_id: int) -> bool:
        """Move a pending item to processing. Only one caller can win."""
        cursor = self.conn.execute(
            """
            UPDATE queue_items
            SET status = 'processing', claimed_at = ?, attempts = attempts + 1
            WHERE id = ? AND status = 'pending'
            """,
            (utc_now_iso(), item_id),
        )
        claimed = cursor.rowcount == 1
        self.conn.commit()
        if not claimed:
            log_event(self.logger, logging.DEBUG, "queue_claim_lost", item_id=item_id)
        return claimed

    def complete(self, item_id: int, result_ref: Any) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE queue_items
            SET status = 'completed', processed_at = ?, result_post_id = ?, error_message = NULL
            WHERE id = ? AND status = 'processing'
            """,
            (utc_now_iso(), None if result_ref is None else str(result_ref), item_id),
        )
        done = cursor.rowcount == 1
        self.conn.commit()
        if done:
            log_event(self.logger, logging.INFO, "queue_item_completed", item_id=item_id, result=result_ref)
        return done

    def fail(self, item_id: int, error: str) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE queue_items
            SET status = 'failed', processed_at = ?, error_message = ?
            WHERE id = ? AND status = 'processing'
            """,
            (utc_now_iso(), str(error)[:2000], item_id),
        )
        done = cursor.rowcount == 1
        self.conn.commit()
        if done:
            log_event(self.logger, logging.WARNING, "queue_item_failed", item_id=item_id, error=error)
        return done

    def reclaim_stuck(self, age_seconds: int = DEFAULT_STUCK_SECONDS) -> int:
        cutoff = (utc_now() - timedelta(seconds=age_seconds)).isoformat()
        cursor = self.conn.execute(
            """
            UPDATE queue_items
            SET status = 'pending', claimed_at = NULL
            WHERE status = 'processing' AND (claimed_at IS NULL OR claimed_at < ?)
            """,
            (cutoff,),
        )
        count = cursor.rowcount or 0
        self.conn.commit()
        if count:
            log_event(self.logger, logging.WARNING, "queue_stuck_reclaimed", count=count, cutoff=cutoff)
        return count

    def purge_completed(self, age_seconds: int) -> int:
        cutoff = (utc_now() - timedelta(seconds=age_seconds)).isoformat()
        cursor = self.conn.execute(
            """
            DELETE FROM queue_items
            WHERE status IN ('completed', 'failed') AND processed_at < ?
            """,
            (cutoff,),
        )
        count = cursor.rowcount or 0
        self.conn.commit()
        if count:
            log_event(self.logger, logging.INFO, "queue_purged", count=count, cutoff=cutoff)
        return count

    def requeue_failed(self, item_id: int) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE queue_items
            SET status = 'pending', claimed_at = NULL, processed_at = NULL, error_message = NULL
            WHERE id = ? AND status = 'failed'
            """,
            (item_id,),
        )
        done = cursor.rowcount == 1
        self.conn.commit()
        return done

    def get(self, item_id: int) -> QueueItem:
        row = self.conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM queue_items WHERE id = ?",
            (item_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("queue_item_not_found", f"queue item {item_id} not found")
        return _row_to_item(row)

    def list_items(
        self,
        campaign_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[QueueItem]:
        clauses = []
        params: list[Any] = []
        if campaign_id is not None:
            clauses.append("campaign_id = ?")
            params.append(str(campaign_id))
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        params.append(int(limit))
        rows = self.conn.execute(
            f"""
            SELECT {_ITEM_COLUMNS}
            FROM queue_items
            {where}
            ORDER BY discovered_at DESC, id DESC
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()
        return [_row_to_item(row) for row in rows]

    def url_exists(self, campaign_id: str, url: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM queue_items WHERE campaign_id = ? AND source_url = ?",
            (str(campaign_id), url),
        ).fetchone()
        return row is not None

    def stats(self, campaign_id: str | None = None) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        if campaign_id is None:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) FROM queue_items GROUP BY status"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) FROM queue_items WHERE campaign_id = ? GROUP BY status",
                (str(campaign_id),),
            ).fetchall()
        for status, count in rows:
            counts[status] = int(count)
        counts["total"] = sum(counts[status.value] for status in QueueStatus)
        return counts

    def delete_by_campaign(self, campaign_id: str) -> int:
        cursor = self.conn.execute(
            "DELETE FROM queue_items WHERE campaign_id = ?",
            (str(campaign_id),),
        )
        count = cursor.rowcount or 0
        self.conn.commit()
        return count

    def _lookup_id(self, campaign_id: str, url: str) -> int | None:
        row = self.conn.execute(
            "SELECT id FROM queue_items WHERE campaign_id = ? AND source_url = ?",
            (campaign_id, url),
        ).fetchone()
        return int(row[0]) if row else None


def _row_to_item(row: Any) -> QueueItem:
    return QueueItem(
        id=int(row[0]),
        campaign_id=str(row[1]),
        source_url=row[2],
        source_type=row[3],
        title=row[4] or "",
        excerpt=row[5] or "",
        source_data=json_loads(row[6], {}) or {},
        priority=int(row[7]),
        status=row[8],
        attempts=int(row[9] or 0),
        discovered_at=row[10],
        claimed_at=row[11],
        processed_at=row[12],
        result_post_id=row[13],
        error_message=row[14],
    )
