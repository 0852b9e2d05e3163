from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    logger = logging.getLogger("autopress.migrations")
    if conn.backend == "sqlite":
        conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _id_column(conn: Any) -> str:
    if conn.backend == "postgres":
        return "id BIGSERIAL PRIMARY KEY"
    return "id INTEGER PRIMARY KEY AUTOINCREMENT"


def _migration_initial_schema(conn: Any) -> None:
    id_column = _id_column(conn)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS campaigns (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            campaign_type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            discovery_interval_minutes INTEGER NOT NULL DEFAULT 60,
            sources_json TEXT NOT NULL DEFAULT '[]',
            settings_json TEXT NOT NULL DEFAULT '{}',
            consecutive_errors INTEGER NOT NULL DEFAULT 0,
            discovery_in_progress INTEGER NOT NULL DEFAULT 0,
            last_discovery_start TEXT NULL,
            last_discovery_end TEXT NULL,
            last_status TEXT NULL,
            last_error TEXT NULL,
            last_item_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS campaign_backends (
            campaign_id TEXT PRIMARY KEY,
            backend TEXT NOT NULL,
            model TEXT NULL,
            strategy TEXT NOT NULL DEFAULT 'round_robin',
            primary_key_id INTEGER NULL,
            rotation_state TEXT NULL,
            options_json TEXT NOT NULL DEFAULT '{}',
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS queue_items (
            {id_column},
            campaign_id TEXT NOT NULL,
            source_url TEXT NOT NULL,
            source_type TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            excerpt TEXT NOT NULL DEFAULT '',
            source_data TEXT NOT NULL DEFAULT '{{}}',
            priority INTEGER NOT NULL DEFAULT 50,
            status TEXT NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            discovered_at TEXT NOT NULL,
            claimed_at TEXT NULL,
            processed_at TEXT NULL,
            result_post_id TEXT NULL,
            error_message TEXT NULL,
            UNIQUE (campaign_id, source_url)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_queue_items_dequeue
        ON queue_items (status, priority, discovered_at)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_queue_items_campaign
        ON queue_items (campaign_id, status)
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS provider_keys (
            {id_column},
            provider TEXT NOT NULL,
            label TEXT NOT NULL DEFAULT '',
            secret_enc TEXT NOT NULL,
            secret_key_id TEXT NOT NULL,
            secret_last4 TEXT NULL,
            daily_quota INTEGER NOT NULL DEFAULT 0,
            monthly_quota INTEGER NOT NULL DEFAULT 0,
            requests_today INTEGER NOT NULL DEFAULT 0,
            requests_month INTEGER NOT NULL DEFAULT 0,
            day_period TEXT NULL,
            month_period TEXT NULL,
            tokens_used BIGINT NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'active',
            last_used_at TEXT NULL,
            last_error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_provider_keys_provider
        ON provider_keys (provider, status)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS provider_stats (
            provider TEXT NOT NULL,
            campaign_id TEXT NOT NULL DEFAULT '',
            successes INTEGER NOT NULL DEFAULT 0,
            failures INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NULL,
            last_success_at TEXT NULL,
            last_failure_at TEXT NULL,
            window_attempts INTEGER NOT NULL DEFAULT 0,
            window_failures INTEGER NOT NULL DEFAULT 0,
            window_started_at TEXT NULL,
            PRIMARY KEY (provider, campaign_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fetch_cache (
            cache_key TEXT PRIMARY KEY,
            url TEXT NOT NULL,
            payload TEXT NOT NULL,
            fetched_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS articles (
            {id_column},
            campaign_id TEXT NOT NULL,
            queue_item_id INTEGER NULL,
            source_url TEXT NOT NULL,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            excerpt TEXT NOT NULL DEFAULT '',
            metadata TEXT NOT NULL DEFAULT '{{}}',
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_articles_source_url
        ON articles (source_url)
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS health_alerts (
            {id_column},
            campaign_id TEXT NOT NULL,
            alert_type TEXT NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
    ]
