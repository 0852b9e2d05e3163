from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any

from ..errors import ConfigurationError, NotFoundError
from ..llm.backends import BACKENDS
from ..models import BackendConfig, Campaign, CampaignStatus, RotationStrategy, SourceType
from ..utils import json_dumps, json_loads, utc_now, utc_now_iso

_CAMPAIGN_COLUMNS = """
    id, name, campaign_type, status, discovery_interval_minutes, sources_json, settings_json,
    consecutive_errors, discovery_in_progress, last_discovery_start, last_discovery_end,
    last_status, last_error, last_item_count
"""

_STATUSES = {status.value for status in CampaignStatus}
_SOURCE_TYPES = {member.value for member in SourceType}
_STRATEGIES = {member.value for member in RotationStrategy}


def upsert_campaign(conn: Any, payload: dict[str, Any]) -> Campaign:
    """Create or replace a campaign definition.

    Used by the import command and tests; regular campaign editing happens
    outside this package.
    """
    campaign_id = str(payload.get("id") or "").strip() or str(uuid.uuid4())
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    campaign_type = str(payload.get("type") or payload.get("campaign_type") or "").strip()
    if campaign_type not in _SOURCE_TYPES:
        raise ValueError(f"unknown campaign type: {campaign_type or '<empty>'}")
    status = str(payload.get("status") or CampaignStatus.ACTIVE.value)
    if status not in _STATUSES:
        raise ValueError(f"unknown campaign status: {status}")
    interval = int(payload.get("discovery_interval_minutes", 60))
    sources = payload.get("sources") or []
    if not isinstance(sources, list) or not all(isinstance(src, dict) for src in sources):
        raise ValueError("sources must be a list of objects")
    settings = payload.get("settings") or {}
    if not isinstance(settings, dict):
        raise ValueError("settings must be an object")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO campaigns
            (id, name, campaign_type, status, discovery_interval_minutes, sources_json,
             settings_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            name = excluded.name,
            campaign_type = excluded.campaign_type,
            status = excluded.status,
            discovery_interval_minutes = excluded.discovery_interval_minutes,
            sources_json = excluded.sources_json,
            settings_json = excluded.settings_json,
            updated_at = excluded.updated_at
        """,
        (
            campaign_id,
            name,
            campaign_type,
            status,
            interval,
            json_dumps(sources),
            json_dumps(settings),
            now,
            now,
        ),
    )
    conn.commit()
    backend = payload.get("backend")
    if isinstance(backend, dict) and backend.get("name"):
        save_backend_config(
            conn,
            campaign_id,
            backend=str(backend["name"]),
            model=backend.get("model"),
            strategy=str(backend.get("strategy") or RotationStrategy.ROUND_ROBIN.value),
            primary_key_id=backend.get("primary_key_id"),
            options={k: v for k, v in backend.items() if k not in {"name", "model", "strategy", "primary_key_id"}},
        )
    campaign = get_campaign(conn, campaign_id)
    assert campaign is not None
    return campaign


def get_campaign(conn: Any, campaign_id: str) -> Campaign | None:
    row = conn.execute(
        f"SELECT {_CAMPAIGN_COLUMNS} FROM campaigns WHERE id = ?",
        (str(campaign_id),),
    ).fetchone()
    return _row_to_campaign(row) if row else None


def require_campaign(conn: Any, campaign_id: str) -> Campaign:
    campaign = get_campaign(conn, campaign_id)
    if campaign is None:
        raise NotFoundError("campaign_not_found", f"campaign {campaign_id} not found")
    return campaign


def list_campaigns(conn: Any, status: str | None = None) -> list[Campaign]:
    if status:
        rows = conn.execute(
            f"SELECT {_CAMPAIGN_COLUMNS} FROM campaigns WHERE status = ? ORDER BY id",
            (status,),
        ).fetchall()
    else:
        rows = conn.execute(f"SELECT {_CAMPAIGN_COLUMNS} FROM campaigns ORDER BY id").fetchall()
    return [_row_to_campaign(row) for row in rows]


def set_campaign_status(conn: Any, campaign_id: str, status: str) -> None:
    if status not in _STATUSES:
        raise ValueError(f"unknown campaign status: {status}")
    params: tuple[Any, ...]
    if status == CampaignStatus.ACTIVE.value:
        sql = "UPDATE campaigns SET status = ?, consecutive_errors = 0, updated_at = ? WHERE id = ?"
    else:
        sql = "UPDATE campaigns SET status = ?, updated_at = ? WHERE id = ?"
    params = (status, utc_now_iso(), str(campaign_id))
    conn.execute(sql, params)
    conn.commit()


def mark_discovery_started(conn: Any, campaign_id: str) -> bool:
    """Set the in-progress flag; returns False when another run holds it."""
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE campaigns
        SET discovery_in_progress = 1, last_discovery_start = ?, updated_at = ?
        WHERE id = ? AND discovery_in_progress = 0
        """,
        (now, now, str(campaign_id)),
    )
    started = cursor.rowcount == 1
    conn.commit()
    return started


def record_discovery_success(conn: Any, campaign_id: str, item_count: int) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE campaigns
        SET discovery_in_progress = 0,
            last_discovery_end = ?,
            last_status = 'success',
            last_error = NULL,
            last_item_count = ?,
            consecutive_errors = 0,
            updated_at = ?
        WHERE id = ?
        """,
        (now, int(item_count), now, str(campaign_id)),
    )
    conn.commit()


def record_discovery_failure(conn: Any, campaign_id: str, error: str) -> int:
    """Record a failed run and return the new consecutive error count."""
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE campaigns
        SET discovery_in_progress = 0,
            last_discovery_end = ?,
            last_status = 'error',
            last_error = ?,
            last_item_count = 0,
            consecutive_errors = consecutive_errors + 1,
            updated_at = ?
        WHERE id = ?
        """,
        (now, str(error)[:2000], now, str(campaign_id)),
    )
    conn.commit()
    row = conn.execute(
        "SELECT consecutive_errors FROM campaigns WHERE id = ?",
        (str(campaign_id),),
    ).fetchone()
    return int(row[0]) if row else 0


def reset_stuck_discoveries(conn: Any, age_seconds: int) -> int:
    cutoff = (utc_now() - timedelta(seconds=age_seconds)).isoformat()
    cursor = conn.execute(
        """
        UPDATE campaigns
        SET discovery_in_progress = 0, updated_at = ?
        WHERE discovery_in_progress = 1
          AND (last_discovery_start IS NULL OR last_discovery_start < ?)
        """,
        (utc_now_iso(), cutoff),
    )
    count = cursor.rowcount or 0
    conn.commit()
    return count


def record_health_alert(conn: Any, campaign_id: str, alert_type: str, message: str) -> None:
    conn.execute(
        """
        INSERT INTO health_alerts (campaign_id, alert_type, message, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (str(campaign_id), alert_type, message, utc_now_iso()),
    )
    conn.commit()


def list_health_alerts(conn: Any, campaign_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    if campaign_id is None:
        rows = conn.execute(
            """
            SELECT campaign_id, alert_type, message, created_at
            FROM health_alerts ORDER BY id DESC LIMIT ?
            """,
            (limit,),
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT campaign_id, alert_type, message, created_at
            FROM health_alerts WHERE campaign_id = ? ORDER BY id DESC LIMIT ?
            """,
            (str(campaign_id), limit),
        ).fetchall()
    return [
        {"campaign_id": row[0], "alert_type": row[1], "message": row[2], "created_at": row[3]}
        for row in rows
    ]


def get_backend_config(conn: Any, campaign_id: str) -> BackendConfig | None:
    row = conn.execute(
        """
        SELECT campaign_id, backend, model, strategy, primary_key_id, rotation_state, options_json
        FROM campaign_backends
        WHERE campaign_id = ?
        """,
        (str(campaign_id),),
    ).fetchone()
    if not row:
        return None
    return BackendConfig(
        campaign_id=str(row[0]),
        backend=row[1],
        model=row[2],
        strategy=row[3],
        primary_key_id=int(row[4]) if row[4] is not None else None,
        rotation_state=row[5],
        options=json_loads(row[6], {}) or {},
    )


def save_backend_config(
    conn: Any,
    campaign_id: str,
    *,
    backend: str,
    model: str | None = None,
    strategy: str = RotationStrategy.ROUND_ROBIN.value,
    primary_key_id: int | None = None,
    options: dict[str, Any] | None = None,
) -> BackendConfig:
    if backend not in BACKENDS:
        raise ConfigurationError("unknown_backend", f"unknown generation backend: {backend}")
    if strategy not in _STRATEGIES:
        raise ConfigurationError("invalid_strategy", f"unknown rotation strategy: {strategy}")
    if primary_key_id is not None:
        row = conn.execute(
            "SELECT provider FROM provider_keys WHERE id = ?",
            (int(primary_key_id),),
        ).fetchone()
        if not row or row[0] != backend:
            raise ConfigurationError(
                "invalid_primary_key",
                f"key {primary_key_id} does not belong to backend {backend}",
            )
    conn.execute(
        """
        INSERT INTO campaign_backends
            (campaign_id, backend, model, strategy, primary_key_id, rotation_state, options_json, updated_at)
        VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
        ON CONFLICT (campaign_id) DO UPDATE SET
            backend = excluded.backend,
            model = excluded.model,
            strategy = excluded.strategy,
            primary_key_id = excluded.primary_key_id,
            rotation_state = NULL,
            options_json = excluded.options_json,
            updated_at = excluded.updated_at
        """,
        (
            str(campaign_id),
            backend,
            model,
            strategy,
            int(primary_key_id) if primary_key_id is not None else None,
            json_dumps(options or {}),
            utc_now_iso(),
        ),
    )
    conn.commit()
    config = get_backend_config(conn, campaign_id)
    assert config is not None
    return config


def save_rotation_state(conn: Any, campaign_id: str, blob: str | None) -> None:
    conn.execute(
        "UPDATE campaign_backends SET rotation_state = ?, updated_at = ? WHERE campaign_id = ?",
        (blob, utc_now_iso(), str(campaign_id)),
    )
    conn.commit()


def campaigns_referencing_key(conn: Any, key_id: int) -> list[str]:
    rows = conn.execute(
        "SELECT campaign_id FROM campaign_backends WHERE primary_key_id = ? ORDER BY campaign_id",
        (int(key_id),),
    ).fetchall()
    return [str(row[0]) for row in rows]


def _row_to_campaign(row: Any) -> Campaign:
    return Campaign(
        id=str(row[0]),
        name=row[1],
        campaign_type=row[2],
        status=row[3],
        discovery_interval_minutes=int(row[4] or 0),
        sources=json_loads(row[5], []) or [],
        settings=json_loads(row[6], {}) or {},
        consecutive_errors=int(row[7] or 0),
        discovery_in_progress=bool(row[8]),
        last_discovery_start=row[9],
        last_discovery_end=row[10],
        last_status=row[11],
        last_error=row[12],
        last_item_count=int(row[13] or 0),
    )
