from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from ..errors import ConfigurationError, DataError, NotFoundError, PipelineError
from ..models import KNOWN_PROVIDERS, KeyStatus, ProviderKey
from ..security.secrets import SecretBox, decrypt_secret, encrypt_secret
from ..utils import log_event, utc_now
from .campaign_service import campaigns_referencing_key

_KEY_COLUMNS = """
    id, provider, label, secret_last4, daily_quota, monthly_quota, requests_today,
    requests_month, day_period, month_period, tokens_used, status, last_used_at,
    last_error, created_at, updated_at
"""

_STATUSES = {status.value for status in KeyStatus}


def _day_period(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def _month_period(now: datetime) -> str:
    return now.strftime("%Y-%m")


class KeyStore:
    """Encrypted provider credentials with per-key quota counters.

    Counters carry the UTC day/month they belong to, so a counter from an
    earlier period reads as zero and the next increment restarts it at one.
    """

    def __init__(
        self,
        conn: Any,
        *,
        secret_box: SecretBox | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.secret_box = secret_box
        self.clock = clock
        self.logger = logger or logging.getLogger("autopress.keys")

    def add_key(
        self,
        provider: str,
        secret: str,
        *,
        label: str = "",
        daily_quota: int = 0,
        monthly_quota: int = 0,
    ) -> ProviderKey:
        provider = (provider or "").strip().lower()
        if provider not in KNOWN_PROVIDERS:
            raise ConfigurationError("invalid_provider", f"unknown provider: {provider or '<empty>'}")
        secret = (secret or "").strip()
        if not secret:
            raise DataError("empty_secret", "credential secret must not be empty")
        if int(daily_quota) < 0 or int(monthly_quota) < 0:
            raise DataError("invalid_quota", "quotas must be zero (unlimited) or positive")
        key_id, blob = encrypt_secret(secret, _key_aad(provider), self.secret_box)
        last4 = secret[-4:] if len(secret) >= 4 else secret
        now = self.clock()
        new_id = self.conn.insert(
            """
            INSERT INTO provider_keys
                (provider, label, secret_enc, secret_key_id, secret_last4, daily_quota,
                 monthly_quota, requests_today, requests_month, day_period, month_period,
                 tokens_used, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?, 0, 'active', ?, ?)
            """,
            (
                provider,
                label or "",
                blob,
                key_id,
                last4,
                int(daily_quota),
                int(monthly_quota),
                _day_period(now),
                _month_period(now),
                now.isoformat(),
                now.isoformat(),
            ),
        )
        self.conn.commit()
        log_event(self.logger, logging.INFO, "key_added", key_id=new_id, provider=provider)
        return self.get_key(new_id)

    def update_key(
        self,
        key_id: int,
        *,
        label: str | None = None,
        daily_quota: int | None = None,
        monthly_quota: int | None = None,
        status: str | None = None,
    ) -> ProviderKey:
        self.get_key(key_id)
        updates: list[str] = []
        params: list[Any] = []
        if label is not None:
            updates.append("label = ?")
            params.append(label)
        if daily_quota is not None:
            if int(daily_quota) < 0:
                raise DataError("invalid_quota", "daily_quota must not be negative")
            updates.append("daily_quota = ?")
            params.append(int(daily_quota))
        if monthly_quota is not None:
            if int(monthly_quota) < 0:
                raise DataError("invalid_quota", "monthly_quota must not be negative")
            updates.append("monthly_quota = ?")
            params.append(int(monthly_quota))
        if status is not None:
            if status not in _STATUSES:
                raise DataError("invalid_status", f"unknown key status: {status}")
            updates.append("status = ?")
            params.append(status)
            if status == KeyStatus.ACTIVE.value:
                updates.append("last_error = NULL")
        if updates:
            updates.append("updated_at = ?")
            params.append(self.clock().isoformat())
            params.append(int(key_id))
            self.conn.execute(
                f"UPDATE provider_keys SET {', '.join(updates)} WHERE id = ?",
                tuple(params),
            )
            self.conn.commit()
        return self.get_key(key_id)

    def delete_key(self, key_id: int) -> None:
        self.get_key(key_id)
        referenced_by = campaigns_referencing_key(self.conn, key_id)
        if referenced_by:
            raise PipelineError(
                "key_in_use",
                "key is the primary key of campaign(s): " + ", ".join(referenced_by),
                kind="conflict",
                context={"campaigns": referenced_by},
            )
        self.conn.execute("DELETE FROM provider_keys WHERE id = ?", (int(key_id),))
        self.conn.commit()
        log_event(self.logger, logging.INFO, "key_deleted", key_id=key_id)

    def get_key(self, key_id: int) -> ProviderKey:
        row = self.conn.execute(
            f"SELECT {_KEY_COLUMNS} FROM provider_keys WHERE id = ?",
            (int(key_id),),
        ).fetchone()
        if not row:
            raise NotFoundError("key_not_found", f"provider key {key_id} not found")
        return self._row_to_key(row)

    def list_keys(self, provider: str | None = None, status: str | None = None) -> list[ProviderKey]:
        clauses = []
        params: list[Any] = []
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = self.conn.execute(
            f"SELECT {_KEY_COLUMNS} FROM provider_keys {where} ORDER BY id",
            tuple(params),
        ).fetchall()
        return [self._row_to_key(row) for row in rows]

    def load_secret(self, key_id: int) -> str:
        row = self.conn.execute(
            "SELECT provider, secret_enc FROM provider_keys WHERE id = ?",
            (int(key_id),),
        ).fetchone()
        if not row:
            raise NotFoundError("key_not_found", f"provider key {key_id} not found")
        return decrypt_secret(row[1], _key_aad(row[0]), self.secret_box)

    def is_eligible(self, key: ProviderKey) -> bool:
        if key.status != KeyStatus.ACTIVE.value:
            return False
        if key.daily_quota > 0 and key.requests_today >= key.daily_quota:
            return False
        if key.monthly_quota > 0 and key.requests_month >= key.monthly_quota:
            return False
        return True

    def eligible_keys(self, provider: str) -> list[ProviderKey]:
        return [key for key in self.list_keys(provider) if self.is_eligible(key)]

    def has_active_key(self, provider: str) -> bool:
        return bool(self.eligible_keys(provider))

    def check_quota(self, key_id: int) -> dict[str, Any]:
        key = self.get_key(key_id)
        return {
            "key_id": key.id,
            "daily_remaining": None if key.daily_quota <= 0 else max(0, key.daily_quota - key.requests_today),
            "monthly_remaining": None
            if key.monthly_quota <= 0
            else max(0, key.monthly_quota - key.requests_month),
            "eligible": self.is_eligible(key),
        }

    def reserve(self, key_id: int) -> bool:
        """Count one request against the key if it still has quota.

        The check and the increment are a single UPDATE, so concurrent
        callers cannot push a key past its quota.
        """
        now = self.clock()
        day = _day_period(now)
        month = _month_period(now)
        cursor = self.conn.execute(
            """
            UPDATE provider_keys
            SET requests_today = CASE WHEN day_period IS NULL OR day_period = ?
                                      THEN requests_today + 1 ELSE 1 END,
                requests_month = CASE WHEN month_period IS NULL OR month_period = ?
                                      THEN requests_month + 1 ELSE 1 END,
                day_period = ?,
                month_period = ?,
                last_used_at = ?,
                updated_at = ?
            WHERE id = ?
              AND status = 'active'
              AND (daily_quota <= 0 OR
                   (CASE WHEN day_period IS NULL OR day_period = ?
                         THEN requests_today ELSE 0 END) < daily_quota)
              AND (monthly_quota <= 0 OR
                   (CASE WHEN month_period IS NULL OR month_period = ?
                         THEN requests_month ELSE 0 END) < monthly_quota)
            """,
            (
                day,
                month,
                day,
                month,
                now.isoformat(),
                now.isoformat(),
                int(key_id),
                day,
                month,
            ),
        )
        reserved = cursor.rowcount == 1
        self.conn.commit()
        if not reserved:
            log_event(self.logger, logging.INFO, "key_reservation_rejected", key_id=key_id)
        return reserved

    def record_tokens(self, key_id: int, tokens: int) -> None:
        if tokens <= 0:
            return
        self.conn.execute(
            "UPDATE provider_keys SET tokens_used = tokens_used + ?, updated_at = ? WHERE id = ?",
            (int(tokens), self.clock().isoformat(), int(key_id)),
        )
        self.conn.commit()

    def track_usage(self, key_id: int, tokens: int = 0) -> bool:
        """Count a request and its tokens; False when the key is out of quota."""
        reserved = self.reserve(key_id)
        if reserved:
            self.record_tokens(key_id, tokens)
        return reserved

    def record_error(self, key_id: int, error: str, *, disable: bool = False) -> None:
        now = self.clock().isoformat()
        if disable:
            self.conn.execute(
                "UPDATE provider_keys SET last_error = ?, status = 'error', updated_at = ? WHERE id = ?",
                (str(error)[:500], now, int(key_id)),
            )
        else:
            self.conn.execute(
                "UPDATE provider_keys SET last_error = ?, updated_at = ? WHERE id = ?",
                (str(error)[:500], now, int(key_id)),
            )
        self.conn.commit()

    def reset_daily_counters(self) -> int:
        now = self.clock()
        cursor = self.conn.execute(
            "UPDATE provider_keys SET requests_today = 0, day_period = ?, updated_at = ?",
            (_day_period(now), now.isoformat()),
        )
        count = cursor.rowcount or 0
        self.conn.commit()
        log_event(self.logger, logging.INFO, "key_daily_counters_reset", keys=count)
        return count

    def reset_monthly_counters(self) -> int:
        now = self.clock()
        cursor = self.conn.execute(
            "UPDATE provider_keys SET requests_month = 0, month_period = ?, updated_at = ?",
            (_month_period(now), now.isoformat()),
        )
        count = cursor.rowcount or 0
        self.conn.commit()
        log_event(self.logger, logging.INFO, "key_monthly_counters_reset", keys=count)
        return count

    def _row_to_key(self, row: Any) -> ProviderKey:
        now = self.clock()
        day_period = row[8]
        month_period = row[9]
        requests_today = int(row[6] or 0)
        requests_month = int(row[7] or 0)
        if day_period is not None and day_period != _day_period(now):
            requests_today = 0
        if month_period is not None and month_period != _month_period(now):
            requests_month = 0
        return ProviderKey(
            id=int(row[0]),
            provider=row[1],
            label=row[2] or "",
            secret_last4=row[3],
            daily_quota=int(row[4] or 0),
            monthly_quota=int(row[5] or 0),
            requests_today=requests_today,
            requests_month=requests_month,
            tokens_used=int(row[10] or 0),
            status=row[11],
            last_used_at=row[12],
            last_error=row[13],
            created_at=row[14],
            updated_at=row[15],
        )


def _key_aad(provider: str) -> bytes:
    return f"provider_key:{provider}".encode("utf-8")
