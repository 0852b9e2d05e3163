from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from ..config import CircuitConfig
from ..errors import PipelineError
from ..models import Candidate, ProviderStatistics
from ..services.key_service import KeyStore
from ..utils import log_event, parse_datetime, utc_now
from .providers import DataProvider

_STAT_COLUMNS = """
    provider, campaign_id, successes, failures, last_error, last_success_at, last_failure_at,
    window_attempts, window_failures, window_started_at
"""


class ProviderStatsStore:
    """Success/failure counters and circuit windows per (provider, campaign)."""

    def __init__(
        self,
        conn: Any,
        config: CircuitConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.config = config
        self.clock = clock

    def get(self, provider: str, campaign_id: str = "") -> ProviderStatistics:
        row = self.conn.execute(
            f"SELECT {_STAT_COLUMNS} FROM provider_stats WHERE provider = ? AND campaign_id = ?",
            (provider, str(campaign_id or "")),
        ).fetchone()
        if not row:
            return ProviderStatistics(
                provider=provider,
                campaign_id=str(campaign_id or ""),
                successes=0,
                failures=0,
                last_error=None,
                last_success_at=None,
                last_failure_at=None,
                window_attempts=0,
                window_failures=0,
                window_started_at=None,
            )
        return self._row_to_stats(row)

    def list(self, campaign_id: str = "") -> list[ProviderStatistics]:
        rows = self.conn.execute(
            f"SELECT {_STAT_COLUMNS} FROM provider_stats WHERE campaign_id = ? ORDER BY provider",
            (str(campaign_id or ""),),
        ).fetchall()
        return [self._row_to_stats(row) for row in rows]

    def is_open(self, provider: str, campaign_id: str = "") -> bool:
        return self.get(provider, campaign_id).circuit_open

    def record_success(self, provider: str, campaign_id: str = "") -> None:
        now = self.clock().isoformat()
        self.conn.execute(
            """
            INSERT INTO provider_stats
                (provider, campaign_id, successes, failures, last_success_at,
                 window_attempts, window_failures, window_started_at)
            VALUES (?, ?, 1, 0, ?, 0, 0, NULL)
            ON CONFLICT (provider, campaign_id) DO UPDATE SET
                successes = provider_stats.successes + 1,
                last_success_at = excluded.last_success_at,
                window_attempts = 0,
                window_failures = 0,
                window_started_at = NULL
            """,
            (provider, str(campaign_id or ""), now),
        )
        self.conn.commit()

    def record_failure(self, provider: str, campaign_id: str, error: str) -> ProviderStatistics:
        current = self.get(provider, campaign_id)
        now = self.clock()
        if current.window_started_at is None or self._expired(current.window_started_at, now):
            window_attempts, window_failures, window_started_at = 1, 1, now.isoformat()
        else:
            window_attempts = current.window_attempts + 1
            window_failures = current.window_failures + 1
            window_started_at = current.window_started_at
        self.conn.execute(
            """
            INSERT INTO provider_stats
                (provider, campaign_id, successes, failures, last_error, last_failure_at,
                 window_attempts, window_failures, window_started_at)
            VALUES (?, ?, 0, 1, ?, ?, ?, ?, ?)
            ON CONFLICT (provider, campaign_id) DO UPDATE SET
                failures = provider_stats.failures + 1,
                last_error = excluded.last_error,
                last_failure_at = excluded.last_failure_at,
                window_attempts = excluded.window_attempts,
                window_failures = excluded.window_failures,
                window_started_at = excluded.window_started_at
            """,
            (
                provider,
                str(campaign_id or ""),
                str(error)[:500],
                now.isoformat(),
                window_attempts,
                window_failures,
                window_started_at,
            ),
        )
        self.conn.commit()
        return self.get(provider, campaign_id)

    def reset(self, campaign_id: str = "", provider: str | None = None) -> int:
        if provider:
            cursor = self.conn.execute(
                "DELETE FROM provider_stats WHERE campaign_id = ? AND provider = ?",
                (str(campaign_id or ""), provider),
            )
        else:
            cursor = self.conn.execute(
                "DELETE FROM provider_stats WHERE campaign_id = ?",
                (str(campaign_id or ""),),
            )
        count = cursor.rowcount or 0
        self.conn.commit()
        return count

    def _expired(self, started_at: str, now: datetime) -> bool:
        started = parse_datetime(started_at)
        if started is None:
            return True
        return now - started >= timedelta(seconds=self.config.window_ttl_seconds)

    def _row_to_stats(self, row: Any) -> ProviderStatistics:
        window_attempts = int(row[7] or 0)
        window_failures = int(row[8] or 0)
        window_started_at = row[9]
        if window_started_at and self._expired(window_started_at, self.clock()):
            window_attempts, window_failures, window_started_at = 0, 0, None
        circuit_open = (
            window_attempts > 0
            and window_failures >= self.config.min_failures
            and window_failures / window_attempts > self.config.failure_rate
        )
        return ProviderStatistics(
            provider=row[0],
            campaign_id=row[1],
            successes=int(row[2] or 0),
            failures=int(row[3] or 0),
            last_error=row[4],
            last_success_at=row[5],
            last_failure_at=row[6],
            window_attempts=window_attempts,
            window_failures=window_failures,
            window_started_at=window_started_at,
            circuit_open=circuit_open,
        )


class ProviderFallbackChain:
    """Try interchangeable data providers in order until one returns results."""

    def __init__(
        self,
        providers: list[DataProvider],
        stats: ProviderStatsStore,
        key_store: KeyStore,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.providers = list(providers)
        self.stats = stats
        self.key_store = key_store
        self.logger = logger or logging.getLogger("autopress.search")

    def get_results(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        campaign_id: str = "",
    ) -> list[Candidate]:
        params = dict(params or {})
        campaign_id = str(campaign_id or "")
        tried: list[str] = []
        for provider in self.providers:
            if self.stats.is_open(provider.name, campaign_id):
                log_event(
                    self.logger,
                    logging.INFO,
                    "provider_circuit_open",
                    provider=provider.name,
                    campaign_id=campaign_id,
                )
                continue
            call_params = dict(params)
            if provider.requires_credential:
                api_key = self._credential_for(provider.name)
                if api_key is None:
                    log_event(
                        self.logger,
                        logging.DEBUG,
                        "provider_unavailable",
                        provider=provider.name,
                        reason="no_credential",
                    )
                    continue
                call_params["api_key"] = api_key
            tried.append(provider.name)
            try:
                results = provider.search(query, call_params)
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, PipelineError):
                    error = exc.describe()
                else:
                    error = f"{type(exc).__name__}: {exc}"
                self.stats.record_failure(provider.name, campaign_id, error)
                log_event(
                    self.logger,
                    logging.ERROR,
                    "provider_failed",
                    provider=provider.name,
                    campaign_id=campaign_id,
                    error=error,
                )
                continue
            if not results:
                self.stats.record_failure(provider.name, campaign_id, "empty_result")
                log_event(
                    self.logger,
                    logging.INFO,
                    "provider_empty",
                    provider=provider.name,
                    campaign_id=campaign_id,
                    query=query,
                )
                continue
            self.stats.record_success(provider.name, campaign_id)
            log_event(
                self.logger,
                logging.INFO,
                "provider_succeeded",
                provider=provider.name,
                campaign_id=campaign_id,
                results=len(results),
            )
            return results
        log_event(
            self.logger,
            logging.WARNING,
            "providers_exhausted",
            campaign_id=campaign_id,
            query=query,
            tried=",".join(tried) or "none",
        )
        return []

    def statistics(self, campaign_id: str = "") -> list[ProviderStatistics]:
        known = {stat.provider: stat for stat in self.stats.list(campaign_id)}
        return [known.get(provider.name) or self.stats.get(provider.name, campaign_id) for provider in self.providers]

    def reset_statistics(self, campaign_id: str = "", provider: str | None = None) -> int:
        return self.stats.reset(campaign_id, provider)

    def _credential_for(self, provider: str) -> str | None:
        keys = self.key_store.eligible_keys(provider)
        for key in sorted(keys, key=lambda item: item.requests_today):
            if self.key_store.reserve(key.id):
                return self.key_store.load_secret(key.id)
        return None
