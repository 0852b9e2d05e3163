from datetime import datetime, timezone

import pytest

from autopress.errors import ConfigurationError, DataError, PipelineError
from autopress.services import campaign_service
from autopress.services.key_service import KeyStore


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_add_key_encrypts_secret(conn):
    store = KeyStore(conn)
    key = store.add_key("openai", "sk-test-abcd1234", label="main", daily_quota=10)

    raw = conn.execute("SELECT secret_enc FROM provider_keys WHERE id = ?", (key.id,)).fetchone()[0]
    assert "sk-test" not in raw
    assert key.secret_last4 == "1234"
    assert key.status == "active"
    assert store.load_secret(key.id) == "sk-test-abcd1234"


def test_add_key_validation(conn):
    store = KeyStore(conn)
    with pytest.raises(ConfigurationError) as excinfo:
        store.add_key("nope", "secret")
    assert str(excinfo.value) == "invalid_provider"
    with pytest.raises(DataError) as excinfo:
        store.add_key("openai", "   ")
    assert str(excinfo.value) == "empty_secret"


def test_reserve_enforces_daily_quota(conn):
    store = KeyStore(conn)
    key = store.add_key("openai", "secret-1", daily_quota=2)

    assert store.reserve(key.id) is True
    assert store.reserve(key.id) is True
    assert store.reserve(key.id) is False
    reloaded = store.get_key(key.id)
    assert reloaded.requests_today == 2
    assert store.is_eligible(reloaded) is False
    assert store.check_quota(key.id)["daily_remaining"] == 0


def test_counters_roll_over_at_period_boundary(conn):
    clock = Clock(datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc))
    store = KeyStore(conn, clock=clock)
    key = store.add_key("openai", "secret-1", daily_quota=1, monthly_quota=5)
    assert store.reserve(key.id) is True
    assert store.reserve(key.id) is False

    clock.now = datetime(2026, 4, 1, 0, 1, tzinfo=timezone.utc)
    rolled = store.get_key(key.id)
    assert rolled.requests_today == 0
    assert rolled.requests_month == 0
    assert store.reserve(key.id) is True
    assert store.get_key(key.id).requests_month == 1


def test_inactive_keys_are_not_reserved(conn):
    store = KeyStore(conn)
    key = store.add_key("openai", "secret-1")
    store.update_key(key.id, status="inactive")
    assert store.reserve(key.id) is False
    assert store.has_active_key("openai") is False


def test_track_usage_records_tokens(conn):
    store = KeyStore(conn)
    key = store.add_key("anthropic", "secret-1")
    assert store.track_usage(key.id, 120) is True
    reloaded = store.get_key(key.id)
    assert reloaded.tokens_used == 120
    assert reloaded.requests_today == 1


def test_reset_counters(conn):
    store = KeyStore(conn)
    key = store.add_key("openai", "secret-1")
    store.reserve(key.id)
    assert store.reset_daily_counters() == 1
    assert store.get_key(key.id).requests_today == 0
    assert store.get_key(key.id).requests_month == 1
    store.reset_monthly_counters()
    assert store.get_key(key.id).requests_month == 0


def test_delete_key_refused_while_primary(conn):
    store = KeyStore(conn)
    key = store.add_key("openai", "secret-1")
    campaign_service.upsert_campaign(conn, {"id": "c1", "name": "Tech", "type": "rss"})
    campaign_service.save_backend_config(conn, "c1", backend="openai", strategy="failover", primary_key_id=key.id)

    with pytest.raises(PipelineError) as excinfo:
        store.delete_key(key.id)
    assert str(excinfo.value) == "key_in_use"
    assert excinfo.value.kind == "conflict"

    campaign_service.save_backend_config(conn, "c1", backend="openai")
    store.delete_key(key.id)
    assert store.list_keys() == []


def test_primary_key_must_match_backend(conn):
    store = KeyStore(conn)
    key = store.add_key("anthropic", "secret-1")
    campaign_service.upsert_campaign(conn, {"id": "c1", "name": "Tech", "type": "rss"})
    with pytest.raises(ConfigurationError) as excinfo:
        campaign_service.save_backend_config(conn, "c1", backend="openai", primary_key_id=key.id)
    assert str(excinfo.value) == "invalid_primary_key"
