from datetime import datetime, timedelta, timezone

from autopress.errors import TransientError
from autopress.models import Candidate
from autopress.search.fallback import ProviderFallbackChain, ProviderStatsStore
from autopress.services.key_service import KeyStore


class StubProvider:
    def __init__(self, name, replies, requires_credential=False):
        self.name = name
        self.requires_credential = requires_credential
        self.replies = list(replies)
        self.calls = []

    def search(self, query, params):
        self.calls.append((query, dict(params)))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _hit(url="https://news.example.com/a"):
    return [Candidate(url=url, title="Story")]


def test_circuit_opens_after_repeated_failures(conn, config):
    stats = ProviderStatsStore(conn, config.circuit)
    for _ in range(9):
        stats.record_failure("serpapi", "c1", "boom")
    assert stats.is_open("serpapi", "c1") is False
    stats.record_failure("serpapi", "c1", "boom")
    assert stats.is_open("serpapi", "c1") is True
    # Other campaigns keep their own window.
    assert stats.is_open("serpapi", "c2") is False


def test_success_resets_window(conn, config):
    stats = ProviderStatsStore(conn, config.circuit)
    for _ in range(10):
        stats.record_failure("serpapi", "c1", "boom")
    stats.record_success("serpapi", "c1")
    current = stats.get("serpapi", "c1")
    assert current.circuit_open is False
    assert current.window_attempts == 0
    assert current.failures == 10
    assert current.successes == 1


def test_window_expires(conn, config):
    clock = Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    stats = ProviderStatsStore(conn, config.circuit, clock=clock)
    for _ in range(10):
        stats.record_failure("newsapi", "c1", "boom")
    assert stats.is_open("newsapi", "c1") is True
    clock.now += timedelta(seconds=config.circuit.window_ttl_seconds)
    assert stats.is_open("newsapi", "c1") is False
    assert stats.record_failure("newsapi", "c1", "boom").window_attempts == 1


def test_chain_falls_through_in_order(conn, config):
    failing = StubProvider("google_news", [TransientError("fetch_failed")])
    empty = StubProvider("searxng", [[]])
    working = StubProvider("newsapi", [_hit()], requires_credential=True)
    keys = KeyStore(conn)
    keys.add_key("newsapi", "news-key-1234")
    chain = ProviderFallbackChain([failing, empty, working], ProviderStatsStore(conn, config.circuit), keys)

    results = chain.get_results("solar", {"freshness": "24h"}, campaign_id="c1")

    assert [item.url for item in results] == ["https://news.example.com/a"]
    assert working.calls[0][1]["api_key"] == "news-key-1234"
    stats = {stat.provider: stat for stat in chain.statistics("c1")}
    assert stats["google_news"].failures == 1
    assert stats["searxng"].last_error == "empty_result"
    assert stats["newsapi"].successes == 1


def test_chain_skips_open_circuit_and_missing_credentials(conn, config):
    stats = ProviderStatsStore(conn, config.circuit)
    for _ in range(10):
        stats.record_failure("google_news", "c1", "boom")
    tripped = StubProvider("google_news", [_hit()])
    keyless = StubProvider("serpapi", [_hit()], requires_credential=True)
    fallback = StubProvider("searxng", [_hit("https://news.example.com/b")])
    chain = ProviderFallbackChain([tripped, keyless, fallback], stats, KeyStore(conn))

    results = chain.get_results("solar", campaign_id="c1")

    assert [item.url for item in results] == ["https://news.example.com/b"]
    assert tripped.calls == []
    assert keyless.calls == []


def test_chain_returns_empty_when_all_fail(conn, config):
    chain = ProviderFallbackChain(
        [StubProvider("google_news", [RuntimeError("down")]), StubProvider("searxng", [[]])],
        ProviderStatsStore(conn, config.circuit),
        KeyStore(conn),
    )
    assert chain.get_results("solar", campaign_id="c1") == []
    assert chain.reset_statistics("c1") == 2
    assert all(stat.failures == 0 for stat in chain.statistics("c1"))
