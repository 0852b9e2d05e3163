import json

import pytest

from autopress.errors import ConfigurationError, DataError, ExhaustionError, TransientError
from autopress.llm.backends import ChatBackend, ChatReply
from autopress.llm.limiter import ConcurrencyLimiter
from autopress.llm.orchestrator import GenerationOrchestrator
from autopress.llm.rotation import KeyRotator, RotationState
from autopress.services import campaign_service
from autopress.services.key_service import KeyStore


class RecordingChat:
    def __init__(self, reply: str = "plain text", fail_keys: set[str] | None = None) -> None:
        self.reply = reply
        self.fail_keys = fail_keys or set()
        self.calls: list[dict] = []

    def __call__(self, messages, options):
        self.calls.append({"messages": messages, "options": dict(options)})
        if options["api_key"] in self.fail_keys:
            raise TransientError("backend_unavailable", "down")
        return ChatReply(text=self.reply, tokens_used=42, model=options["model"])


def _setup(conn, config, chat, strategy="round_robin", keys=("k1-secret", "k2-secret"), **backend):
    store = KeyStore(conn)
    ids = [store.add_key("openai", secret).id for secret in keys]
    campaign_service.upsert_campaign(conn, {"id": "c1", "name": "Tech", "type": "rss"})
    campaign_service.save_backend_config(conn, "c1", backend="openai", strategy=strategy, **backend)
    orchestrator = GenerationOrchestrator(
        conn,
        store,
        KeyRotator(store),
        ConcurrencyLimiter(2, retries=0, sleep=lambda _: None),
        config.generation,
        backends={"openai": lambda: ChatBackend("openai", chat)},
    )
    return orchestrator, store, ids


def test_rewrite_parses_structured_reply(conn, config):
    reply = json.dumps({"title": "New title", "content": "<p>Body</p>", "excerpt": "Short", "keywords": ["a"]})
    chat = RecordingChat(reply)
    orchestrator, store, ids = _setup(conn, config, chat)

    result = orchestrator.rewrite("c1", "source text", title="Old title")

    assert result.content == "<p>Body</p>"
    assert result.metadata["title"] == "New title"
    assert result.metadata["key_id"] == ids[0]
    assert result.tokens_used == 42
    assert result.model == "gpt-4o-mini"
    assert chat.calls[0]["options"]["api_key"] == "k1-secret"
    assert store.get_key(ids[0]).tokens_used == 42


def test_rewrite_falls_back_to_raw_text(conn, config):
    orchestrator, _, _ = _setup(conn, config, RecordingChat("Just prose, no JSON"))
    result = orchestrator.rewrite("c1", "source text", title="Old title")
    assert result.content == "Just prose, no JSON"
    assert result.metadata["structured"] is False


def test_round_robin_state_is_persisted(conn, config):
    chat = RecordingChat()
    orchestrator, _, ids = _setup(conn, config, chat)
    used = [orchestrator.humanize("c1", "text").metadata["key_id"] for _ in range(3)]
    assert used == [ids[0], ids[1], ids[0]]
    stored = campaign_service.get_backend_config(conn, "c1").rotation_state
    assert RotationState.from_json(stored, "round_robin").current_index == 1


def test_failover_moves_to_next_key_after_failure(conn, config):
    chat = RecordingChat(fail_keys={"k1-secret"})
    orchestrator, store, ids = _setup(conn, config, chat, strategy="failover")

    with pytest.raises(TransientError):
        orchestrator.humanize("c1", "text")
    result = orchestrator.humanize("c1", "text")

    assert result.metadata["key_id"] == ids[1]
    assert store.get_key(ids[0]).last_error.startswith("backend_unavailable")
    state = RotationState.from_json(campaign_service.get_backend_config(conn, "c1").rotation_state, "failover")
    assert state.failed_key_ids == [ids[0]]


def test_quota_exhaustion(conn, config):
    chat = RecordingChat()
    orchestrator, store, ids = _setup(conn, config, chat, keys=("k1-secret",))
    store.update_key(ids[0], daily_quota=1)
    orchestrator.humanize("c1", "text")
    with pytest.raises(ExhaustionError) as excinfo:
        orchestrator.humanize("c1", "text")
    assert str(excinfo.value) == "quota_exceeded"
    assert len(chat.calls) == 1


def test_configuration_errors(conn, config):
    chat = RecordingChat()
    orchestrator, _, _ = _setup(conn, config, chat)
    with pytest.raises(ConfigurationError) as excinfo:
        orchestrator.rewrite("missing", "text")
    assert str(excinfo.value) == "no_configuration"
    with pytest.raises(ConfigurationError) as excinfo:
        orchestrator.execute("c1", "summarize", {"content": "text"})
    assert str(excinfo.value) == "unsupported_operation"
    assert chat.calls == []


def test_unsupported_operation_does_not_spend_quota(conn, config):
    store = KeyStore(conn)
    key = store.add_key("openai", "k1-secret")
    campaign_service.upsert_campaign(conn, {"id": "c1", "name": "Tech", "type": "rss"})
    campaign_service.save_backend_config(conn, "c1", backend="openai")
    orchestrator = GenerationOrchestrator(
        conn,
        store,
        KeyRotator(store),
        ConcurrencyLimiter(1, retries=0),
        config.generation,
        backends={"openai": lambda: ChatBackend("openai", RecordingChat(), frozenset({"rewrite"}))},
    )
    with pytest.raises(ConfigurationError):
        orchestrator.translate("c1", "text", "de")
    assert store.get_key(key.id).requests_today == 0


def test_no_keys_available(conn, config):
    campaign_service.upsert_campaign(conn, {"id": "c1", "name": "Tech", "type": "rss"})
    campaign_service.save_backend_config(conn, "c1", backend="openai")
    store = KeyStore(conn)
    orchestrator = GenerationOrchestrator(
        conn,
        store,
        KeyRotator(store),
        ConcurrencyLimiter(1, retries=0),
        config.generation,
        backends={"openai": lambda: ChatBackend("openai", RecordingChat())},
    )
    with pytest.raises(ExhaustionError) as excinfo:
        orchestrator.humanize("c1", "text")
    assert str(excinfo.value) == "no_keys_available"
    assert orchestrator.limiter.in_use == 0


def test_translate_requires_language():
    backend = ChatBackend("openai", RecordingChat())
    with pytest.raises(DataError) as excinfo:
        backend.translate("text", {"api_key": "x", "model": "m"})
    assert str(excinfo.value) == "missing_target_language"


def test_translate_without_language_keeps_keys_untouched(conn, config):
    chat = RecordingChat()
    orchestrator, store, ids = _setup(conn, config, chat, strategy="failover")

    with pytest.raises(DataError) as excinfo:
        orchestrator.translate("c1", "text", "  ")

    assert str(excinfo.value) == "missing_target_language"
    assert chat.calls == []
    assert store.get_key(ids[0]).requests_today == 0
    assert campaign_service.get_backend_config(conn, "c1").rotation_state is None
    assert orchestrator.humanize("c1", "text").metadata["key_id"] == ids[0]
