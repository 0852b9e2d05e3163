import json

from autopress.llm.backends import ChatBackend, ChatReply
from autopress.models import NewQueueItem
from autopress.pipeline import build_pipeline
from autopress.pipelines.content_fetch import ContentFetcher
from autopress.services import campaign_service

LONG_PAGE = (
    "<html><head><title>Panels</title></head><body><article>"
    "<p>Rooftop solar panels now cost less than ever before in most regions.</p>"
    "</article></body></html>"
)
SHORT_PAGE = "<html><body><article><p>Too short.</p></article></body></html>"


class ScriptedChat:
    def __init__(self):
        self.calls = []

    def __call__(self, messages, options):
        self.calls.append({"messages": messages, "options": dict(options)})
        system = messages[0]["content"]
        if "JSON" in system:
            text = json.dumps({"title": "Rewritten", "content": "<p>Rewritten body</p>", "excerpt": "Sum"})
        else:
            text = f"[{options.get('target_language') or 'human'}] {messages[1]['content']}"
        return ChatReply(text=text, tokens_used=10, model=options["model"])


def _pipeline(conn, config, opener, chat):
    fetcher = ContentFetcher(config.http, config.fetch, opener=opener, sleep=lambda _: None)
    return build_pipeline(
        config,
        conn,
        fetcher=fetcher,
        backends={"openai": lambda: ChatBackend("openai", chat)},
    )


def _campaign(conn, pipeline, **options):
    pipeline.keys.add_key("openai", "sk-one")
    campaign_service.upsert_campaign(
        conn,
        {"id": "c1", "name": "Solar", "type": "rss", "backend": {"name": "openai", **options}},
    )


def test_page_item_is_rewritten_and_published(conn, config, opener_factory):
    chat = ScriptedChat()
    pipeline = _pipeline(conn, config, opener_factory({"https://example.com/a": [(200, LONG_PAGE, "text/html")]}), chat)
    _campaign(conn, pipeline)
    item_id = pipeline.queue.enqueue(
        NewQueueItem("c1", "https://example.com/a", "rss", title="Panels", source_data={"author": "Ann"})
    ).item_id

    summary = pipeline.processor.process_batch()

    assert summary["succeeded"] == 1
    assert summary["posts_created"] == 1
    item = pipeline.queue.get(item_id)
    assert item.status == "completed"
    article = pipeline.publisher.get(int(item.result_post_id))
    assert article.title == "Rewritten"
    assert article.content == "<p>Rewritten body</p>"
    assert article.excerpt == "Sum"
    assert article.metadata["author"] == "Ann"
    assert article.metadata["tokens_used"] == 10
    assert "Rooftop solar panels" in chat.calls[0]["messages"][1]["content"]


def test_humanize_and_translate_follow_rewrite(conn, config, opener_factory):
    chat = ScriptedChat()
    pipeline = _pipeline(conn, config, opener_factory({"https://example.com/a": [(200, LONG_PAGE, "text/html")]}), chat)
    _campaign(conn, pipeline, humanize=True, translate_to="German")
    pipeline.queue.enqueue(NewQueueItem("c1", "https://example.com/a", "rss", title="Panels"))

    pipeline.processor.process_batch()

    (article,) = pipeline.publisher.list_for_campaign("c1")
    assert article.content == "[German] [human] <p>Rewritten body</p>"
    assert article.metadata["tokens_used"] == 30
    assert len(chat.calls) == 3


def test_short_page_fails_item(conn, config, opener_factory):
    chat = ScriptedChat()
    pipeline = _pipeline(conn, config, opener_factory({"https://example.com/a": [(200, SHORT_PAGE, "text/html")]}), chat)
    _campaign(conn, pipeline)
    item_id = pipeline.queue.enqueue(NewQueueItem("c1", "https://example.com/a", "rss", title="Short")).item_id

    summary = pipeline.processor.process_batch()

    assert summary["failed"] == 1
    assert summary["errors"][0]["error"].startswith("content_too_short")
    item = pipeline.queue.get(item_id)
    assert item.status == "failed"
    assert item.error_message.startswith("content_too_short")
    assert chat.calls == []


def test_unreachable_page_uses_stored_feed_content(conn, config, opener_factory):
    chat = ScriptedChat()
    pipeline = _pipeline(conn, config, opener_factory({"https://example.com/a": [503]}), chat)
    _campaign(conn, pipeline)
    pipeline.queue.enqueue(
        NewQueueItem(
            "c1",
            "https://example.com/a",
            "rss",
            title="Feed only",
            source_data={"extra": {"content_html": "<p>Full feed content with plenty of words inside.</p>"}},
        )
    )

    assert pipeline.processor.process_batch()["succeeded"] == 1
    assert "Full feed content" in chat.calls[0]["messages"][1]["content"]


def test_video_item_uses_source_data(conn, config, opener_factory):
    chat = ScriptedChat()
    pipeline = _pipeline(conn, config, opener_factory({}), chat)
    _campaign(conn, pipeline)
    pipeline.queue.enqueue(
        NewQueueItem(
            "c1",
            "https://www.youtube.com/watch?v=vid1",
            "youtube",
            title="Install",
            source_data={"author": "Solar Channel", "extra": {"description": "Step by step"}},
        )
    )

    assert pipeline.processor.process_batch()["succeeded"] == 1
    brief = chat.calls[0]["messages"][1]["content"]
    assert "Video: Install" in brief
    assert "Channel: Solar Channel" in brief


def test_missing_backend_fails_item(conn, config, opener_factory):
    chat = ScriptedChat()
    pipeline = _pipeline(conn, config, opener_factory({"https://example.com/a": [(200, LONG_PAGE, "text/html")]}), chat)
    campaign_service.upsert_campaign(conn, {"id": "c1", "name": "Solar", "type": "rss"})
    pipeline.queue.enqueue(NewQueueItem("c1", "https://example.com/a", "rss", title="Panels"))

    summary = pipeline.processor.process_batch()

    assert summary["failed"] == 1
    assert summary["errors"][0]["error"].startswith("no_configuration")
