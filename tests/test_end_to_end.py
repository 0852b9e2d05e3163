import json

from autopress.llm.backends import ChatBackend, ChatReply
from autopress.pipeline import build_pipeline, sweep
from autopress.pipelines.content_fetch import ContentFetcher, FetchCache
from autopress.services import campaign_service

FEED = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Solar News</title>
<item><title>Panels get cheaper</title><link>https://example.com/p1</link></item>
<item><title>Storage breakthrough announced</title><link>https://example.com/p2</link></item>
<item><title>Grid operators plan expansion</title><link>https://example.com/p3</link></item>
</channel></rss>
"""


def _page(title):
    return (
        f"<html><head><title>{title}</title></head><body><article>"
        f"<p>{title} according to several industry reports published this week.</p>"
        "</article></body></html>"
    )


class KeyRecordingChat:
    def __init__(self):
        self.keys = []

    def __call__(self, messages, options):
        self.keys.append(options["api_key"])
        body = {"title": "Rewritten", "content": "<p>Fresh article</p>"}
        return ChatReply(text=json.dumps(body), tokens_used=5, model=options["model"])


def test_discover_then_process_rotates_keys(conn, config, opener_factory):
    opener = opener_factory(
        {
            "https://example.com/feed.xml": [(200, FEED, "application/rss+xml")],
            "https://example.com/p1": [(200, _page("Panels get cheaper"), "text/html")],
            "https://example.com/p2": [(200, _page("Storage breakthrough announced"), "text/html")],
            "https://example.com/p3": [(200, _page("Grid operators plan expansion"), "text/html")],
        }
    )
    chat = KeyRecordingChat()
    fetcher = ContentFetcher(config.http, config.fetch, cache=FetchCache(conn), opener=opener, sleep=lambda _: None)
    pipeline = build_pipeline(config, conn, fetcher=fetcher, backends={"openai": lambda: ChatBackend("openai", chat)})
    first = pipeline.keys.add_key("openai", "K1")
    second = pipeline.keys.add_key("openai", "K2")
    campaign_service.upsert_campaign(
        conn,
        {
            "id": "solar",
            "name": "Solar",
            "type": "rss",
            "sources": [{"url": "https://example.com/feed.xml"}],
            "backend": {"name": "openai", "strategy": "round_robin"},
        },
    )

    totals = pipeline.discovery.discover_all()
    assert totals["items_added"] == 3
    assert pipeline.queue.stats("solar")["pending"] == 3

    summary = pipeline.processor.process_batch(limit=5)

    assert summary["succeeded"] == 3
    assert chat.keys == ["K1", "K2", "K1"]
    assert pipeline.queue.stats("solar")["completed"] == 3
    articles = pipeline.publisher.list_for_campaign("solar")
    assert sorted(article.source_url for article in articles) == [
        "https://example.com/p1",
        "https://example.com/p2",
        "https://example.com/p3",
    ]
    assert pipeline.keys.get_key(first.id).requests_today == 2
    assert pipeline.keys.get_key(second.id).requests_today == 1

    # Published URLs are never queued again.
    again = pipeline.discovery.force_discover("solar")
    assert again.items_added == 0

    housekeeping = sweep(pipeline)
    assert housekeeping["reclaimed"] == 0
    assert housekeeping["purged"] == 0
