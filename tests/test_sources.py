import pytest

from autopress.discovery.amazon import MarketplaceDiscoverer
from autopress.discovery.feeds import FeedDiscoverer
from autopress.discovery.news import NewsDiscoverer
from autopress.discovery.sitemap import SitemapDiscoverer, title_from_url
from autopress.discovery.web import WebPageDiscoverer
from autopress.discovery.youtube import YouTubeDiscoverer
from autopress.errors import DataError, ExhaustionError, FetchError
from autopress.models import Campaign, Candidate
from autopress.pipelines.content_fetch import ContentFetcher
from autopress.services.key_service import KeyStore

CAMPAIGN = Campaign(
    id="c1",
    name="Test",
    campaign_type="rss",
    status="active",
    discovery_interval_minutes=60,
    sources=[],
    settings={},
    consecutive_errors=0,
    discovery_in_progress=False,
    last_discovery_start=None,
    last_discovery_end=None,
    last_status=None,
    last_error=None,
    last_item_count=0,
)

RSS = """<?xml version="1.0"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <title>Example Feed</title>
    <item>
      <title>First &amp; best</title>
      <link>https://example.com/first</link>
      <description>&lt;p&gt;Summary of the first post.&lt;/p&gt;</description>
      <pubDate>Mon, 04 May 2026 10:00:00 GMT</pubDate>
      <category>Energy</category>
      <media:content url="https://example.com/first.jpg" medium="image" />
    </item>
    <item>
      <title>No link here</title>
    </item>
  </channel>
</rss>
"""

SITEMAP_INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/sitemap-posts.xml</loc></sitemap>
</sitemapindex>
"""

SITEMAP_POSTS = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9"
        xmlns:news="http://www.google.com/schemas/sitemap-news/0.9">
  <url>
    <loc>https://example.com/blog/older-post</loc>
    <lastmod>2026-01-01</lastmod>
    <priority>0.4</priority>
  </url>
  <url>
    <loc>https://example.com/blog/newer-post.html</loc>
    <news:news>
      <news:title>Newer post headline</news:title>
      <news:publication_date>2026-03-01T08:00:00Z</news:publication_date>
    </news:news>
  </url>
  <url>
    <loc>https://example.com/about</loc>
  </url>
</urlset>
"""

PRODUCTS = """
<html><body>
  <div data-component-type="s-search-result" data-asin="B001">
    <h2><span>Desk lamp deluxe</span></h2>
    <span class="a-price"><span class="a-offscreen">$24.99</span></span>
    <span class="a-icon-alt">4.5 out of 5 stars</span>
    <img class="s-image" src="https://images.example.com/b001.jpg">
  </div>
  <div data-component-type="s-search-result" data-asin="B002">
    <h2>Budget lamp</h2>
    <span class="a-price"><span class="a-offscreen">$9.50</span></span>
    <span class="a-icon-alt">3.1 out of 5 stars</span>
  </div>
  <div data-component-type="s-search-result" data-asin="">
    <h2>Sponsored</h2>
  </div>
</body></html>
"""


def _fetcher(config, opener):
    return ContentFetcher(config.http, config.fetch, opener=opener, sleep=lambda _: None)


def test_feed_discoverer(config, opener_factory):
    opener = opener_factory({"https://example.com/feed.xml": [(200, RSS, "application/rss+xml")]})
    candidates = FeedDiscoverer(_fetcher(config, opener)).discover(CAMPAIGN, {"url": "https://example.com/feed.xml"})

    assert len(candidates) == 1
    first = candidates[0]
    assert first.url == "https://example.com/first"
    assert first.title == "First & best"
    assert first.excerpt == "Summary of the first post."
    assert first.published_at == "2026-05-04T10:00:00+00:00"
    assert first.categories == ["Energy"]
    assert first.image_url == "https://example.com/first.jpg"
    assert first.source_name == "Example Feed"


def test_feed_discoverer_requires_url(config, opener_factory):
    with pytest.raises(DataError) as excinfo:
        FeedDiscoverer(_fetcher(config, opener_factory({}))).discover(CAMPAIGN, {})
    assert str(excinfo.value) == "missing_source_url"


def test_sitemap_index_is_followed(config, opener_factory):
    opener = opener_factory(
        {
            "https://example.com/sitemap.xml": [(200, SITEMAP_INDEX, "application/xml")],
            "https://example.com/sitemap-posts.xml": [(200, SITEMAP_POSTS, "application/xml")],
        }
    )
    candidates = SitemapDiscoverer(_fetcher(config, opener)).discover(
        CAMPAIGN, {"url": "https://example.com/sitemap.xml", "url_pattern": "/blog/"}
    )

    assert [c.url for c in candidates] == [
        "https://example.com/blog/newer-post.html",
        "https://example.com/blog/older-post",
    ]
    assert candidates[0].title == "Newer post headline"
    assert candidates[1].title == "Older post"
    assert candidates[1].extra["sitemap_priority"] == 40


def test_sitemap_rejects_non_sitemap(config, opener_factory):
    opener = opener_factory({"https://example.com/sitemap.xml": [(200, "<html></html>", "text/xml")]})
    with pytest.raises(DataError) as excinfo:
        SitemapDiscoverer(_fetcher(config, opener)).discover(CAMPAIGN, {"url": "https://example.com/sitemap.xml"})
    assert str(excinfo.value) == "sitemap_parse_error"


def test_sitemap_index_skips_broken_children(config, opener_factory):
    index = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/missing.xml</loc></sitemap>
  <sitemap><loc>https://example.com/garbled.xml</loc></sitemap>
  <sitemap><loc>https://example.com/sitemap-posts.xml</loc></sitemap>
</sitemapindex>
"""
    opener = opener_factory(
        {
            "https://example.com/sitemap.xml": [(200, index, "application/xml")],
            "https://example.com/missing.xml": [404],
            "https://example.com/garbled.xml": [(200, "<urlset", "application/xml")],
            "https://example.com/sitemap-posts.xml": [(200, SITEMAP_POSTS, "application/xml")],
        }
    )
    candidates = SitemapDiscoverer(_fetcher(config, opener)).discover(
        CAMPAIGN, {"url": "https://example.com/sitemap.xml"}
    )
    assert len(candidates) == 3


def test_sitemap_root_failure_raises(config, opener_factory):
    opener = opener_factory({"https://example.com/sitemap.xml": [404]})
    with pytest.raises(FetchError) as excinfo:
        SitemapDiscoverer(_fetcher(config, opener)).discover(CAMPAIGN, {"url": "https://example.com/sitemap.xml"})
    assert str(excinfo.value) == "fetch_failed"


def test_title_from_url():
    assert title_from_url("https://example.com/2026/05/solar-panels_guide.html") == "Solar panels guide"
    assert title_from_url("https://example.com/") == ""


def test_marketplace_discoverer_filters(config, opener_factory):
    opener = opener_factory({"https://www.amazon.com/s?k=desk+lamp": [(200, PRODUCTS, "text/html")]})
    candidates = MarketplaceDiscoverer(_fetcher(config, opener)).discover(
        CAMPAIGN, {"keywords": "desk lamp", "min_rating": 4, "affiliate_tag": "mytag-20"}
    )

    assert len(candidates) == 1
    product = candidates[0]
    assert product.url == "https://www.amazon.com/dp/B001?tag=mytag-20"
    assert product.title == "Desk lamp deluxe"
    assert product.extra["price"] == 24.99
    assert product.extra["rating"] == 4.5
    assert product.image_url == "https://images.example.com/b001.jpg"


def test_youtube_channel_uploads(conn, config, opener_factory):
    keys = KeyStore(conn)
    keys.add_key("youtube", "yt-key-0001")
    opener = opener_factory(
        {
            "https://www.googleapis.com/youtube/v3/channels?part=contentDetails&id=UC123": [
                (200, '{"items": [{"contentDetails": {"relatedPlaylists": {"uploads": "UU123"}}}]}', "application/json")
            ],
            "https://www.googleapis.com/youtube/v3/playlistItems?part=snippet%2CcontentDetails&playlistId=UU123&maxResults=5": [
                (
                    200,
                    """{"items": [
                        {"snippet": {"title": "Install guide", "description": "How to install.",
                                     "channelTitle": "Solar Channel",
                                     "thumbnails": {"high": {"url": "https://i.ytimg.com/hq.jpg"}}},
                         "contentDetails": {"videoId": "vid1", "videoPublishedAt": "2026-04-01T00:00:00Z"}},
                        {"snippet": {"title": "Private video"}, "contentDetails": {"videoId": "vid2"}}
                    ]}""",
                    "application/json",
                )
            ],
        }
    )
    candidates = YouTubeDiscoverer(_fetcher(config, opener), keys).discover(
        CAMPAIGN, {"channel_id": "UC123", "max_results": 5}
    )

    assert [c.url for c in candidates] == ["https://www.youtube.com/watch?v=vid1"]
    assert candidates[0].author == "Solar Channel"
    assert candidates[0].image_url == "https://i.ytimg.com/hq.jpg"
    assert candidates[0].extra["description"] == "How to install."
    assert opener.requests[0].get_header("X-goog-api-key") == "yt-key-0001"


def test_youtube_without_key(conn, config, opener_factory):
    discoverer = YouTubeDiscoverer(_fetcher(config, opener_factory({})), KeyStore(conn))
    with pytest.raises(ExhaustionError):
        discoverer.discover(CAMPAIGN, {"playlist_id": "PL1"})
    with pytest.raises(DataError):
        discoverer.discover(CAMPAIGN, {})


def test_web_discoverer_reads_page_metadata(config, opener_factory):
    page = (
        "<html><head><title>Guide</title><meta name='description' content='All about panels'></head>"
        "<body><article><p>Body text</p></article></body></html>"
    )
    opener = opener_factory(
        {
            "https://example.com/guide": [(200, page, "text/html")],
            "https://example.com/broken": [500],
        }
    )
    candidates = WebPageDiscoverer(_fetcher(config, opener)).discover(
        CAMPAIGN, {"urls": ["https://example.com/guide", "https://example.com/broken"]}
    )
    assert len(candidates) == 1
    assert candidates[0].title == "Guide"
    assert candidates[0].excerpt == "All about panels"

    with pytest.raises(FetchError):
        WebPageDiscoverer(_fetcher(config, opener)).discover(CAMPAIGN, {"url": "https://example.com/broken"})


class StubChain:
    def __init__(self, results):
        self.results = results
        self.calls = []

    def get_results(self, query, params, campaign_id=""):
        self.calls.append((query, params, campaign_id))
        return self.results.get(query, [])


def test_news_discoverer_merges_queries():
    chain = StubChain(
        {
            "solar": [Candidate(url="https://news.example.com/1", title="One")],
            "wind": [
                Candidate(url="https://news.example.com/1", title="One"),
                Candidate(url="https://news.example.com/2", title="Two"),
            ],
        }
    )
    candidates = NewsDiscoverer(chain).discover(CAMPAIGN, {"keywords": ["solar", "wind"], "language": "de"})

    assert [c.url for c in candidates] == ["https://news.example.com/1", "https://news.example.com/2"]
    assert chain.calls[0] == ("solar", {"freshness": "24h", "max_results": 20, "language": "de"}, "c1")
    with pytest.raises(DataError) as excinfo:
        NewsDiscoverer(chain).discover(CAMPAIGN, {"keywords": "  "})
    assert str(excinfo.value) == "missing_keywords"
