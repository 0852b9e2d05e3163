from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Protocol
from urllib.parse import urlencode

import feedparser
from bs4 import BeautifulSoup

from ..config import NewsConfig
from ..errors import ConfigurationError, DataError
from ..models import Candidate
from ..pipelines.content_fetch import ContentFetcher, FetchOptions
from ..utils import to_iso, truncate_text, utc_now

NEWSAPI_URL = "https://newsapi.org/v2/everything"
SERPAPI_URL = "https://serpapi.com/search"
GOOGLE_NEWS_RSS_URL = "https://news.google.com/rss/search"

FRESHNESS_WINDOWS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


class DataProvider(Protocol):
    name: str
    requires_credential: bool

    def search(self, query: str, params: dict[str, Any]) -> list[Candidate]: ...


def _max_results(params: dict[str, Any]) -> int:
    return max(1, min(100, int(params.get("max_results") or 10)))


def _json_options(params: dict[str, Any]) -> FetchOptions:
    return FetchOptions(
        use_cache=False,
        max_attempts=int(params.get("max_attempts") or 1),
        headers={"Accept": "application/json"},
    )


class NewsApiProvider:
    name = "newsapi"
    requires_credential = True

    def __init__(self, fetcher: ContentFetcher, news: NewsConfig) -> None:
        self.fetcher = fetcher
        self.news = news

    def search(self, query: str, params: dict[str, Any]) -> list[Candidate]:
        api_key = params.get("api_key")
        if not api_key:
            raise ConfigurationError("missing_credential", "newsapi needs an api key")
        query_params: dict[str, Any] = {
            "q": query,
            "language": params.get("language") or self.news.language,
            "sortBy": "publishedAt",
            "pageSize": _max_results(params),
            "apiKey": api_key,
        }
        window = FRESHNESS_WINDOWS.get(str(params.get("freshness") or ""))
        if window:
            query_params["from"] = (utc_now() - window).strftime("%Y-%m-%dT%H:%M:%S")
        result = self.fetcher.fetch(f"{NEWSAPI_URL}?{urlencode(query_params)}", _json_options(params))
        data = result.data if isinstance(result.data, dict) else {}
        if data.get("status") != "ok":
            raise DataError(
                "provider_error",
                f"newsapi: {data.get('message') or 'unexpected response'}",
                context={"code": data.get("code")},
            )
        items = []
        for article in data.get("articles") or []:
            url = article.get("url")
            title = (article.get("title") or "").strip()
            if not url or not title or title == "[Removed]":
                continue
            items.append(
                Candidate(
                    url=url,
                    title=title,
                    excerpt=truncate_text(article.get("description") or article.get("content"), 500),
                    published_at=to_iso(article.get("publishedAt")),
                    author=article.get("author"),
                    image_url=article.get("urlToImage"),
                    source_name=(article.get("source") or {}).get("name"),
                    extra={"provider": self.name},
                )
            )
        return items


class SerpApiProvider:
    name = "serpapi"
    requires_credential = True

    _TIME_FILTERS = {"1h": "qdr:h", "24h": "qdr:d", "7d": "qdr:w", "30d": "qdr:m"}

    def __init__(self, fetcher: ContentFetcher, news: NewsConfig) -> None:
        self.fetcher = fetcher
        self.news = news

    def search(self, query: str, params: dict[str, Any]) -> list[Candidate]:
        api_key = params.get("api_key")
        if not api_key:
            raise ConfigurationError("missing_credential", "serpapi needs an api key")
        query_params: dict[str, Any] = {
            "engine": "google_news",
            "q": query,
            "gl": str(params.get("country") or self.news.country).lower(),
            "hl": str(params.get("language") or self.news.language).lower(),
            "num": _max_results(params),
            "api_key": api_key,
        }
        time_filter = self._TIME_FILTERS.get(str(params.get("freshness") or ""))
        if time_filter:
            query_params["tbs"] = time_filter
        result = self.fetcher.fetch(f"{SERPAPI_URL}?{urlencode(query_params)}", _json_options(params))
        data = result.data if isinstance(result.data, dict) else {}
        if data.get("error"):
            raise DataError("provider_error", f"serpapi: {data['error']}")
        rows = list(data.get("top_stories") or []) + list(data.get("news_results") or [])
        items = []
        for row in rows:
            # Story clusters nest their articles one level down.
            for story in [row] + list(row.get("stories") or []):
                url = story.get("link")
                title = (story.get("title") or "").strip()
                if not url or not title:
                    continue
                source = story.get("source")
                items.append(
                    Candidate(
                        url=url,
                        title=title,
                        excerpt=truncate_text(story.get("snippet"), 500),
                        published_at=to_iso(story.get("iso_date") or story.get("date")),
                        image_url=story.get("thumbnail"),
                        source_name=source.get("name") if isinstance(source, dict) else source,
                        extra={"provider": self.name},
                    )
                )
        return items[: _max_results(params)]


class GoogleNewsProvider:
    name = "google_news"
    requires_credential = False

    _WHEN = {"1h": "when:1h", "24h": "when:1d", "7d": "when:7d", "30d": "when:30d"}

    def __init__(self, fetcher: ContentFetcher, news: NewsConfig) -> None:
        self.fetcher = fetcher
        self.news = news

    def search(self, query: str, params: dict[str, Any]) -> list[Candidate]:
        language = str(params.get("language") or self.news.language)
        country = str(params.get("country") or self.news.country).upper()
        when = self._WHEN.get(str(params.get("freshness") or ""))
        query_params = {
            "q": f"{query} {when}" if when else query,
            "hl": language,
            "gl": country,
            "ceid": f"{country}:{language}",
        }
        response = self.fetcher.fetch_raw(
            f"{GOOGLE_NEWS_RSS_URL}?{urlencode(query_params)}",
            FetchOptions(use_cache=False, max_attempts=int(params.get("max_attempts") or 1)),
        )
        parsed = feedparser.parse(response.body)
        items = []
        for entry in parsed.entries[: _max_results(params)]:
            url = entry.get("link")
            title = (entry.get("title") or "").strip()
            if not url or not title:
                continue
            source = entry.get("source") or {}
            items.append(
                Candidate(
                    url=url,
                    title=title,
                    excerpt=truncate_text(_strip_tags(entry.get("summary")), 500),
                    published_at=to_iso(entry.get("published_parsed") or entry.get("published")),
                    source_name=source.get("title") if hasattr(source, "get") else None,
                    extra={"provider": self.name},
                )
            )
        return items


class SearxngProvider:
    name = "searxng"
    requires_credential = False

    _TIME_RANGES = {"1h": "day", "24h": "day", "7d": "week", "30d": "month"}

    def __init__(self, fetcher: ContentFetcher, news: NewsConfig) -> None:
        self.fetcher = fetcher
        self.news = news

    def search(self, query: str, params: dict[str, Any]) -> list[Candidate]:
        base_url = str(params.get("searxng_url") or self.news.searxng_url)
        if not base_url:
            raise ConfigurationError("missing_searxng_url", "news.searxng_url is not set")
        query_params: dict[str, Any] = {
            "q": query,
            "format": "json",
            "categories": "news",
            "language": params.get("language") or self.news.language,
            "safesearch": "0",
        }
        time_range = self._TIME_RANGES.get(str(params.get("freshness") or ""))
        if time_range:
            query_params["time_range"] = time_range
        result = self.fetcher.fetch(
            base_url.rstrip("/") + "/search?" + urlencode(query_params),
            _json_options(params),
        )
        data = result.data if isinstance(result.data, dict) else {}
        items = []
        for row in (data.get("results") or [])[: _max_results(params)]:
            url = row.get("url")
            title = (row.get("title") or "").strip()
            if not url or not title:
                continue
            items.append(
                Candidate(
                    url=url,
                    title=title,
                    excerpt=truncate_text(row.get("content") or row.get("snippet"), 500),
                    published_at=to_iso(row.get("publishedDate")),
                    image_url=row.get("img_src") or row.get("thumbnail"),
                    source_name=row.get("engine"),
                    extra={"provider": self.name},
                )
            )
        return items


def _strip_tags(html: str | None) -> str:
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text(" ", strip=True)


PROVIDERS: dict[str, Callable[[ContentFetcher, NewsConfig], DataProvider]] = {
    NewsApiProvider.name: NewsApiProvider,
    SerpApiProvider.name: SerpApiProvider,
    GoogleNewsProvider.name: GoogleNewsProvider,
    SearxngProvider.name: SearxngProvider,
}


def build_providers(names: list[str], fetcher: ContentFetcher, news: NewsConfig) -> list[DataProvider]:
    providers = []
    for name in names:
        factory = PROVIDERS.get(name)
        if factory is None:
            raise ConfigurationError("unknown_provider", f"unknown data provider: {name}")
        providers.append(factory(fetcher, news))
    return providers
