from __future__ import annotations

import http.client
import json
import logging
import re
import time
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Callable
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..config import FetchConfig, HttpConfig
from ..errors import FetchError
from ..utils import json_dumps, json_loads, log_event, stable_id_from_url, to_iso, utc_now, utc_now_iso


@dataclass(frozen=True)
class FetchOptions:
    use_cache: bool = True
    cache_ttl_seconds: int | None = None
    max_attempts: int | None = None
    timeout_seconds: int | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HttpResponse:
    url: str
    status: int
    headers: dict[str, str]
    body: bytes

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").split(";", 1)[0].strip().lower()

    def text(self) -> str:
        match = re.search(r"charset=([\w-]+)", self.headers.get("content-type", ""), re.I)
        encoding = match.group(1) if match else "utf-8"
        try:
            return self.body.decode(encoding, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status: int
    kind: str
    title: str | None = None
    description: str | None = None
    author: str | None = None
    published_at: str | None = None
    image_url: str | None = None
    text: str = ""
    html: str | None = None
    data: Any = None
    fetched_at: str = ""
    from_cache: bool = False

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FetchResult":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in payload.items() if key in known})


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    def __init__(self, max_redirects: int) -> None:
        super().__init__()
        self.max_redirections = max_redirects
        self.max_repeats = max(1, min(4, max_redirects))


def build_opener(max_redirects: int, *handlers: urllib.request.BaseHandler) -> urllib.request.OpenerDirector:
    return urllib.request.build_opener(_LimitedRedirectHandler(max_redirects), *handlers)


class FetchCache:
    """URL-keyed response cache persisted in the ``fetch_cache`` table."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def get(self, url: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT payload, expires_at FROM fetch_cache WHERE cache_key = ?",
            (stable_id_from_url(url),),
        ).fetchone()
        if not row:
            return None
        if row[1] <= utc_now_iso():
            return None
        return json_loads(row[0])

    def set(self, url: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        now = utc_now()
        self.conn.execute(
            """
            INSERT INTO fetch_cache (cache_key, url, payload, fetched_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (cache_key) DO UPDATE SET
                url = excluded.url,
                payload = excluded.payload,
                fetched_at = excluded.fetched_at,
                expires_at = excluded.expires_at
            """,
            (
                stable_id_from_url(url),
                url,
                json_dumps(payload),
                now.isoformat(),
                (now + timedelta(seconds=ttl_seconds)).isoformat(),
            ),
        )
        self.conn.commit()

    def delete(self, url: str) -> None:
        self.conn.execute("DELETE FROM fetch_cache WHERE cache_key = ?", (stable_id_from_url(url),))
        self.conn.commit()

    def purge_expired(self) -> int:
        cursor = self.conn.execute("DELETE FROM fetch_cache WHERE expires_at <= ?", (utc_now_iso(),))
        count = cursor.rowcount or 0
        self.conn.commit()
        return count


class ContentFetcher:
    def __init__(
        self,
        http: HttpConfig,
        fetch: FetchConfig,
        *,
        cache: FetchCache | None = None,
        opener: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.http = http
        self.fetch_config = fetch
        self.cache = cache
        self.opener = opener or build_opener(http.max_redirects)
        self._sleep = sleep
        self.logger = logger or logging.getLogger("autopress.fetch")

    def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        options = options or FetchOptions()
        if options.use_cache and self.cache is not None:
            cached = self.cache.get(url)
            if cached is not None:
                log_event(self.logger, logging.DEBUG, "fetch_cache_hit", url=url)
                return FetchResult.from_dict({**cached, "from_cache": True})

        response = self.fetch_raw(url, options)
        result = self._classify(url, response)

        if options.use_cache and self.cache is not None:
            ttl = options.cache_ttl_seconds
            if ttl is None:
                ttl = self.fetch_config.cache_ttl_seconds
            if ttl > 0:
                self.cache.set(url, asdict(result), ttl)
        return result

    def fetch_raw(self, url: str, options: FetchOptions | None = None) -> HttpResponse:
        """GET ``url`` with retry and capped redirects; no content classification."""
        options = options or FetchOptions()
        attempts = max(1, options.max_attempts or self.fetch_config.max_attempts)
        timeout = options.timeout_seconds or self.http.timeout_seconds
        headers = {
            "User-Agent": self.http.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
            **options.headers,
        }
        try:
            request = urllib.request.Request(url, headers=headers)
        except ValueError as exc:
            raise FetchError("invalid_url", f"{url} is not a fetchable URL: {exc}", url=url) from exc
        last_error = ""
        last_status: int | None = None
        for attempt in range(attempts):
            try:
                with self.opener.open(request, timeout=timeout) as response:
                    status = int(response.getcode() or 0)
                    body = response.read()
                    final_url = response.geturl() or url
                    response_headers = {k.lower(): v for k, v in response.headers.items()}
                if 200 <= status < 400:
                    return HttpResponse(url=final_url, status=status, headers=response_headers, body=body)
                last_status = status
                last_error = f"http_status {status}"
            except urllib.error.HTTPError as exc:
                last_status = exc.code
                last_error = f"http_error {exc.code}"
            except http.client.InvalidURL as exc:
                raise FetchError("invalid_url", f"{url} is not a fetchable URL: {exc}", url=url) from exc
            except (urllib.error.URLError, TimeoutError, ConnectionError, OSError) as exc:
                last_status = None
                last_error = f"network_error: {getattr(exc, 'reason', exc)}"
            except http.client.HTTPException as exc:
                last_status = None
                last_error = f"protocol_error: {type(exc).__name__}: {exc}"
            log_event(
                self.logger,
                logging.WARNING,
                "fetch_attempt_failed",
                url=url,
                attempt=attempt + 1,
                attempts=attempts,
                error=last_error,
            )
            if attempt + 1 < attempts:
                self._sleep(self.fetch_config.backoff_seconds * (2**attempt))
        raise FetchError(
            "fetch_failed",
            f"{url} failed after {attempts} attempts: {last_error}",
            url=url,
            status=last_status,
        )

    def _classify(self, url: str, response: HttpResponse) -> FetchResult:
        if not response.body or not response.body.strip():
            raise FetchError("empty_response", f"{url} returned an empty body", url=url, status=response.status)
        content_type = response.content_type
        fetched_at = utc_now_iso()
        if not content_type or "html" in content_type:
            html = response.text()
            metadata = extract_metadata(html, response.url)
            return FetchResult(
                url=url,
                final_url=response.url,
                status=response.status,
                kind="html",
                text=extract_readable_text(html),
                html=html,
                fetched_at=fetched_at,
                **metadata,
            )
        if content_type.endswith("json"):
            try:
                data = json.loads(response.text())
            except json.JSONDecodeError as exc:
                raise FetchError(
                    "json_error",
                    f"{url} returned malformed JSON: {exc.msg}",
                    url=url,
                    status=response.status,
                    context={"raw": response.text()[:500]},
                ) from exc
            return FetchResult(
                url=url,
                final_url=response.url,
                status=response.status,
                kind="json",
                data=data,
                fetched_at=fetched_at,
            )
        raise FetchError(
            "unsupported_content_type",
            f"{url} returned unsupported content type {content_type}",
            url=url,
            status=response.status,
            context={"content_type": content_type},
        )


def extract_metadata(html: str, base_url: str) -> dict[str, str | None]:
    soup = BeautifulSoup(html, "html.parser")

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None
    title = title or _meta(soup, property="og:title")
    if not title:
        heading = soup.find("h1")
        if heading:
            title = heading.get_text(" ", strip=True) or None

    description = _meta(soup, name="description") or _meta(soup, property="og:description")
    author = _meta(soup, name="author") or _meta(soup, property="article:author")

    published = _meta(soup, property="article:published_time") or _json_ld_date(soup)
    if not published:
        time_tag = soup.find("time", attrs={"datetime": True})
        if time_tag:
            published = time_tag.get("datetime")

    image = (
        _meta(soup, property="og:image")
        or _meta(soup, name="twitter:image")
        or _meta(soup, property="twitter:image")
    )

    return {
        "title": title,
        "description": description,
        "author": author,
        "published_at": to_iso(published) if published else None,
        "image_url": urljoin(base_url, image) if image else None,
    }


def _meta(soup: BeautifulSoup, *, name: str | None = None, property: str | None = None) -> str | None:
    attrs = {"name": name} if name else {"property": property}
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return str(tag["content"]).strip() or None
    return None


def _json_ld_date(soup: BeautifulSoup) -> str | None:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except json.JSONDecodeError:
            continue
        for node in _json_ld_nodes(data):
            value = node.get("datePublished")
            if value:
                return str(value)
    return None


def _json_ld_nodes(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        nodes: list[dict[str, Any]] = []
        for item in data:
            nodes.extend(_json_ld_nodes(item))
        return nodes
    if isinstance(data, dict):
        nodes = [data]
        graph = data.get("@graph")
        if isinstance(graph, list):
            nodes.extend(node for node in graph if isinstance(node, dict))
        return nodes
    return []


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "noscript", "form"]):
        tag.decompose()
    article = soup.find("article")
    if article:
        return _normalize_text(article.get_text(" ", strip=True))
    best = None
    best_len = 0
    for div in soup.find_all(["div", "main", "section"]):
        text = div.get_text(" ", strip=True)
        if len(text) > best_len:
            best_len = len(text)
            best = text
    if best:
        return _normalize_text(best)
    return _normalize_text(soup.get_text(" ", strip=True))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
