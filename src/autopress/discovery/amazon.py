from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from ..errors import DataError
from ..models import Campaign, Candidate, SourceType
from ..pipelines.content_fetch import ContentFetcher, FetchOptions
from ..utils import log_event

_PRICE_RE = re.compile(r"[\d.,]+")
_RATING_RE = re.compile(r"([\d.,]+)\s+out of")


def _parse_price(text: str | None) -> float | None:
    if not text:
        return None
    match = _PRICE_RE.search(text)
    if not match:
        return None
    raw = match.group(0)
    if "," in raw and "." in raw:
        raw = raw.replace(",", "")
    elif "," in raw:
        raw = raw.replace(",", ".")
    try:
        return float(raw)
    except ValueError:
        return None


def _parse_rating(text: str | None) -> float | None:
    if not text:
        return None
    match = _RATING_RE.search(text)
    if not match:
        return None
    try:
        return float(match.group(1).replace(",", "."))
    except ValueError:
        return None


def _with_tag(url: str, tag: str | None) -> str:
    if not tag:
        return url
    split = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(split.query) if k != "tag"]
    query.append(("tag", tag))
    return urlunsplit((split.scheme, split.netloc, split.path, urlencode(query), ""))


class MarketplaceDiscoverer:
    """Product listings scraped from marketplace search result pages."""

    source_type = SourceType.AMAZON

    def __init__(self, fetcher: ContentFetcher, logger: logging.Logger | None = None) -> None:
        self.fetcher = fetcher
        self.logger = logger or logging.getLogger("autopress.discovery.amazon")

    def discover(self, campaign: Campaign, source: dict[str, Any]) -> list[Candidate]:
        domain = str(source.get("marketplace") or "www.amazon.com")
        url = str(source.get("url") or "").strip()
        if not url:
            keywords = str(source.get("keywords") or "").strip()
            if not keywords:
                raise DataError("missing_keywords", "marketplace source needs keywords or url")
            url = f"https://{domain}/s?{urlencode({'k': keywords})}"
        result = self.fetcher.fetch(url, FetchOptions(use_cache=False))
        if result.kind != "html" or not result.html:
            raise DataError("unexpected_response", f"{url} did not return a results page")
        products = parse_search_results(result.html, result.final_url)
        min_rating = source.get("min_rating")
        min_price = source.get("min_price")
        max_price = source.get("max_price")
        affiliate_tag = source.get("affiliate_tag")
        candidates = []
        for product in products:
            if min_rating is not None and (product["rating"] or 0) < float(min_rating):
                continue
            if min_price is not None and (product["price"] is None or product["price"] < float(min_price)):
                continue
            if max_price is not None and (product["price"] is None or product["price"] > float(max_price)):
                continue
            candidates.append(
                Candidate(
                    url=_with_tag(product["url"], affiliate_tag),
                    title=product["title"],
                    image_url=product["image_url"],
                    source_name=domain,
                    extra={
                        "asin": product["asin"],
                        "price": product["price"],
                        "price_text": product["price_text"],
                        "rating": product["rating"],
                    },
                )
            )
        max_results = int(source.get("max_results") or 10)
        candidates = candidates[:max_results]
        log_event(
            self.logger,
            logging.INFO,
            "marketplace_results_parsed",
            campaign_id=campaign.id,
            url=url,
            products=len(products),
            candidates=len(candidates),
        )
        return candidates


def parse_search_results(html: str, base_url: str) -> list[dict[str, Any]]:
    soup = BeautifulSoup(html, "html.parser")
    products = []
    for node in soup.select('div[data-component-type="s-search-result"]'):
        asin = (node.get("data-asin") or "").strip()
        if not asin:
            continue
        heading = node.find("h2")
        title = heading.get_text(" ", strip=True) if heading else ""
        if not title:
            continue
        split = urlsplit(base_url)
        url = urljoin(f"{split.scheme}://{split.netloc}", f"/dp/{asin}")
        price_node = node.select_one("span.a-price span.a-offscreen")
        price_text = price_node.get_text(strip=True) if price_node else None
        rating_node = node.select_one("span.a-icon-alt")
        image = node.select_one("img.s-image")
        products.append(
            {
                "asin": asin,
                "title": title,
                "url": url,
                "price": _parse_price(price_text),
                "price_text": price_text,
                "rating": _parse_rating(rating_node.get_text(strip=True) if rating_node else None),
                "image_url": image.get("src") if image else None,
            }
        )
    return products
