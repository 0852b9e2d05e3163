from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any

from ..models import Candidate
from ..utils import is_http_url, log_event, url_domain

POLICY_DEFAULTS: dict[str, Any] = {
    "filters": {
        "exclude_keywords": [],
        "include_keywords": [],
        "allowed_domains": [],
        "blocked_domains": [],
    },
    "dedupe": {
        "title_similarity": 0.9,
        "recent_titles": 100,
    },
    "limits": {
        "max_items": 0,
    },
}

_FILTER_KEYS = ("exclude_keywords", "include_keywords", "allowed_domains", "blocked_domains")


@dataclass(frozen=True)
class Decision:
    decision: str
    reasons: list[str]

    @property
    def accepted(self) -> bool:
        return self.decision == "ACCEPT"


def resolve_policy(
    campaign_settings: dict[str, Any] | None,
    source: dict[str, Any] | None,
    logger: logging.Logger,
) -> dict[str, Any]:
    """Merge defaults, campaign-level policy and source-level policy, in that order."""
    base = copy.deepcopy(POLICY_DEFAULTS)
    for layer, path in ((campaign_settings, "campaign"), (source, "source")):
        if not layer:
            continue
        normalized = _normalize_overrides(layer)
        base = _deep_merge(base, normalized, logger, path=path)
    return base


def _normalize_overrides(overrides: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key in ("filters", "dedupe", "limits"):
        if isinstance(overrides.get(key), dict):
            normalized[key] = dict(overrides[key])
    # Filter keys may also sit at the top level of a source description.
    filters = normalized.setdefault("filters", {})
    for key in _FILTER_KEYS:
        if key in overrides and key not in filters:
            filters[key] = overrides[key]
    if not filters:
        normalized.pop("filters")
    if "max_items" in overrides:
        normalized.setdefault("limits", {})["max_items"] = overrides["max_items"]
    return normalized


def _deep_merge(
    base: dict[str, Any],
    overrides: dict[str, Any],
    logger: logging.Logger,
    path: str,
) -> dict[str, Any]:
    for key, value in overrides.items():
        if key not in base:
            log_event(logger, logging.DEBUG, "policy_unknown_key", path=f"{path}.{key}")
            continue
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value, logger, path=f"{path}.{key}")
        else:
            base[key] = value
    return base


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


def _keyword_match(text: str, keywords: list[str]) -> list[str]:
    lowered = text.lower()
    return [keyword for keyword in keywords if keyword.lower() in lowered]


def _domain_matches(domain: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        pattern = pattern.lower().lstrip(".")
        if pattern.startswith("www."):
            pattern = pattern[4:]
        if domain == pattern or domain.endswith("." + pattern):
            return True
    return False


def evaluate_candidate(candidate: Candidate, policy: dict[str, Any]) -> Decision:
    if not is_http_url(candidate.url):
        return Decision("SKIP", ["invalid_url"])
    if not (candidate.title or "").strip():
        return Decision("SKIP", ["missing_title"])

    filters = policy.get("filters") or {}
    combined = f"{candidate.title} {candidate.excerpt or ''}"
    reasons: list[str] = []

    excluded = _keyword_match(combined, _as_list(filters.get("exclude_keywords")))
    if excluded:
        reasons.append(f"exclude_keywords:{','.join(excluded)}")
    include = _as_list(filters.get("include_keywords"))
    if include and not _keyword_match(combined, include):
        reasons.append("include_keywords:miss")

    domain = url_domain(candidate.url)
    if _domain_matches(domain, _as_list(filters.get("blocked_domains"))):
        reasons.append(f"blocked_domain:{domain}")
    allowed = _as_list(filters.get("allowed_domains"))
    if allowed and not _domain_matches(domain, allowed):
        reasons.append(f"domain_not_allowed:{domain}")

    return Decision("SKIP" if reasons else "ACCEPT", reasons)


def is_similar_title(title: str, recent_titles: list[str], threshold: float) -> bool:
    if threshold <= 0 or threshold > 1:
        return False
    lowered = title.strip().lower()
    for other in recent_titles:
        if SequenceMatcher(None, lowered, other.strip().lower()).ratio() >= threshold:
            return True
    return False
