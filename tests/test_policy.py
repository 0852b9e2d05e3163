import logging
from datetime import datetime, timedelta, timezone

from autopress.discovery.policy import evaluate_candidate, is_similar_title, resolve_policy
from autopress.discovery.scoring import score_priority
from autopress.models import Candidate

NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)
LOGGER = logging.getLogger("test.policy")


def test_priority_rules():
    assert score_priority((NOW - timedelta(hours=2)).isoformat(), None, NOW) == 70
    assert score_priority((NOW - timedelta(hours=48)).isoformat(), None, NOW) == 60
    assert score_priority((NOW - timedelta(days=10)).isoformat(), None, NOW) == 50
    assert score_priority(None, None, NOW) == 50
    assert score_priority("not a date", None, NOW) == 50


def test_priority_override_wins_and_is_clamped():
    fresh = (NOW - timedelta(hours=1)).isoformat()
    assert score_priority(fresh, 15, NOW) == 15
    assert score_priority(fresh, "90", NOW) == 90
    assert score_priority(fresh, 500, NOW) == 100
    assert score_priority(fresh, "high", NOW) == 70


def test_resolve_policy_merges_campaign_then_source():
    policy = resolve_policy(
        {"filters": {"exclude_keywords": ["casino"]}, "dedupe": {"title_similarity": 0.8}, "unknown": 1},
        {"url": "https://example.com/feed", "blocked_domains": ["spam.example"], "max_items": 3},
        LOGGER,
    )
    assert policy["filters"]["exclude_keywords"] == ["casino"]
    assert policy["filters"]["blocked_domains"] == ["spam.example"]
    assert policy["dedupe"]["title_similarity"] == 0.8
    assert policy["dedupe"]["recent_titles"] == 100
    assert policy["limits"]["max_items"] == 3
    assert "unknown" not in policy


def test_evaluate_candidate_reasons():
    policy = resolve_policy(
        {
            "filters": {
                "exclude_keywords": "casino, lottery",
                "include_keywords": ["solar"],
                "blocked_domains": ["spam.example"],
            }
        },
        None,
        LOGGER,
    )
    ok = evaluate_candidate(Candidate(url="https://news.example.com/a", title="Solar farms grow"), policy)
    assert ok.accepted
    assert ok.reasons == []

    excluded = evaluate_candidate(Candidate(url="https://news.example.com/b", title="Solar casino"), policy)
    assert excluded.reasons == ["exclude_keywords:casino"]

    missed = evaluate_candidate(Candidate(url="https://news.example.com/c", title="Wind power"), policy)
    assert missed.reasons == ["include_keywords:miss"]

    blocked = evaluate_candidate(Candidate(url="https://www.spam.example/d", title="Solar deals"), policy)
    assert blocked.reasons == ["blocked_domain:spam.example"]

    assert evaluate_candidate(Candidate(url="ftp://x/y", title="Solar"), policy).reasons == ["invalid_url"]
    assert evaluate_candidate(Candidate(url="https://x.example/y", title=" "), policy).reasons == ["missing_title"]


def test_allowed_domains_include_subdomains():
    policy = resolve_policy({"filters": {"allowed_domains": ["example.com"]}}, None, LOGGER)
    assert evaluate_candidate(Candidate(url="https://blog.example.com/a", title="A"), policy).accepted
    rejected = evaluate_candidate(Candidate(url="https://other.org/a", title="A"), policy)
    assert rejected.reasons == ["domain_not_allowed:other.org"]


def test_similar_titles():
    recent = ["Solar farms expand across the valley"]
    assert is_similar_title("Solar farms expand across the valley!", recent, 0.9)
    assert not is_similar_title("Local bakery wins award", recent, 0.9)
    assert not is_similar_title("Solar farms expand across the valley", recent, 0)
