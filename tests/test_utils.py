import logging
from datetime import datetime, timezone

from autopress.utils import (
    is_http_url,
    log_event,
    normalize_url,
    parse_datetime,
    slugify,
    truncate_text,
    url_domain,
)


def test_normalize_url_strips_tracking_and_sorts():
    url = "https://Example.com/path?utm_source=news&b=2&a=1#frag"
    assert normalize_url(url) == "https://example.com/path?a=1&b=2"


def test_normalize_url_keeps_tracking_when_disabled():
    url = "https://example.com/path?utm_source=news&b=2"
    normalized = normalize_url(url, strip_tracking_params=False)
    assert normalized == "https://example.com/path?b=2&utm_source=news"


def test_url_helpers():
    assert is_http_url("https://example.com/a")
    assert not is_http_url("mailto:someone@example.com")
    assert not is_http_url(None)
    assert url_domain("https://www.Example.com:8080/a") == "example.com"
    assert slugify("Héllo, World!") == "hello-world"


def test_truncate_text_cuts_on_word_boundary():
    assert truncate_text("one two three four", 100) == "one two three four"
    assert truncate_text("one two three four", 10) == "one two..."
    assert truncate_text(None, 10) == ""


def test_parse_datetime_formats():
    expected = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)
    assert parse_datetime("Mon, 04 May 2026 10:00:00 GMT") == expected
    assert parse_datetime("2026-05-04T10:00:00Z") == expected
    assert parse_datetime("2026-05-04T12:00:00+02:00") == expected
    assert parse_datetime("garbage") is None


def test_log_event_formats_fields(caplog):
    logger = logging.getLogger("autopress.test")
    with caplog.at_level(logging.INFO, logger="autopress.test"):
        log_event(logger, logging.INFO, "item_done", item_id=3, status="ok")
    assert "event=item_done item_id=3 status=ok" in caplog.text
