from __future__ import annotations

import io
import urllib.error
from email.message import Message

import pytest

from autopress.config import config_from_dict
from autopress.db import connect_db


class FakeResponse:
    def __init__(self, url: str, status: int, body: bytes, content_type: str | None) -> None:
        self._url = url
        self._status = status
        self._body = body
        self.headers = Message()
        if content_type:
            self.headers["Content-Type"] = content_type

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def getcode(self) -> int:
        return self._status

    def read(self) -> bytes:
        return self._body

    def geturl(self) -> str:
        return self._url


class FakeOpener:
    """Stands in for a urllib opener; replies are consumed per URL in order.

    A reply is ``(status, body, content_type)``, an exception instance, or an
    int status for an HTTP error.
    """

    def __init__(self, routes: dict[str, list]) -> None:
        self.routes = {url: list(replies) for url, replies in routes.items()}
        self.requests: list = []

    def open(self, request, timeout=None):
        self.requests.append(request)
        url = request.full_url
        replies = self.routes.get(url)
        if not replies:
            raise urllib.error.URLError(f"no route for {url}")
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            raise urllib.error.HTTPError(url, reply, "error", Message(), io.BytesIO(b""))
        status, body, content_type = reply
        if isinstance(body, str):
            body = body.encode("utf-8")
        return FakeResponse(url, status, body, content_type)


@pytest.fixture(autouse=True)
def master_key(monkeypatch):
    monkeypatch.setenv("AUTOPRESS_MASTER_KEY", "test-master-key-0123456789")
    monkeypatch.setenv("AUTOPRESS_KEY_ID", "v1")
    monkeypatch.delenv("AP_DB_URL", raising=False)


@pytest.fixture
def config(tmp_path):
    return config_from_dict(
        {
            "paths": {
                "data_dir": str(tmp_path / "data"),
                "state_db": str(tmp_path / "data" / "state.sqlite3"),
            },
            "fetch": {"backoff_seconds": 0.0},
            "queue": {"min_words": 5},
            "discovery": {"campaign_pause_seconds": 0.0},
            "generation": {"acquire_backoff_seconds": 0.0, "retry_backoff_seconds": 0.0},
        }
    )


@pytest.fixture
def conn(config):
    db = connect_db(config.paths.state_db)
    yield db
    db.close()


@pytest.fixture
def opener_factory():
    return FakeOpener
