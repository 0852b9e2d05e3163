import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path

from autopress.models import QueueStatus, SourceType
from autopress.utils import json_dumps, json_loads


@dataclass
class Payload:
    value: str


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "enum": SourceType.RSS,
        "datetime": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "date": date(2026, 1, 2),
        "path": Path("/tmp/autopress"),
        "set": {"b", "a"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["enum"] == "rss"
    assert decoded["datetime"].startswith("2026-01-01T00:00:00")
    assert decoded["date"] == "2026-01-02"
    assert decoded["path"] == "/tmp/autopress"
    assert decoded["set"] == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_json_loads_defaults():
    assert json_loads(None, {}) == {}
    assert json_loads("not json", []) == []
    assert json_loads('{"status": "pending"}')["status"] == QueueStatus.PENDING.value
