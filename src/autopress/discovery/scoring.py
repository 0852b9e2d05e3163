from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from ..utils import parse_datetime, utc_now

BASE_PRIORITY = 50
FRESH_BOOST = 20
RECENT_BOOST = 10


def score_priority(
    published_at: Any,
    override: Any = None,
    now: datetime | None = None,
) -> int:
    """Queue priority for a discovered item.

    An explicit source priority always wins. Otherwise items start at 50 and
    gain 20 when published within 24 hours or 10 within 72 hours.
    """
    if override is not None and override != "":
        try:
            return _clamp(int(override))
        except (TypeError, ValueError):
            pass
    score = BASE_PRIORITY
    published = parse_datetime(published_at)
    if published is not None:
        age = (now or utc_now()) - published
        if age < timedelta(hours=24):
            score += FRESH_BOOST
        elif age < timedelta(hours=72):
            score += RECENT_BOOST
    return _clamp(score)


def _clamp(value: int) -> int:
    return max(0, min(100, value))
