"""
Parsing helpers for provider duration and timestamp fields.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any


def parse_duration(value: Any) -> int:
    """Parse a provider duration into whole seconds.

    Accepts ints, floats, numeric strings and ``HH:MM:SS`` strings (the
    dashboard format). Anything unparseable or negative yields 0.
    """
    if value is None or isinstance(value, bool):
        return 0

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return max(int(value), 0)

    text = str(value).strip()
    if not text:
        return 0

    if ":" in text:
        parts = text.split(":")
        if len(parts) != 3:
            return 0
        try:
            hours, minutes, seconds = (int(p or 0) for p in parts)
        except ValueError:
            return 0
        return max(hours * 3600 + minutes * 60 + seconds, 0)

    try:
        number = float(text)
    except ValueError:
        return 0
    if not math.isfinite(number):
        return 0
    return max(int(number), 0)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 (``T`` or space separated) or RFC 2822 timestamps.

    Naive values are taken as UTC so start/end pairs always subtract.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def duration_between(start: Any, end: Any) -> int:
    """Seconds between two provider timestamps, floored; 0 if unusable."""
    started = parse_timestamp(start)
    ended = parse_timestamp(end)
    if started is None or ended is None:
        return 0
    seconds = math.floor((ended - started).total_seconds())
    return seconds if seconds > 0 else 0
