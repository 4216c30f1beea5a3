from __future__ import annotations

import re
from datetime import datetime, timezone

# RFC3339 allows any precision up to nanoseconds; fromisoformat wants six digits.
_FRACTION_RE = re.compile(r"\.(\d+)")


def now() -> datetime:
    return datetime.now(timezone.utc).astimezone()


def format_timestamp(ts: datetime) -> str:
    """RFC3339 with microseconds and an explicit offset."""
    return ts.isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO-8601 / RFC3339 timestamp into an aware datetime.

    Accepts a trailing ``Z``, fractional seconds of any length, and naive
    values (interpreted as local time).  Returns None if unparseable.
    """
    text = value.strip()
    if not text:
        return None
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed
