from __future__ import annotations

import datetime as dt

LIKE_ESCAPE = "\\"


def format_iso8601(value: dt.datetime) -> str:
    # Fixed-width microsecond timestamps keep SQL string comparison chronological.
    return value.astimezone(dt.UTC).isoformat(timespec="microseconds")


def now_iso() -> str:
    return format_iso8601(dt.datetime.now(dt.UTC))


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def advance_iso(previous: str | None) -> str:
    """Current time, or one microsecond past ``previous`` if the clock has not moved."""
    now = dt.datetime.now(dt.UTC)
    last = parse_iso8601(previous) if previous else None
    if last is not None and now <= last:
        now = last + dt.timedelta(microseconds=1)
    return format_iso8601(now)


def cutoff_iso(days: int) -> str:
    return format_iso8601(dt.datetime.now(dt.UTC) - dt.timedelta(days=days))


def escape_like(value: str) -> str:
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
