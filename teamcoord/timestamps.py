"""Timestamp helpers. All persisted timestamps are ISO-8601 in UTC."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso(now: Optional[datetime] = None) -> str:
    return (now or utc_now()).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO timestamp, accepting a trailing 'Z'.

    Naive timestamps are assumed to be UTC. Returns None for missing or
    unparseable values.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def elapsed_ms(start: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """Milliseconds elapsed since an ISO timestamp, or None if it cannot be parsed."""
    started = parse_timestamp(start)
    if started is None:
        return None
    return int(((now or utc_now()) - started).total_seconds() * 1000)
