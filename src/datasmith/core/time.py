from __future__ import annotations

from datetime import datetime, timedelta, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso() -> str:
    """Return an RFC 3339/ISO timestamp in UTC with millisecond precision."""
    return now_utc().isoformat(timespec="milliseconds")


def utc_iso_after(seconds: float) -> str:
    return (now_utc() + timedelta(seconds=seconds)).isoformat(timespec="milliseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def seconds_since(value: str) -> float:
    return (now_utc() - parse_iso(value)).total_seconds()
