from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


PERIODS = ("day", "week", "month", "quarter", "year")


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive values, other backends aware ones; compare on naive UTC."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    return as_utc_naive(dt)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def period_key(dt: datetime, group_by: str) -> str:
    """
    Bucket label for a timestamp.

    day -> 2026-03-14, week -> 2026-W11 (ISO week), month -> 2026-03,
    quarter -> 2026-Q1, year -> 2026
    """
    dt = as_utc_naive(dt)
    if group_by == "day":
        return dt.strftime("%Y-%m-%d")
    if group_by == "week":
        iso_year, iso_week, _ = dt.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if group_by == "month":
        return dt.strftime("%Y-%m")
    if group_by == "quarter":
        return f"{dt.year}-Q{(dt.month - 1) // 3 + 1}"
    if group_by == "year":
        return str(dt.year)
    raise ValueError(f"Unsupported period: {group_by}")


def previous_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Same-length window ending right where [start, end] begins."""
    span = end - start
    prev_end = start - timedelta(microseconds=1)
    return prev_end - span, prev_end
