from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def date_key(dt: Optional[datetime] = None) -> str:
    """YYYYMMDD key for per-day sequences (UTC)."""
    return (dt or utcnow()).strftime("%Y%m%d")


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


TIMEFRAMES = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
    "yearly": timedelta(days=365),
}


def timeframe_start(timeframe: str, now: Optional[datetime] = None) -> datetime:
    """
    Start of a reporting window.

    "daily" starts at midnight UTC today; the others are rolling windows.
    Unknown timeframes fall back to daily.
    """
    now = now or utcnow()
    if timeframe not in TIMEFRAMES or timeframe == "daily":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    return now - TIMEFRAMES[timeframe]
