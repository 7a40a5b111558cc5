"""Shared timestamp parsing and calendar bucketing helpers."""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any

PERIODS = ("today", "week", "days", "all")
WEEK_DAYS = 7


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (fractional seconds and `Z` allowed) to UTC."""
    if not isinstance(value, str):
        return None
    token = value.strip()
    if not token:
        return None
    if token.endswith(("Z", "z")):
        token = token[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(token))
    except ValueError:
        return None


def epoch_ms_to_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    try:
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_epoch(value: datetime) -> float:
    return _as_utc(value).timestamp()


def from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def local_datetime(value: datetime | float) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value).astimezone()
    return datetime.fromtimestamp(float(value)).astimezone()


def start_of_local_day(now: datetime | None = None) -> datetime:
    local = local_datetime(now or utc_now())
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def local_day_key(value: datetime | float) -> str:
    return local_datetime(value).date().isoformat()


def local_hour_start(value: datetime | float) -> datetime:
    return local_datetime(value).replace(minute=0, second=0, microsecond=0)


def period_start(period: str, now: datetime | None = None, days: int | None = None) -> datetime | None:
    """Lower bound for a rollup period, or None for all-time.

    `week` is the start of today minus seven days; `days` is the start of
    today minus `days` days (0 is today only).
    """
    token = (period or "").strip().lower()
    if token not in PERIODS:
        raise ValueError(f"Unknown period: {period!r}")
    if token == "all":
        return None
    today = start_of_local_day(now)
    if token == "today":
        return today
    if token == "week":
        return today - timedelta(days=WEEK_DAYS)
    return today - timedelta(days=max(0, int(days or 0)))
