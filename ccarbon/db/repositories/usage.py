"""SQLite aggregate queries over session token totals.

Rollups filter and bucket sessions by their last-activity time: a session
counts toward the local calendar day (or hour) in which it was last active.
Only raw token counts are returned; energy and carbon figures are derived
by consumers.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Optional

import aiosqlite

from ccarbon.date_utils import (
    local_day_key,
    local_hour_start,
    period_start,
    start_of_local_day,
    to_epoch,
    utc_now,
)


def _since_clause(since: Optional[datetime]) -> tuple[str, list[Any]]:
    if since is None:
        return "", []
    return " WHERE last_activity_time >= ?", [to_epoch(since)]


class SqliteUsageRepository:
    """Read-only rollups for the query surface."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_totals(self, since: Optional[datetime] = None) -> dict:
        where, params = _since_clause(since)
        async with self.db.execute(
            f"""SELECT
                    COALESCE(SUM(input_tokens), 0) AS input_tokens,
                    COALESCE(SUM(output_tokens), 0) AS output_tokens,
                    COUNT(*) AS session_count
                FROM sessions{where}""",
            params,
        ) as cur:
            row = await cur.fetchone()
        input_tokens = int(row["input_tokens"]) if row else 0
        output_tokens = int(row["output_tokens"]) if row else 0
        return {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "session_count": int(row["session_count"]) if row else 0,
        }

    async def get_model_totals(self, since: Optional[datetime] = None) -> list[dict]:
        """Token sums grouped by observed model (declared model as fallback)."""
        where, params = _since_clause(since)
        async with self.db.execute(
            f"""SELECT
                    COALESCE(actual_model, model_name) AS model,
                    COALESCE(SUM(input_tokens), 0) AS input_tokens,
                    COALESCE(SUM(output_tokens), 0) AS output_tokens,
                    COUNT(*) AS session_count
                FROM sessions{where}
                GROUP BY COALESCE(actual_model, model_name)
                ORDER BY SUM(input_tokens + output_tokens) DESC, model ASC""",
            params,
        ) as cur:
            rows = await cur.fetchall()
        return [
            {
                "model": row["model"],
                "input_tokens": int(row["input_tokens"]),
                "output_tokens": int(row["output_tokens"]),
                "total_tokens": int(row["input_tokens"]) + int(row["output_tokens"]),
                "session_count": int(row["session_count"]),
            }
            for row in rows
        ]

    async def _activity_rows(self, since: Optional[datetime]) -> list[aiosqlite.Row]:
        where, params = _since_clause(since)
        async with self.db.execute(
            f"""SELECT start_time, last_activity_time, input_tokens, output_tokens
                FROM sessions{where}
                ORDER BY last_activity_time ASC""",
            params,
        ) as cur:
            return list(await cur.fetchall())

    async def get_daily_usage(self, days: Optional[int] = None, now: Optional[datetime] = None) -> list[dict]:
        """Per-day totals; `days=None` is all-time, 0 is today only.

        Bounded ranges include zero-filled days so charts keep their x-axis.
        """
        now = now or utc_now()
        since = None if days is None else period_start("days", now, days)
        buckets: dict[str, dict] = {}

        if since is not None:
            cursor_day = since.date()
            today = start_of_local_day(now).date()
            while cursor_day <= today:
                key = cursor_day.isoformat()
                buckets[key] = {"date": key, "input_tokens": 0, "output_tokens": 0, "session_count": 0}
                cursor_day += timedelta(days=1)

        for row in await self._activity_rows(since):
            key = local_day_key(row["last_activity_time"])
            bucket = buckets.setdefault(
                key, {"date": key, "input_tokens": 0, "output_tokens": 0, "session_count": 0}
            )
            bucket["input_tokens"] += int(row["input_tokens"])
            bucket["output_tokens"] += int(row["output_tokens"])
            bucket["session_count"] += 1

        result = []
        for key in sorted(buckets):
            bucket = buckets[key]
            bucket["total_tokens"] = bucket["input_tokens"] + bucket["output_tokens"]
            result.append(bucket)
        return result

    async def get_hourly_usage(self, day: Optional[datetime] = None) -> list[dict]:
        """Twenty-four hourly buckets for one local day (today by default)."""
        day_start = start_of_local_day(day or utc_now())
        day_end = day_start + timedelta(days=1)
        hours = [day_start + timedelta(hours=offset) for offset in range(24)]
        buckets = {
            hour.hour: {"hour": hour, "input_tokens": 0, "output_tokens": 0}
            for hour in hours
        }

        async with self.db.execute(
            """SELECT last_activity_time, input_tokens, output_tokens
               FROM sessions
               WHERE last_activity_time >= ? AND last_activity_time < ?""",
            (to_epoch(day_start), to_epoch(day_end)),
        ) as cur:
            rows = await cur.fetchall()

        for row in rows:
            bucket = buckets.get(local_hour_start(row["last_activity_time"]).hour)
            if bucket is None:
                continue
            bucket["input_tokens"] += int(row["input_tokens"])
            bucket["output_tokens"] += int(row["output_tokens"])

        result = []
        for hour in sorted(buckets):
            bucket = buckets[hour]
            bucket["total_tokens"] = bucket["input_tokens"] + bucket["output_tokens"]
            result.append(bucket)
        return result

    async def get_burn_rate_by_day(self, days: Optional[int] = None, now: Optional[datetime] = None) -> list[dict]:
        """Tokens per active second for each day with recorded activity."""
        now = now or utc_now()
        since = None if days is None else period_start("days", now, days)
        tokens: dict[str, int] = defaultdict(int)
        seconds: dict[str, float] = defaultdict(float)

        for row in await self._activity_rows(since):
            key = local_day_key(row["last_activity_time"])
            tokens[key] += int(row["input_tokens"]) + int(row["output_tokens"])
            seconds[key] += max(0.0, float(row["last_activity_time"]) - float(row["start_time"]))

        result = []
        for key in sorted(tokens):
            active = seconds[key]
            result.append(
                {
                    "date": key,
                    "total_tokens": tokens[key],
                    "active_seconds": active,
                    "tokens_per_second": tokens[key] / active if active > 0 else 0.0,
                }
            )
        return result
