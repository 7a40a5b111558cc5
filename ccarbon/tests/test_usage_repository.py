import unittest
from datetime import datetime, timedelta, timezone

import aiosqlite

from ccarbon.date_utils import local_day_key, period_start, start_of_local_day
from ccarbon.db.repositories.sessions import SqliteSessionRepository
from ccarbon.db.repositories.usage import SqliteUsageRepository
from ccarbon.db.sqlite_migrations import run_migrations

NOW = datetime(2026, 6, 10, 18, 0, tzinfo=timezone.utc)


class UsageRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.sessions = SqliteSessionRepository(self.db)
        self.repo = SqliteUsageRepository(self.db)

        self.today = start_of_local_day(NOW)
        self.today_active = self.today + timedelta(hours=6)
        self.two_days_ago = self.today - timedelta(days=2) + timedelta(hours=6)
        self.last_month = self.today - timedelta(days=20) + timedelta(hours=6)

        await self.sessions.upsert(
            {
                "session_id": "S-today",
                "start_time": self.today_active,
                "last_activity_time": self.today_active + timedelta(seconds=100),
                "input_tokens": 150,
                "output_tokens": 50,
                "actual_model": "claude-opus-4",
            }
        )
        await self.sessions.upsert(
            {
                "session_id": "S-recent",
                "start_time": self.two_days_ago,
                "last_activity_time": self.two_days_ago + timedelta(seconds=40),
                "input_tokens": 30,
                "output_tokens": 10,
                "actual_model": "claude-opus-4",
            }
        )
        await self.sessions.upsert(
            {
                "session_id": "S-old",
                "start_time": self.last_month,
                "last_activity_time": self.last_month,
                "input_tokens": 5,
                "output_tokens": 5,
                "model_name": "sonnet",
            }
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_totals_respect_period_lower_bound(self) -> None:
        today = await self.repo.get_totals(period_start("today", NOW))
        week = await self.repo.get_totals(period_start("week", NOW))
        all_time = await self.repo.get_totals(None)

        self.assertEqual((today["input_tokens"], today["output_tokens"], today["session_count"]), (150, 50, 1))
        self.assertEqual(week["total_tokens"], 240)
        self.assertEqual(week["session_count"], 2)
        self.assertEqual(all_time["total_tokens"], 250)
        self.assertEqual(all_time["session_count"], 3)

    async def test_empty_store_returns_zero_totals(self) -> None:
        await self.db.execute("DELETE FROM sessions")
        totals = await self.repo.get_totals(None)
        self.assertEqual(totals, {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0, "session_count": 0})
        self.assertEqual(await self.repo.get_model_totals(None), [])

    async def test_model_totals_fall_back_to_declared_model(self) -> None:
        rows = await self.repo.get_model_totals(None)

        self.assertEqual([r["model"] for r in rows], ["claude-opus-4", "sonnet"])
        self.assertEqual(rows[0]["total_tokens"], 240)
        self.assertEqual(rows[0]["session_count"], 2)
        self.assertEqual(rows[1]["total_tokens"], 10)

    async def test_daily_usage_zero_fills_bounded_range(self) -> None:
        rows = await self.repo.get_daily_usage(days=2, now=NOW)

        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[0]["date"], local_day_key(self.two_days_ago))
        self.assertEqual(rows[0]["total_tokens"], 40)
        self.assertEqual(rows[1]["total_tokens"], 0)
        self.assertEqual(rows[1]["session_count"], 0)
        self.assertEqual(rows[2]["date"], local_day_key(self.today_active))
        self.assertEqual(rows[2]["total_tokens"], 200)

    async def test_daily_usage_all_time_lists_only_active_days(self) -> None:
        rows = await self.repo.get_daily_usage(days=None, now=NOW)
        self.assertEqual(len(rows), 3)
        self.assertEqual(sum(r["total_tokens"] for r in rows), 250)

    async def test_hourly_usage_has_twenty_four_buckets(self) -> None:
        rows = await self.repo.get_hourly_usage(NOW)

        self.assertEqual(len(rows), 24)
        self.assertEqual(sum(r["total_tokens"] for r in rows), 200)
        busy = [r for r in rows if r["total_tokens"]]
        self.assertEqual(len(busy), 1)
        self.assertEqual(busy[0]["hour"].hour, 6)

    async def test_burn_rate_divides_tokens_by_active_seconds(self) -> None:
        await self.sessions.ensure_session("S-shell", self.today_active)
        rows = await self.repo.get_burn_rate_by_day(days=None, now=NOW)
        by_day = {r["date"]: r for r in rows}

        today = by_day[local_day_key(self.today_active)]
        self.assertEqual(today["total_tokens"], 200)
        self.assertAlmostEqual(today["active_seconds"], 100.0)
        self.assertAlmostEqual(today["tokens_per_second"], 2.0)

        idle = by_day[local_day_key(self.last_month)]
        self.assertEqual(idle["tokens_per_second"], 0.0)


if __name__ == "__main__":
    unittest.main()
