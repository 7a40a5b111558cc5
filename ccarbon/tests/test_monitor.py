import asyncio
import json
import os
import tempfile
import unittest
from pathlib import Path

import aiosqlite

from ccarbon.db.repositories.offsets import SqliteFileOffsetRepository
from ccarbon.db.repositories.sessions import SqliteSessionRepository
from ccarbon.db.sqlite_migrations import run_migrations
from ccarbon.monitor import UsageMonitor


def _assistant(session_id: str, input_tokens: int, output_tokens: int) -> str:
    return json.dumps(
        {
            "type": "assistant",
            "sessionId": session_id,
            "timestamp": "2026-03-01T08:00:00Z",
            "cwd": "/work/app",
            "message": {"model": "claude-sonnet-4-5", "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}},
        }
    )


class UsageMonitorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name)
        self.projects = base / "projects"
        self.history = base / "history.jsonl"
        self.session_file = self.projects / "-work-app" / "S-1.jsonl"
        self.session_file.parent.mkdir(parents=True)
        self.monitor = UsageMonitor(
            self.db,
            projects_dir=self.projects,
            history_path=self.history,
            history_enabled=True,
            tick_seconds=0,
            queue_size=10,
        )
        self.sessions = SqliteSessionRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.monitor.stop()
        self.tmp.cleanup()
        await self.db.close()

    def _append(self, path: Path, *lines: str) -> None:
        with open(path, "a", encoding="utf-8") as fh:
            for line in lines:
                fh.write(line + "\n")

    async def test_sync_once_ingests_each_line_exactly_once(self) -> None:
        self._append(self.session_file, _assistant("S-1", 100, 50), _assistant("S-1", 20, 5))
        self._append(self.history, json.dumps({"display": "go", "timestamp": 1772352000000, "sessionId": "S-2"}))
        self.monitor.wire()

        stats = await self.monitor.sync_once()
        self.assertEqual(stats["files"], 1)
        self.assertEqual(stats["lines"], 3)

        row = await self.sessions.get_by_id("S-1")
        self.assertEqual((row["input_tokens"], row["output_tokens"]), (120, 55))
        self.assertEqual(row["project_path"], "/work/app")
        self.assertIsNotNone(await self.sessions.get_by_id("S-2"))

        stats = await self.monitor.sync_once()
        self.assertEqual(stats["lines"], 0)
        row = await self.sessions.get_by_id("S-1")
        self.assertEqual((row["input_tokens"], row["output_tokens"]), (120, 55))

        self._append(self.session_file, _assistant("S-1", 1, 1))
        await self.monitor.sync_once()
        row = await self.sessions.get_by_id("S-1")
        self.assertEqual((row["input_tokens"], row["output_tokens"]), (121, 56))

    async def test_start_before_wire_is_rejected(self) -> None:
        with self.assertRaises(RuntimeError):
            await self.monitor.start()
        with self.assertRaises(RuntimeError):
            await self.monitor.sync_once()

    async def test_status_reports_watched_state(self) -> None:
        self._append(self.session_file, _assistant("S-1", 1, 1))
        self.monitor.wire()
        await self.monitor.sync_once()

        status = self.monitor.status()
        self.assertFalse(status.running)
        self.assertTrue(status.projectsDirExists)
        self.assertEqual(status.watchedDirectories, 1)
        self.assertEqual(status.tailedFiles, 1)
        self.assertEqual(status.historyPath, str(self.history))
        self.assertEqual(status.droppedEvents, 0)

    async def test_missing_directories_do_not_fail_sync(self) -> None:
        monitor = UsageMonitor(
            self.db,
            projects_dir=Path(self.tmp.name) / "absent",
            history_path=Path(self.tmp.name) / "absent.jsonl",
            history_enabled=True,
            tick_seconds=0,
        )
        monitor.wire()
        try:
            stats = await monitor.sync_once()
        finally:
            await monitor.stop()
        self.assertEqual(stats["files"], 0)
        self.assertEqual(stats["lines"], 0)


class UsageMonitorLiveTests(unittest.IsolatedAsyncioTestCase):
    """Started monitor driven by filesystem notifications.

    The tick is far longer than any wait below, so every update has to come
    through a watch notification.
    """

    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.tmp = tempfile.TemporaryDirectory()
        self.base = Path(os.path.realpath(self.tmp.name))
        self.projects = self.base / "projects"
        self.projects.mkdir()
        self.history = self.base / "history.jsonl"
        self.monitor = UsageMonitor(
            self.db,
            projects_dir=self.projects,
            history_path=self.history,
            history_enabled=True,
            tick_seconds=60,
            debounce_ms=50,
            queue_size=10,
        )
        self.sessions = SqliteSessionRepository(self.db)
        self.offsets = SqliteFileOffsetRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.monitor.stop()
        self.tmp.cleanup()
        await self.db.close()

    def _append(self, path: Path, *lines: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            for line in lines:
                fh.write(line + "\n")

    async def _totals(self, session_id: str):
        row = await self.sessions.get_by_id(session_id)
        return None if row is None else (row["input_tokens"], row["output_tokens"])

    async def _wait_for(self, check, timeout: float = 10.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await check():
            if loop.time() > deadline:
                self.fail("timed out waiting for the monitor to catch up")
            await asyncio.sleep(0.05)

    async def test_live_updates_are_applied_exactly_once(self) -> None:
        session_file = self.projects / "-work-app" / "S-1.jsonl"
        self._append(session_file, _assistant("S-1", 100, 50), _assistant("S-1", 20, 5))
        self._append(self.history, json.dumps({"display": "go", "timestamp": 1772352000000, "sessionId": "S-2"}))

        self.monitor.wire()
        await self.monitor.start()
        self.assertTrue(self.monitor.is_running)

        async def backlog_applied() -> bool:
            return await self._totals("S-1") == (120, 55) and await self._totals("S-2") is not None

        await self._wait_for(backlog_applied)
        # Let the watches finish arming before touching the tree.
        await asyncio.sleep(0.5)

        staging = self.base / "staging"
        self._append(staging / "session1.jsonl", _assistant("S-9", 7, 3), _assistant("S-9", 3, 2))
        os.rename(staging, self.projects / "proj2")
        self._append(session_file, _assistant("S-1", 1, 1))
        self._append(self.history, json.dumps({"display": "again", "timestamp": 1772352060000, "sessionId": "S-3"}))

        async def live_applied() -> bool:
            return (
                await self._totals("S-1") == (121, 56)
                and await self._totals("S-9") == (10, 5)
                and await self._totals("S-3") is not None
            )

        await self._wait_for(live_applied)
        await asyncio.sleep(0.3)

        self.assertEqual(await self._totals("S-1"), (121, 56))
        self.assertEqual(await self._totals("S-9"), (10, 5))
        self.assertEqual(self.monitor.status().tailedFiles, 2)
        for path in (session_file, self.projects / "proj2" / "session1.jsonl", self.history):
            self.assertEqual(await self.offsets.get_offset(str(path)), os.path.getsize(path))

    async def test_many_files_share_one_watch(self) -> None:
        count = 150
        for i in range(count):
            self._append(self.projects / "-work-app" / f"S-{i:03d}.jsonl", _assistant(f"S-{i:03d}", 1, 1))

        self.monitor.wire()
        await self.monitor.start()

        async def all_ingested() -> bool:
            return await self.sessions.count() == count

        await self._wait_for(all_ingested, timeout=20.0)
        readers = list(self.monitor.directory_watcher.readers.values())
        self.assertEqual(len(readers), count)
        self.assertTrue(all(r.is_running for r in readers))
        await asyncio.sleep(0.5)

        last = f"S-{count - 1:03d}"
        self._append(self.projects / "-work-app" / f"{last}.jsonl", _assistant(last, 100, 50))

        async def last_updated() -> bool:
            return await self._totals(last) == (101, 51)

        await self._wait_for(last_updated)
        self.assertEqual(await self._totals("S-000"), (1, 1))


if __name__ == "__main__":
    unittest.main()
