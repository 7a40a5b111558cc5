import asyncio
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from ccarbon.db import tail_reader as tail_reader_module
from ccarbon.db.repositories.offsets import SqliteFileOffsetRepository
from ccarbon.db.sqlite_migrations import run_migrations
from ccarbon.db.tail_reader import TailReader
from ccarbon.events import EventBus


def _usage_line(session_id: str, input_tokens: int, output_tokens: int) -> str:
    return json.dumps(
        {
            "type": "assistant",
            "sessionId": session_id,
            "timestamp": "2026-01-15T10:30:00Z",
            "message": {"model": "claude-sonnet-4", "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}},
        }
    )


class TailReaderTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.offsets = SqliteFileOffsetRepository(self.db)
        self.bus = EventBus(queue_size=100)
        self.sub = self.bus.subscribe("test")
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "S-1.jsonl"
        self.finished = []
        self.reader = TailReader(
            self.path, self.offsets, self.bus, "session", on_finished=self.finished.append
        )

    async def asyncTearDown(self) -> None:
        await self.reader.stop()
        self.tmp.cleanup()
        await self.db.close()

    def _append(self, *lines: str) -> None:
        with open(self.path, "a", encoding="utf-8") as fh:
            for line in lines:
                fh.write(line + "\n")

    async def _drain_events(self) -> list:
        events = []
        while self.sub.pending():
            events.append(await self.sub.get())
            self.sub.task_done()
        return events

    async def test_reads_only_appended_lines(self) -> None:
        self._append(_usage_line("S-1", 100, 50), _usage_line("S-1", 20, 5))
        self.assertEqual(await self.reader.poll(), 2)
        self.assertEqual(await self.offsets.get_offset(str(self.path)), os.path.getsize(self.path))

        self._append(_usage_line("S-1", 7, 3))
        self.assertEqual(await self.reader.poll(), 1)

        events = await self._drain_events()
        self.assertEqual([e.inputTokens for e in events], [100, 20, 7])

    async def test_repeated_poll_without_growth_is_a_no_op(self) -> None:
        self._append(_usage_line("S-1", 1, 1))
        await self.reader.poll()
        self.assertEqual(await self.reader.poll(), 0)
        self.assertEqual(await self.reader.poll(), 0)
        self.assertEqual(len(await self._drain_events()), 1)

    async def test_resumes_from_persisted_offset(self) -> None:
        self._append(_usage_line("S-1", 1, 1))
        await self.reader.poll()
        self._append(_usage_line("S-1", 2, 2))

        restarted = TailReader(self.path, self.offsets, self.bus, "session")
        self.assertEqual(await restarted.poll(), 1)
        events = await self._drain_events()
        self.assertEqual([e.inputTokens for e in events], [1, 2])

    async def test_truncation_resets_offset_then_rereads(self) -> None:
        self._append(_usage_line("S-1", 1, 1), _usage_line("S-1", 2, 2), _usage_line("S-1", 3, 3))
        await self.reader.poll()
        await self._drain_events()

        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write(_usage_line("S-1", 9, 9) + "\n")

        self.assertEqual(await self.reader.poll(), 0)
        self.assertEqual(await self.offsets.get_offset(str(self.path)), 0)
        self.assertEqual(await self.reader.poll(), 1)
        self.assertEqual([e.inputTokens for e in await self._drain_events()], [9])

    async def test_blank_and_invalid_lines_advance_offset_without_events(self) -> None:
        self._append("", "   ", "{not json", json.dumps({"type": "user"}), _usage_line("S-1", 4, 4))

        self.assertEqual(await self.reader.poll(), 3)
        self.assertEqual(await self.offsets.get_offset(str(self.path)), os.path.getsize(self.path))
        self.assertEqual(len(await self._drain_events()), 1)

    async def test_deleted_file_stops_reader_and_drops_offset(self) -> None:
        self._append(_usage_line("S-1", 1, 1))
        await self.reader.poll()
        os.remove(self.path)

        self.assertEqual(await self.reader.poll(), 0)
        self.assertTrue(self.reader.finished)
        self.assertEqual(self.finished, [self.reader])
        self.assertEqual(await self.offsets.list_paths(), [])

    async def test_history_reader_waits_for_missing_file(self) -> None:
        history = TailReader(
            Path(self.tmp.name) / "history.jsonl", self.offsets, self.bus, "history", stop_on_delete=False
        )
        self.assertEqual(await history.poll(), 0)
        self.assertFalse(history.finished)

        with open(history.path, "w", encoding="utf-8") as fh:
            fh.write(json.dumps({"display": "hi", "sessionId": "S-1", "timestamp": 1700000000000}) + "\n")
        self.assertEqual(await history.poll(), 1)
        self.assertEqual((await self._drain_events())[0].kind, "prompt")

    async def test_undecodable_slice_is_skipped(self) -> None:
        with open(self.path, "wb") as fh:
            fh.write(b"\xff\xfe\xfa\n")
        self.assertEqual(await self.reader.poll(), 0)
        self.assertEqual(await self.offsets.get_offset(str(self.path)), os.path.getsize(self.path))

        self._append(_usage_line("S-1", 5, 5))
        self.assertEqual(await self.reader.poll(), 1)

    async def test_offset_write_failure_forwards_nothing_and_retries(self) -> None:
        self._append(_usage_line("S-1", 8, 2))
        with patch.object(self.offsets, "set_offset", side_effect=aiosqlite.OperationalError("database is locked")):
            self.assertEqual(await self.reader.poll(), 0)
        self.assertEqual(self.sub.pending(), 0)
        self.assertEqual(await self.offsets.get_offset(str(self.path)), 0)

        self.assertEqual(await self.reader.poll(), 1)
        self.assertEqual([e.inputTokens for e in await self._drain_events()], [8])

    async def test_backlog_is_read_in_line_aligned_chunks(self) -> None:
        # Usage lines are longer than the chunk size; the user lines are shorter.
        short = json.dumps({"type": "user"})
        self._append(_usage_line("S-1", 1, 1), short, short, _usage_line("S-1", 2, 2), short, _usage_line("S-1", 3, 3))
        size = os.path.getsize(self.path)
        raw = self.path.read_bytes()

        with patch.object(tail_reader_module, "READ_CHUNK_BYTES", 64), patch.object(
            self.offsets, "set_offset", wraps=self.offsets.set_offset
        ) as set_offset:
            self.assertEqual(await self.reader.poll(), 6)

        written = [c.args[1] for c in set_offset.call_args_list]
        self.assertGreater(len(written), 1)
        self.assertEqual(written, sorted(written))
        self.assertEqual(written[-1], size)
        for offset in written:
            self.assertEqual(raw[offset - 1 : offset], b"\n")
        self.assertEqual([e.inputTokens for e in await self._drain_events()], [1, 2, 3])

    async def test_chunk_read_stops_at_requested_end(self) -> None:
        first = _usage_line("S-1", 1, 1) + "\n"
        self._append(first.rstrip("\n"), _usage_line("S-1", 2, 2))
        end = len(first.encode("utf-8"))

        self.assertEqual(self.reader._read_chunk(0, end), first.encode("utf-8"))
        with patch.object(tail_reader_module, "READ_CHUNK_BYTES", 16):
            self.assertEqual(self.reader._read_chunk(0, end), first.encode("utf-8"))

    async def test_notify_wakes_started_worker(self) -> None:
        self.path.touch()
        reader = TailReader(self.path, self.offsets, self.bus, "session", tick_seconds=60)
        reader.start()
        try:
            await asyncio.sleep(0.1)
            self._append(_usage_line("S-1", 6, 1))
            reader.notify()
            for _ in range(100):
                if self.sub.pending():
                    break
                await asyncio.sleep(0.05)
            self.assertEqual([e.inputTokens for e in await self._drain_events()], [6])
            self.assertTrue(reader.is_running)
        finally:
            await reader.stop()
        self.assertFalse(reader.is_running)


if __name__ == "__main__":
    unittest.main()
