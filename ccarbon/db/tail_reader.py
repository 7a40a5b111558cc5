"""Incremental reader for one append-only JSONL file.

Each trigger reads only the bytes appended since the persisted offset, moves
the offset to the end of what was read, and forwards every non-blank line to
the line parser. Parsed events are published on the event bus in file order.

Readers do not watch the filesystem themselves. The directory watcher owns a
single recursive watch and calls `notify()` for changed files; the worker
loop polls on each notification and on a periodic safety-net tick.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import aclosing
from pathlib import Path
from typing import Callable, Optional

import aiosqlite
from watchfiles import awatch

from ccarbon import config
from ccarbon.db.repositories.offsets import SqliteFileOffsetRepository
from ccarbon.events import EventBus
from ccarbon.observability import record_decode_failure, record_lines
from ccarbon.parsers.usage_lines import StreamKind, parse_line

logger = logging.getLogger("ccarbon.tail")

# Upper bound for one read; a chunk is cut back to its last newline.
READ_CHUNK_BYTES = 4 * 1024 * 1024


class TailReader:
    """Background worker tailing a single file.

    `poll()` is one trigger and may be called directly; `start()` runs the
    worker loop. With `watch_parent=True` the reader also keeps one
    non-recursive watch on its parent directory, for files that live outside
    any watched tree (the history log).
    """

    def __init__(
        self,
        path: Path,
        offsets: SqliteFileOffsetRepository,
        bus: EventBus,
        stream: StreamKind = "session",
        *,
        stop_on_delete: bool = True,
        watch_parent: bool = False,
        tick_seconds: Optional[float] = None,
        debounce_ms: Optional[int] = None,
        on_finished: Optional[Callable[["TailReader"], None]] = None,
    ):
        self.path = Path(path)
        self.key = str(self.path)
        self.offsets = offsets
        self.bus = bus
        self.stream = stream
        self.stop_on_delete = stop_on_delete
        self.watch_parent = watch_parent
        self.tick_seconds = config.RESCAN_INTERVAL_SECONDS if tick_seconds is None else tick_seconds
        self.debounce_ms = config.WATCH_DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self.on_finished = on_finished

        self.finished = False
        self._missing_logged = False
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── One trigger ────────────────────────────────────────────────

    async def poll(self) -> int:
        """Read newly appended lines; returns how many lines were forwarded."""
        if self.finished:
            return 0
        async with self._lock:
            started = time.monotonic()
            forwarded, events = await self._poll_locked()
            if forwarded:
                record_lines(self.stream, forwarded, events, (time.monotonic() - started) * 1000.0)
            return forwarded

    async def _poll_locked(self) -> tuple[int, int]:
        try:
            size = os.stat(self.path).st_size
        except FileNotFoundError:
            await self._handle_missing()
            return 0, 0
        except OSError as e:
            logger.warning(f"Cannot stat {self.key}: {e}")
            return 0, 0
        self._missing_logged = False

        try:
            offset = await self.offsets.get_offset(self.key)
        except aiosqlite.Error as e:
            logger.error(f"Failed to load offset for {self.key}: {e}")
            return 0, 0

        if size < offset:
            logger.info(f"Truncation detected for {self.key} (offset {offset}, size {size}); resetting")
            try:
                await self.offsets.set_offset(self.key, 0)
            except aiosqlite.Error as e:
                logger.error(f"Failed to reset offset for {self.key}: {e}")
            return 0, 0

        forwarded = 0
        events = 0
        position = offset
        while position < size:
            try:
                data = await asyncio.to_thread(self._read_chunk, position, size)
            except FileNotFoundError:
                await self._handle_missing()
                break
            except OSError as e:
                logger.warning(f"Failed to read {self.key}: {e}")
                break
            if not data:
                break

            end = position + len(data)
            try:
                await self.offsets.set_offset(self.key, end)
            except aiosqlite.Error as e:
                # Offset unchanged: the same chunk is re-read on the next trigger.
                logger.error(f"Failed to persist offset for {self.key}: {e}")
                break

            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError as e:
                logger.warning(f"Skipping undecodable slice of {self.key} at {position}..{end}: {e}")
                record_decode_failure(self.stream)
                position = end
                continue

            for line in text.splitlines():
                stripped = line.strip()
                if not stripped:
                    continue
                forwarded += 1
                event = parse_line(stripped, self.stream)
                if event is None:
                    logger.debug(f"No event in line from {self.key}")
                    continue
                await self.bus.publish(event)
                events += 1
            position = end
        return forwarded, events

    def _read_chunk(self, start: int, end: int) -> bytes:
        """Read whole lines from `start`, never past `end`.

        Later appends wait for the next trigger. A chunk that stops short of
        `end` is cut after its last newline; a single line longer than the
        chunk size is read whole.
        """
        with open(self.path, "rb") as fh:
            fh.seek(start)
            data = fh.read(min(READ_CHUNK_BYTES, end - start))
            while start + len(data) < end:
                cut = data.rfind(b"\n")
                if cut >= 0:
                    return data[: cut + 1]
                more = fh.read(min(READ_CHUNK_BYTES, end - start - len(data)))
                if not more:
                    break
                data += more
            return data

    async def _handle_missing(self) -> None:
        try:
            await self.offsets.delete_offset(self.key)
        except aiosqlite.Error as e:
            logger.error(f"Failed to delete offset for {self.key}: {e}")

        if not self.stop_on_delete:
            if not self._missing_logged:
                logger.info(f"{self.key} does not exist yet; waiting")
                self._missing_logged = True
            return

        logger.info(f"{self.key} was deleted; stopping reader")
        self.finished = True
        self._stop_event.set()
        self._wake.set()
        if self.on_finished:
            self.on_finished(self)

    # ── Worker loop ────────────────────────────────────────────────

    def notify(self) -> None:
        """Ask the worker loop for a poll; cheap and safe to call repeatedly."""
        self._wake.set()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._worker_loop(), name=f"tail:{self.key}")

    async def stop(self) -> None:
        self._stop_event.set()
        self._wake.set()
        task, self._task = self._task, None
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _wait_for_trigger(self) -> None:
        timeout = self.tick_seconds if self.tick_seconds > 0 else None
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _worker_loop(self) -> None:
        parent_watch: Optional[asyncio.Task] = None
        if self.watch_parent:
            parent_watch = asyncio.create_task(self._watch_parent_loop(), name=f"watch:{self.path.parent}")
        try:
            await self.poll()
            while not self._stop_event.is_set() and not self.finished:
                await self._wait_for_trigger()
                if self._stop_event.is_set():
                    break
                await self.poll()
        except asyncio.CancelledError:
            logger.debug(f"Tail reader for {self.key} cancelled")
        except Exception as e:
            logger.error(f"Tail reader for {self.key} failed: {e}")
        finally:
            if parent_watch is not None:
                parent_watch.cancel()
                try:
                    await parent_watch
                except asyncio.CancelledError:
                    pass

    async def _watch_parent_loop(self) -> None:
        parent = self.path.parent
        target = os.path.realpath(self.path)
        watch_kwargs: dict = {"stop_event": self._stop_event, "debounce": self.debounce_ms, "recursive": False}
        while not self._stop_event.is_set():
            if not parent.is_dir():
                await self._sleep_tick()
                continue
            try:
                async with aclosing(awatch(parent, **watch_kwargs)) as changes_iter:
                    async for changes in changes_iter:
                        if any(os.path.realpath(p) == target for _, p in changes):
                            self.notify()
            except (OSError, RuntimeError) as e:
                logger.warning(f"Watch on {parent} failed ({e}); relying on the periodic tick")
                await self._sleep_tick()

    async def _sleep_tick(self) -> None:
        delay = self.tick_seconds if self.tick_seconds > 0 else 1.0
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
