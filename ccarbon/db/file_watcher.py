"""Directory watcher using watchfiles.

Watches the root "projects" directory, discovers project subdirectories and
session JSONL files, and keeps exactly one TailReader per tailable file.
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import aclosing
from pathlib import Path
from typing import Optional

import aiosqlite
from watchfiles import Change, awatch

from ccarbon import config
from ccarbon.db.repositories.offsets import SqliteFileOffsetRepository
from ccarbon.db.tail_reader import TailReader
from ccarbon.events import EventBus

logger = logging.getLogger("ccarbon.watcher")

SESSION_SUFFIX = ".jsonl"
# Sub-agent transcripts carry their parent's session id.
AGENT_PREFIX = "agent-"


def is_tailable(name: str) -> bool:
    return name.endswith(SESSION_SUFFIX) and not name.startswith(AGENT_PREFIX)


class DirectoryWatcher:
    """Background watcher that creates and retires tail readers.

    Rescans are idempotent: repeating one with nothing new on disk changes
    nothing.
    """

    def __init__(
        self,
        projects_dir: Path,
        offsets: SqliteFileOffsetRepository,
        bus: EventBus,
        *,
        tick_seconds: Optional[float] = None,
        debounce_ms: Optional[int] = None,
    ):
        self.projects_dir = Path(projects_dir)
        self.offsets = offsets
        self.bus = bus
        self.tick_seconds = config.RESCAN_INTERVAL_SECONDS if tick_seconds is None else tick_seconds
        self.debounce_ms = config.WATCH_DEBOUNCE_MS if debounce_ms is None else debounce_ms

        self.readers: dict[str, TailReader] = {}
        # Resolved path -> reader key, for matching paths reported by the watch.
        self._resolved: dict[str, str] = {}
        self.watched_dirs: set[str] = set()
        self._running = False
        self._root_missing_logged = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Discovery ──────────────────────────────────────────────────

    async def rescan(self) -> list[TailReader]:
        """Sync watched directories and readers with what is on disk.

        Returns the readers created by this pass.
        """
        if not self.projects_dir.is_dir():
            if not self._root_missing_logged:
                logger.warning(f"Projects directory not found at {self.projects_dir}; will retry")
                self._root_missing_logged = True
            await self._retire_missing()
            return []
        self._root_missing_logged = False

        created: list[TailReader] = []
        try:
            children = sorted(self.projects_dir.iterdir())
        except OSError as e:
            logger.warning(f"Cannot list {self.projects_dir}: {e}")
            return created

        for child in children:
            if not child.is_dir():
                continue
            key = str(child)
            if key not in self.watched_dirs:
                self.watched_dirs.add(key)
                logger.info(f"Watching project directory {child}")
            created.extend(self._scan_project_dir(child))

        await self._retire_missing()
        return created

    def _scan_project_dir(self, project_dir: Path) -> list[TailReader]:
        created: list[TailReader] = []
        try:
            entries = sorted(project_dir.iterdir())
        except OSError as e:
            logger.warning(f"Cannot list {project_dir}: {e}")
            return created

        for entry in entries:
            key = str(entry)
            if key in self.readers or not is_tailable(entry.name) or not entry.is_file():
                continue
            reader = TailReader(
                entry,
                self.offsets,
                self.bus,
                "session",
                tick_seconds=self.tick_seconds,
                debounce_ms=self.debounce_ms,
                on_finished=self._reader_finished,
            )
            self.readers[key] = reader
            self._resolved[os.path.realpath(key)] = key
            created.append(reader)
            logger.info(f"Tailing {entry}")
            if self._running:
                reader.start()
        return created

    async def _retire_missing(self) -> None:
        for key in [k for k in self.watched_dirs if not os.path.isdir(k)]:
            self.watched_dirs.discard(key)
            logger.info(f"Project directory {key} disappeared")

        for key, reader in list(self.readers.items()):
            if reader.finished:
                self._forget(key)
                continue
            if os.path.exists(key):
                continue
            # One last poll records the deletion and drops the offset row.
            await reader.poll()
            await reader.stop()
            self._forget(key)

    def _reader_finished(self, reader: TailReader) -> None:
        if self.readers.get(reader.key) is reader:
            self._forget(reader.key)

    def _forget(self, key: str) -> None:
        self.readers.pop(key, None)
        for resolved in [r for r, k in self._resolved.items() if k == key]:
            del self._resolved[resolved]

    def _reader_for(self, path_str: str) -> Optional[TailReader]:
        reader = self.readers.get(path_str)
        if reader is None:
            key = self._resolved.get(os.path.realpath(path_str))
            reader = self.readers.get(key) if key else None
        return reader

    def dispatch(self, changes: set[tuple[Change, str]]) -> int:
        """Wake the reader of every changed session file; returns how many were woken."""
        woken = 0
        for change_type, path_str in changes:
            if change_type == Change.deleted or not is_tailable(os.path.basename(path_str)):
                continue
            reader = self._reader_for(path_str)
            if reader is not None:
                reader.notify()
                woken += 1
        return woken

    async def poll_all(self) -> int:
        """Trigger every reader once, in path order; returns lines forwarded."""
        total = 0
        for key in sorted(self.readers):
            reader = self.readers.get(key)
            if reader is not None:
                total += await reader.poll()
        return total

    async def cleanup_orphaned_offsets(self) -> int:
        """Delete offset rows whose files no longer exist."""
        removed = 0
        try:
            for path in await self.offsets.list_paths():
                if not os.path.exists(path):
                    await self.offsets.delete_offset(path)
                    removed += 1
        except aiosqlite.Error as e:
            logger.error(f"Failed to clean up orphaned offsets: {e}")
        if removed:
            logger.info(f"Cleaned up {removed} orphaned offset entries")
        return removed

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start watching in a background task."""
        if self._running:
            logger.warning("Directory watcher already running")
            return

        self._running = True
        self._stop_event.clear()
        for reader in self.readers.values():
            reader.start()
        self._task = asyncio.create_task(self._watch_loop(), name="watch:projects")
        logger.info(f"Directory watcher started for {self.projects_dir}")

    async def stop(self) -> None:
        """Stop the watcher and every reader it owns."""
        self._running = False
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        readers = list(self.readers.values())
        self.readers.clear()
        self._resolved.clear()
        self.watched_dirs.clear()
        await asyncio.gather(*(reader.stop() for reader in readers))
        logger.info("Directory watcher stopped")

    async def _sleep_tick(self) -> None:
        delay = self.tick_seconds if self.tick_seconds > 0 else 1.0
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _watch_loop(self) -> None:
        """One recursive watch over the root.

        Structural changes and ticks trigger a rescan; every changed session
        file wakes its reader.
        """
        watch_kwargs: dict = {"stop_event": self._stop_event, "debounce": self.debounce_ms}
        if self.tick_seconds > 0:
            watch_kwargs.update(rust_timeout=int(self.tick_seconds * 1000), yield_on_timeout=True)

        try:
            while self._running:
                await self.rescan()
                if not self.projects_dir.is_dir():
                    await self._sleep_tick()
                    continue
                try:
                    async with aclosing(awatch(self.projects_dir, **watch_kwargs)) as changes_iter:
                        async for changes in changes_iter:
                            if not self._running:
                                break
                            if not changes or self._is_structural(changes):
                                await self.rescan()
                            if changes:
                                self.dispatch(changes)
                            if not self.projects_dir.is_dir():
                                break
                except (OSError, RuntimeError) as e:
                    logger.warning(f"Watch on {self.projects_dir} failed ({e}); relying on the periodic tick")
                    await self._sleep_tick()
        except asyncio.CancelledError:
            logger.info("Directory watcher task cancelled")
        except Exception as e:
            logger.error(f"Directory watcher error: {e}")
        finally:
            self._running = False

    def _is_structural(self, changes: set[tuple[Change, str]]) -> bool:
        """True when an entry was added or removed, or a directory changed."""
        for change_type, path_str in changes:
            if change_type in (Change.added, Change.deleted):
                return True
            if os.path.isdir(path_str):
                return True
        return False
