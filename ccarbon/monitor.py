"""Wiring and lifecycle for the log-ingestion pipeline.

Startup is two-phase. `wire()` builds every component and subscribes the
reconciler to the event bus; `start()` then begins file I/O. Readers replay
their backlog as soon as they start, so the subscription has to exist first.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from ccarbon import config
from ccarbon.db.factory import get_offset_repository, get_session_repository
from ccarbon.db.file_watcher import DirectoryWatcher
from ccarbon.db.reconciler import SessionReconciler
from ccarbon.db.tail_reader import TailReader
from ccarbon.events import EventBus
from ccarbon.models import MonitorStatus

logger = logging.getLogger("ccarbon")

_DRAIN_TIMEOUT_SECONDS = 5.0


class UsageMonitor:
    def __init__(
        self,
        db: Any,
        projects_dir: Optional[Path] = None,
        history_path: Optional[Path] = None,
        *,
        history_enabled: Optional[bool] = None,
        tick_seconds: Optional[float] = None,
        debounce_ms: Optional[int] = None,
        queue_size: Optional[int] = None,
        default_model: Optional[str] = None,
    ):
        self.db = db
        self.projects_dir = Path(projects_dir or config.PROJECTS_DIR)
        enabled = config.HISTORY_ENABLED if history_enabled is None else history_enabled
        self.history_path = Path(history_path or config.HISTORY_PATH) if enabled else None
        self.tick_seconds = tick_seconds
        self.debounce_ms = debounce_ms
        self.queue_size = queue_size
        self.default_model = default_model

        self.bus: Optional[EventBus] = None
        self.reconciler: Optional[SessionReconciler] = None
        self.directory_watcher: Optional[DirectoryWatcher] = None
        self.history_reader: Optional[TailReader] = None
        self._running = False

    @property
    def is_wired(self) -> bool:
        return self.reconciler is not None and self.reconciler.is_attached

    @property
    def is_running(self) -> bool:
        return self._running

    def wire(self) -> None:
        """Phase one: build components and subscribe the reconciler. No I/O."""
        if self.is_wired:
            return
        self.bus = EventBus(self.queue_size)
        offsets = get_offset_repository(self.db)
        self.reconciler = SessionReconciler(get_session_repository(self.db), self.default_model)
        self.reconciler.attach(self.bus)

        self.directory_watcher = DirectoryWatcher(
            self.projects_dir,
            offsets,
            self.bus,
            tick_seconds=self.tick_seconds,
            debounce_ms=self.debounce_ms,
        )
        if self.history_path is not None:
            self.history_reader = TailReader(
                self.history_path,
                offsets,
                self.bus,
                "history",
                stop_on_delete=False,
                watch_parent=True,
                tick_seconds=self.tick_seconds,
                debounce_ms=self.debounce_ms,
            )
        logger.info("Usage monitor wired")

    async def start(self) -> None:
        """Phase two: start the consumer, then every watcher and reader."""
        if not self.is_wired:
            raise RuntimeError("UsageMonitor.start() called before wire()")
        if self._running:
            return
        assert self.reconciler and self.directory_watcher

        self.reconciler.start()
        await self.directory_watcher.cleanup_orphaned_offsets()
        await self.directory_watcher.start()
        if self.history_reader is not None:
            self.history_reader.start()
        self._running = True
        logger.info(f"Usage monitor started (projects: {self.projects_dir}, history: {self.history_path})")

    async def stop(self) -> None:
        """Cancel watches and readers, apply what is already queued, stop the consumer."""
        if self.directory_watcher is not None:
            await self.directory_watcher.stop()
        if self.history_reader is not None:
            await self.history_reader.stop()
        if self.reconciler is not None:
            if self.reconciler.is_running:
                try:
                    await asyncio.wait_for(self.reconciler.drain(), timeout=_DRAIN_TIMEOUT_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning("Timed out applying queued events during shutdown")
            await self.reconciler.stop()
        self._running = False
        logger.info("Usage monitor stopped")

    async def sync_once(self) -> dict:
        """Rescan, trigger every reader once and wait until events are applied."""
        if not self.is_wired:
            raise RuntimeError("UsageMonitor.sync_once() called before wire()")
        assert self.reconciler and self.directory_watcher

        self.reconciler.start()
        created = await self.directory_watcher.rescan()
        lines = await self.directory_watcher.poll_all()
        if self.history_reader is not None:
            lines += await self.history_reader.poll()
        await self.reconciler.drain()
        return {
            "files": len(self.directory_watcher.readers),
            "new_files": len(created),
            "lines": lines,
            "applied": self.reconciler.applied_count,
            "failed": self.reconciler.failed_count,
        }

    def status(self) -> MonitorStatus:
        watcher = self.directory_watcher
        return MonitorStatus(
            running=self._running,
            projectsDir=str(self.projects_dir),
            projectsDirExists=self.projects_dir.is_dir(),
            historyPath=str(self.history_path) if self.history_path else None,
            watchedDirectories=len(watcher.watched_dirs) if watcher else 0,
            tailedFiles=len(watcher.readers) if watcher else 0,
            droppedEvents=self.bus.dropped_count if self.bus else 0,
        )
