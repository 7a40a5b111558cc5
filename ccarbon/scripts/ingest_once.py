#!/usr/bin/env python3
"""Run one ingestion pass over the Claude CLI logs and print token totals.

Usage:
  python -m ccarbon.scripts.ingest_once
  python -m ccarbon.scripts.ingest_once --projects-dir ~/.claude/projects --db /tmp/ccarbon.db
  python -m ccarbon.scripts.ingest_once --no-history
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from ccarbon import config
from ccarbon.date_utils import period_start, utc_now
from ccarbon.db import connection, migrations
from ccarbon.db.factory import get_usage_repository
from ccarbon.monitor import UsageMonitor


async def _print_totals(db) -> None:
    repo = get_usage_repository(db)
    now = utc_now()
    for period in ("today", "week", "all"):
        since = period_start(period, now)
        totals = await repo.get_totals(since)
        print(
            f"{period}: sessions={totals['session_count']} "
            f"input={totals['input_tokens']} output={totals['output_tokens']} "
            f"total={totals['total_tokens']}"
        )
        for row in await repo.get_model_totals(since):
            print(f"  {row['model']}: input={row['input_tokens']} output={row['output_tokens']}")


async def _run(projects_dir: Path, history_path: Path | None, db_path: Path) -> int:
    db = await connection.get_connection(db_path)
    await migrations.run_migrations(db)

    monitor = UsageMonitor(
        db,
        projects_dir=projects_dir,
        history_path=history_path,
        history_enabled=history_path is not None,
    )
    monitor.wire()
    try:
        stats = await monitor.sync_once()
    finally:
        await monitor.stop()

    print(
        f"files={stats['files']} lines={stats['lines']} "
        f"applied={stats['applied']} failed={stats['failed']}"
    )
    await _print_totals(db)
    await connection.close_connection()
    return 0 if stats["failed"] == 0 else 1


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--projects-dir", default=str(config.PROJECTS_DIR), help="Root directory of per-project session logs")
    parser.add_argument("--history", default=str(config.HISTORY_PATH), help="Path to the prompt history log")
    parser.add_argument("--no-history", action="store_true", help="Skip the prompt history log")
    parser.add_argument("--db", default=str(config.DB_PATH), help="SQLite database path")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    history = None if args.no_history or not config.HISTORY_ENABLED else Path(args.history).expanduser()
    return asyncio.run(_run(Path(args.projects_dir).expanduser(), history, Path(args.db).expanduser()))


if __name__ == "__main__":
    raise SystemExit(main())
