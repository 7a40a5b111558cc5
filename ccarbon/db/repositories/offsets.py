"""SQLite implementation of the per-file read offset store."""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite


class SqliteFileOffsetRepository:
    """Track the last byte read per JSONL file for crash-safe resumption."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_offset(self, file_path: str) -> int:
        async with self.db.execute(
            "SELECT last_offset FROM jsonl_offsets WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0

    async def set_offset(self, file_path: str, offset: int) -> None:
        await self.db.execute(
            """INSERT INTO jsonl_offsets (file_path, last_offset, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                 last_offset=excluded.last_offset, updated_at=excluded.updated_at""",
            (file_path, max(0, int(offset)), datetime.now(timezone.utc).isoformat()),
        )
        await self.db.commit()

    async def delete_offset(self, file_path: str) -> None:
        await self.db.execute("DELETE FROM jsonl_offsets WHERE file_path = ?", (file_path,))
        await self.db.commit()

    async def list_paths(self) -> list[str]:
        async with self.db.execute("SELECT file_path FROM jsonl_offsets ORDER BY file_path") as cur:
            return [row[0] for row in await cur.fetchall()]
