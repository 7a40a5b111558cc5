"""SQLite implementation of SessionRepository."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from ccarbon.date_utils import to_epoch

_SESSION_COLUMNS = (
    "session_id, project_path, start_time, last_activity_time, "
    "input_tokens, output_tokens, model_name, actual_model, created_at, updated_at"
)


class SqliteSessionRepository:
    """SQLite-backed session aggregates keyed by external session id.

    Every write is a single statement followed by a commit, so concurrent
    writers for one session id are serialized by SQLite itself.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def ensure_session(
        self,
        session_id: str,
        started_at: datetime,
        project_path: Optional[str] = None,
        model_name: str = "sonnet",
    ) -> None:
        """Create a zero-token session shell unless the id already exists.

        Existing rows keep their counters and times; only a missing project
        path is filled in.
        """
        now = datetime.now(timezone.utc).isoformat()
        ts = to_epoch(started_at)
        await self.db.execute(
            """INSERT INTO sessions (
                session_id, project_path, start_time, last_activity_time,
                input_tokens, output_tokens, model_name, actual_model,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, 0, 0, ?, NULL, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                project_path=COALESCE(sessions.project_path, excluded.project_path)
            """,
            (session_id, project_path, ts, ts, model_name, now, now),
        )
        await self.db.commit()

    async def add_usage(
        self,
        session_id: str,
        input_tokens: int,
        output_tokens: int,
        model: str,
        timestamp: datetime,
        project_path: Optional[str] = None,
        model_name: str = "sonnet",
    ) -> None:
        """Add a usage delta to a session, creating it if absent.

        Counters only grow; the start time moves earlier for older events and
        the last-activity time never moves backwards.
        """
        now = datetime.now(timezone.utc).isoformat()
        ts = to_epoch(timestamp)
        await self.db.execute(
            """INSERT INTO sessions (
                session_id, project_path, start_time, last_activity_time,
                input_tokens, output_tokens, model_name, actual_model,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                input_tokens=sessions.input_tokens + excluded.input_tokens,
                output_tokens=sessions.output_tokens + excluded.output_tokens,
                actual_model=excluded.actual_model,
                start_time=MIN(sessions.start_time, excluded.start_time),
                last_activity_time=MAX(sessions.last_activity_time, excluded.last_activity_time),
                project_path=COALESCE(sessions.project_path, excluded.project_path),
                updated_at=excluded.updated_at
            """,
            (
                session_id, project_path, ts, ts,
                max(0, int(input_tokens)), max(0, int(output_tokens)),
                model_name, model, now, now,
            ),
        )
        await self.db.commit()

    async def upsert(self, session_data: dict) -> None:
        """Write a full session row, replacing counters. Used by tooling and tests."""
        now = datetime.now(timezone.utc).isoformat()
        start = session_data["start_time"]
        last = session_data.get("last_activity_time", start)
        await self.db.execute(
            """INSERT INTO sessions (
                session_id, project_path, start_time, last_activity_time,
                input_tokens, output_tokens, model_name, actual_model,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                project_path=excluded.project_path,
                start_time=excluded.start_time,
                last_activity_time=excluded.last_activity_time,
                input_tokens=excluded.input_tokens,
                output_tokens=excluded.output_tokens,
                model_name=excluded.model_name,
                actual_model=excluded.actual_model,
                updated_at=excluded.updated_at
            """,
            (
                session_data["session_id"],
                session_data.get("project_path"),
                to_epoch(start) if isinstance(start, datetime) else float(start),
                to_epoch(last) if isinstance(last, datetime) else float(last),
                session_data.get("input_tokens", 0),
                session_data.get("output_tokens", 0),
                session_data.get("model_name", "sonnet"),
                session_data.get("actual_model"),
                now, now,
            ),
        )
        await self.db.commit()

    async def list_recent(self, limit: int = 50, offset: int = 0) -> list[dict]:
        async with self.db.execute(
            f"""SELECT {_SESSION_COLUMNS} FROM sessions
                ORDER BY last_activity_time DESC LIMIT ? OFFSET ?""",
            (max(0, int(limit)), max(0, int(offset))),
        ) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM sessions") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
