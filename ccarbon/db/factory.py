"""Repository factory keyed on the connection type."""
from __future__ import annotations

from typing import Any

import aiosqlite

from ccarbon.db.repositories.sessions import SqliteSessionRepository
from ccarbon.db.repositories.offsets import SqliteFileOffsetRepository
from ccarbon.db.repositories.usage import SqliteUsageRepository


def _require_sqlite(db: Any) -> aiosqlite.Connection:
    if isinstance(db, aiosqlite.Connection):
        return db
    raise TypeError(f"Unsupported database connection type: {type(db)!r}")


def get_session_repository(db: Any) -> SqliteSessionRepository:
    return SqliteSessionRepository(_require_sqlite(db))


def get_offset_repository(db: Any) -> SqliteFileOffsetRepository:
    return SqliteFileOffsetRepository(_require_sqlite(db))


def get_usage_repository(db: Any) -> SqliteUsageRepository:
    return SqliteUsageRepository(_require_sqlite(db))
