"""Database connection factory.

Provides a singleton async connection to SQLite with WAL mode.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import aiosqlite

from ccarbon import config

logger = logging.getLogger("ccarbon.db")

_connection: aiosqlite.Connection | None = None


async def open_connection(path: str | Path) -> aiosqlite.Connection:
    """Open and configure a connection; `:memory:` is accepted for tests."""
    target = str(path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    # WAL lets the query surface read while the reconciler writes
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection(path: Optional[str | Path] = None) -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    db_path = path or config.DB_PATH
    _connection = await open_connection(db_path)
    logger.info(f"Database connection established: {db_path}")
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")


def is_connected() -> bool:
    return _connection is not None
