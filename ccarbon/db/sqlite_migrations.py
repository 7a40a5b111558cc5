"""Database schema creation and versioning.

All CREATE TABLE statements for the usage store. Uses IF NOT EXISTS for
idempotent runs; upgrades of older databases are additive (new columns,
renamed columns) so previously persisted sessions and offsets stay readable.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("ccarbon.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sessions (running token totals per external session id) ────
CREATE TABLE IF NOT EXISTS sessions (
    session_id         TEXT PRIMARY KEY,
    project_path       TEXT,
    start_time         REAL NOT NULL,
    last_activity_time REAL NOT NULL,
    input_tokens       INTEGER NOT NULL DEFAULT 0,
    output_tokens      INTEGER NOT NULL DEFAULT 0,
    model_name         TEXT NOT NULL DEFAULT 'sonnet',
    actual_model       TEXT,
    created_at         TEXT,
    updated_at         TEXT
);

-- ── 2. Tail offsets (last byte read per JSONL file) ───────────────
CREATE TABLE IF NOT EXISTS jsonl_offsets (
    file_path   TEXT PRIMARY KEY,
    last_offset INTEGER NOT NULL DEFAULT 0
);
"""


async def _table_exists(db: aiosqlite.Connection, table: str) -> bool:
    async with db.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ) as cur:
        return await cur.fetchone() is not None


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    logger.info(f"Adding column {table}.{column}")
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _rename_column(db: aiosqlite.Connection, table: str, old: str, new: str) -> None:
    if not await _column_exists(db, table, old):
        return
    if await _column_exists(db, table, new):
        logger.warning(f"Both {table}.{old} and {table}.{new} exist; leaving {old} in place")
        return
    logger.info(f"Renaming column {table}.{old} -> {new}")
    await db.execute(f"ALTER TABLE {table} RENAME COLUMN {old} TO {new}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def current_version(db: aiosqlite.Connection) -> int:
    if not await _table_exists(db, "schema_version"):
        return 0
    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
    return row[0] if row and row[0] else 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and upgrade older layouts. Idempotent."""
    version = await current_version(db)
    if version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {version})")
        return

    logger.info(f"Running migrations: {version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Explicit table upgrades for existing DBs.
    await _rename_column(db, "sessions", "estimated_output_tokens", "output_tokens")
    await _ensure_column(db, "sessions", "output_tokens", "INTEGER NOT NULL DEFAULT 0")
    await _ensure_column(db, "sessions", "project_path", "TEXT")
    await _ensure_column(db, "sessions", "actual_model", "TEXT")
    await _ensure_column(db, "sessions", "created_at", "TEXT")
    await _ensure_column(db, "sessions", "updated_at", "TEXT")
    await _ensure_column(db, "jsonl_offsets", "updated_at", "TEXT")

    await _ensure_index(
        db,
        "CREATE INDEX IF NOT EXISTS idx_sessions_last_activity ON sessions(last_activity_time)",
    )
    # Older layouts keyed rows by a surrogate id; upserts need session_id unique.
    await _ensure_index(
        db,
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_session_id ON sessions(session_id)",
    )

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete: schema version {SCHEMA_VERSION}")
