"""SQLite key/value table backing SqliteStore."""

from __future__ import annotations

import time

import aiosqlite

SCHEMA_VERSION = 1

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- One row per persisted record: the task queue snapshot, each upload queue
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,  -- JSON
    updated_at REAL NOT NULL
);

INSERT OR IGNORE INTO schema_version (version) VALUES ({SCHEMA_VERSION});
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """
    Open ``db_path`` (or ":memory:") and make sure the kv table exists.

    The schema statements are idempotent, so reopening an existing file
    leaves its rows untouched.
    """
    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.executescript(SCHEMA)
    await conn.commit()
    return conn


async def get_value(conn: aiosqlite.Connection, key: str) -> str | None:
    async with conn.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
        row = await cursor.fetchone()
    return None if row is None else row["value"]


async def set_value(conn: aiosqlite.Connection, key: str, value: str) -> None:
    """Upsert ``key`` and stamp it with the current time."""
    await conn.execute(
        "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
        (key, value, time.time()),
    )
    await conn.commit()


async def delete_value(conn: aiosqlite.Connection, key: str) -> None:
    await conn.execute("DELETE FROM kv WHERE key = ?", (key,))
    await conn.commit()


async def list_keys(conn: aiosqlite.Connection) -> list[str]:
    async with conn.execute("SELECT key FROM kv ORDER BY key") as cursor:
        return [row["key"] for row in await cursor.fetchall()]
