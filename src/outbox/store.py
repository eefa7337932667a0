"""Durable key/value storage for queue snapshots."""

from __future__ import annotations

import asyncio
from typing import Protocol

import aiosqlite

from outbox import db


class KeyValueStore(Protocol):
    """String-keyed durable storage."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryStore:
    """Process-local store. Survives queue restarts, not process restarts."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        return None


class SqliteStore:
    """
    SQLite-backed store.

    The connection is opened lazily on first use so the store can be
    constructed outside a running event loop.

    Example:
        store = SqliteStore("outbox.db")
        queue = TaskQueue(store, worker)
        ...
        await store.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _connection(self) -> aiosqlite.Connection:
        async with self._lock:
            if self._conn is None:
                self._conn = await db.init_db(self.db_path)
            return self._conn

    async def get(self, key: str) -> str | None:
        conn = await self._connection()
        return await db.get_value(conn, key)

    async def set(self, key: str, value: str) -> None:
        conn = await self._connection()
        await db.set_value(conn, key, value)

    async def delete(self, key: str) -> None:
        conn = await self._connection()
        await db.delete_value(conn, key)

    async def keys(self) -> list[str]:
        conn = await self._connection()
        return await db.list_keys(conn)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
