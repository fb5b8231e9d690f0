# src/formcache/storage/sqlite_engine.py
"""
SQLite structured engine using aiosqlite.

Each collection is a table ``(key TEXT PRIMARY KEY, value TEXT, updated_at
REAL)`` inside one database file. The schema version is kept in
``PRAGMA user_version``; opening with a higher version runs the upgrade
callback, which creates any missing collection tables.

Every write is its own transaction: ``put`` returns only after ``COMMIT``
succeeds and rolls back otherwise, so a write that fails to commit surfaces
as a ``StorageError`` instead of a silent success.

Example::

    engine = SqliteStructuredEngine("~/.local/share/formcache/structured.db")
    store = StructuredStore(engine, name="formcache", version=1)
    await store.open()
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Optional, Set

import aiosqlite

from ..exceptions import CorruptRecordError, StorageError
from .structured import StructuredCollection, StructuredEngine, StructuredHandle, UpgradeCallback

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_collection_name(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise StorageError(f"Invalid collection name '{name}'.")
    return name


class SqliteCollection(StructuredCollection):
    def __init__(self, conn: aiosqlite.Connection, lock: asyncio.Lock, table: str) -> None:
        self._conn = conn
        self._lock = lock
        self._table = table

    async def get(self, key: str) -> Optional[Any]:
        async with self._conn.execute(
            f"SELECT value FROM {self._table} WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise CorruptRecordError(f"{self._table}/{key}", detail=str(e)) from e

    async def put(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        async with self._lock:
            try:
                await self._conn.execute(
                    f"INSERT OR REPLACE INTO {self._table} (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, payload, time.time()),
                )
                await self._conn.commit()
            except aiosqlite.Error as e:
                await self._conn.rollback()
                raise StorageError(f"SQLite write to '{self._table}/{key}' failed: {e}") from e

    async def delete(self, key: str) -> bool:
        async with self._lock:
            try:
                cursor = await self._conn.execute(f"DELETE FROM {self._table} WHERE key = ?", (key,))
                await self._conn.commit()
            except aiosqlite.Error as e:
                await self._conn.rollback()
                raise StorageError(f"SQLite delete of '{self._table}/{key}' failed: {e}") from e
        return cursor.rowcount > 0


class SqliteHandle(StructuredHandle):
    def __init__(self, conn: aiosqlite.Connection, tables: Set[str]) -> None:
        self._conn = conn
        self._tables = tables
        self._lock = asyncio.Lock()

    def has_collection(self, name: str) -> bool:
        return name in self._tables

    async def create_collection(self, name: str) -> None:
        table = _validate_collection_name(name)
        await self._conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        await self._conn.commit()
        self._tables.add(name)

    def collection(self, name: str) -> StructuredCollection:
        if name not in self._tables:
            raise StorageError(f"Unknown collection '{name}'.")
        return SqliteCollection(self._conn, self._lock, name)

    async def close(self) -> None:
        await self._conn.close()


class SqliteStructuredEngine(StructuredEngine):
    """
    Structured engine backed by a single SQLite file.

    Args:
        db_path: Path to the database file (``~`` is expanded, parents created).
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(os.path.expanduser(str(db_path)))

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def open(self, name: str, version: int, upgrade: UpgradeCallback) -> StructuredHandle:
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self._db_path)
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(f"Cannot open SQLite database {self._db_path}: {e}") from e

        try:
            async with conn.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            stored_version = row[0] if row else 0
            if version < stored_version:
                raise StorageError(
                    f"Requested version {version} is lower than stored version {stored_version}."
                )

            async with conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'") as cursor:
                tables = {r[0] for r in await cursor.fetchall()}

            handle = SqliteHandle(conn, tables)
            if stored_version < version:
                await upgrade(handle, stored_version, version)
                await conn.execute(f"PRAGMA user_version = {int(version)}")
                await conn.commit()
        except Exception:
            await conn.close()
            raise

        logger.info("SQLite database '%s' v%d opened at %s.", name, version, self._db_path)
        return handle
