# src/formcache/storage/memory_engine.py
"""
In-process structured engine.

Databases live in a dictionary owned by the engine instance, so several
``StructuredStore`` objects built on the same engine see the same data
(as browser tabs sharing one origin would). Values are copied on the way
in and out so callers can never mutate stored state by reference.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Optional

from ..exceptions import StorageError
from .structured import StructuredCollection, StructuredEngine, StructuredHandle, UpgradeCallback

logger = logging.getLogger(__name__)


class MemoryCollection(StructuredCollection):
    def __init__(self, name: str, data: Dict[str, Any]) -> None:
        self.name = name
        self._data = data

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class MemoryDatabase:
    """Collections and schema version of one named database."""

    def __init__(self) -> None:
        self.version = 0
        self.collections: Dict[str, Dict[str, Any]] = {}


class MemoryHandle(StructuredHandle):
    def __init__(self, database: MemoryDatabase) -> None:
        self._database = database
        self._closed = False

    def has_collection(self, name: str) -> bool:
        return name in self._database.collections

    async def create_collection(self, name: str) -> None:
        self._database.collections.setdefault(name, {})

    def collection(self, name: str) -> StructuredCollection:
        if self._closed:
            raise StorageError("Memory database handle is closed.")
        try:
            return MemoryCollection(name, self._database.collections[name])
        except KeyError:
            raise StorageError(f"Unknown collection '{name}'.") from None

    async def close(self) -> None:
        self._closed = True


class MemoryStructuredEngine(StructuredEngine):
    """Structured engine keeping every database in memory."""

    def __init__(self) -> None:
        self.databases: Dict[str, MemoryDatabase] = {}

    async def open(self, name: str, version: int, upgrade: UpgradeCallback) -> StructuredHandle:
        database = self.databases.setdefault(name, MemoryDatabase())
        if version < database.version:
            raise StorageError(
                f"Requested version {version} is lower than stored version {database.version}."
            )
        handle = MemoryHandle(database)
        if database.version < version:
            await upgrade(handle, database.version, version)
            database.version = version
        logger.debug("Opened in-memory database '%s' v%d.", name, version)
        return handle
