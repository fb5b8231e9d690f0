# tests/conftest.py
"""
Shared fixtures for formcache tests.

Provides item factories, in-memory tiers, and structured engines with
injected faults:

- ``FailingEngine``: initialization always fails (Failed readiness)
- ``BrokenWritesEngine``: opens fine, every collection call fails
- ``GatedEngine``: initialization blocks until ``gate`` is set and every
  committed put is recorded in ``put_log``
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from formcache.cache import TieredCache
from formcache.chunking import ChunkCodec
from formcache.exceptions import StorageError
from formcache.quota import QuotaMonitor
from formcache.storage.flat import FlatStore, MemoryFlatStore
from formcache.storage.memory_engine import MemoryCollection, MemoryStructuredEngine
from formcache.storage.remote import InMemoryRemoteStore, RemoteBackup
from formcache.storage.structured import (
    StructuredCollection,
    StructuredEngine,
    StructuredHandle,
    StructuredStore,
    UpgradeCallback,
)
from formcache.sync import BackgroundTaskQueue


# =============================================================================
# ITEM FACTORIES
# =============================================================================


def make_images(count: int, prefix: str = "img") -> List[Dict[str, Any]]:
    """Build image items carrying a large ``preview`` field."""
    return [
        {
            "id": f"{prefix}{i}",
            "name": f"photo_{i}.jpg",
            "url": f"https://cdn.example.com/{prefix}{i}.jpg",
            "path": f"listings/{prefix}{i}.jpg",
            "preview": "data:image/jpeg;base64," + "A" * 64,
        }
        for i in range(count)
    ]


def make_documents(count: int) -> List[Dict[str, Any]]:
    return [
        {
            "id": f"doc{i}",
            "name": f"deed_{i}.pdf",
            "url": f"https://cdn.example.com/doc{i}.pdf",
            "path": f"documents/doc{i}.pdf",
            "category": "legal",
            "isPublic": i % 2 == 0,
            "description": f"Scanned document number {i}",
        }
        for i in range(count)
    ]


@pytest.fixture
def images():
    return make_images


@pytest.fixture
def documents():
    return make_documents


# =============================================================================
# FAULT-INJECTING ENGINES
# =============================================================================


class FailingEngine(StructuredEngine):
    """Engine whose open always fails."""

    def __init__(self) -> None:
        self.open_calls = 0

    async def open(self, name: str, version: int, upgrade: UpgradeCallback) -> StructuredHandle:
        self.open_calls += 1
        raise StorageError("structured engine unsupported")


class BrokenCollection(StructuredCollection):
    async def get(self, key: str) -> Optional[Any]:
        raise StorageError("read failed")

    async def put(self, key: str, value: Any) -> None:
        raise StorageError("commit failed")

    async def delete(self, key: str) -> bool:
        raise StorageError("delete failed")


class BrokenHandle(StructuredHandle):
    def has_collection(self, name: str) -> bool:
        return True

    async def create_collection(self, name: str) -> None:
        pass

    def collection(self, name: str) -> StructuredCollection:
        return BrokenCollection()

    async def close(self) -> None:
        pass


class BrokenWritesEngine(StructuredEngine):
    """Engine that opens successfully but fails every data call."""

    async def open(self, name: str, version: int, upgrade: UpgradeCallback) -> StructuredHandle:
        return BrokenHandle()


class RecordingCollection(MemoryCollection):
    def __init__(self, name: str, data: Dict[str, Any], log: List[str]) -> None:
        super().__init__(name, data)
        self._log = log

    async def put(self, key: str, value: Any) -> None:
        await super().put(key, value)
        self._log.append(key)


class RecordingHandle(StructuredHandle):
    def __init__(self, inner: StructuredHandle, engine: "GatedEngine") -> None:
        self._inner = inner
        self._engine = engine

    def has_collection(self, name: str) -> bool:
        return self._inner.has_collection(name)

    async def create_collection(self, name: str) -> None:
        await self._inner.create_collection(name)

    def collection(self, name: str) -> StructuredCollection:
        database = self._engine.databases[self._engine.opened_name]
        return RecordingCollection(name, database.collections[name], self._engine.put_log)

    async def close(self) -> None:
        await self._inner.close()


class GatedEngine(MemoryStructuredEngine):
    """In-memory engine whose open waits on ``gate`` and which logs every put."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.put_log: List[str] = []
        self.opened_name = ""
        self.fail_open = False

    async def open(self, name: str, version: int, upgrade: UpgradeCallback) -> StructuredHandle:
        await self.gate.wait()
        if self.fail_open:
            raise StorageError("gated engine failed to open")
        self.opened_name = name
        inner = await super().open(name, version, upgrade)
        return RecordingHandle(inner, self)


# =============================================================================
# CACHE BUILDERS
# =============================================================================


@pytest.fixture
def remote_store() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def build_cache() -> Callable[..., TieredCache]:
    """
    Factory building a TieredCache from in-memory parts.

    Keyword args:
        engine: Structured engine (default: a fresh MemoryStructuredEngine;
            pass None for a permanently Failed tier).
        flat: Flat store (default: MemoryFlatStore with 5MB capacity).
        budget_bytes: Quota budget.
        remote_store: Optional RemoteStore; enables RemoteBackup.
        migrate: Optional migrate hook.
    """
    sentinel = object()

    def _build(
        engine: Any = sentinel,
        flat: Optional[FlatStore] = None,
        budget_bytes: int = 5_242_880,
        remote_store: Any = None,
        migrate: Any = None,
        user_id_provider: Any = None,
    ) -> TieredCache:
        if engine is sentinel:
            engine = MemoryStructuredEngine()
        flat = flat if flat is not None else MemoryFlatStore()
        remote = None
        tasks = None
        if remote_store is not None:
            remote = RemoteBackup(remote_store, user_id_provider=user_id_provider)
            tasks = BackgroundTaskQueue(max_size=50, max_retries=1, base_delay=0.0, max_delay=0.0)
        return TieredCache(
            flat=flat,
            structured=StructuredStore(engine),
            quota=QuotaMonitor(flat, budget_bytes=budget_bytes),
            codec=ChunkCodec(),
            remote=remote,
            tasks=tasks,
            migrate=migrate,
        )

    return _build


@pytest.fixture
def failing_engine() -> FailingEngine:
    return FailingEngine()


@pytest.fixture
def broken_engine() -> BrokenWritesEngine:
    return BrokenWritesEngine()


@pytest.fixture
def gated_engine() -> GatedEngine:
    return GatedEngine()
