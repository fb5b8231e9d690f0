# src/formcache/storage/structured.py
"""
Structured Store: asynchronous, larger-capacity local tier.

Records are kept in named collections (images, documents, formData,
settings) keyed by record identity. The store owns a readiness lifecycle::

    UNINITIALIZED → INITIALIZING → READY
                                 ↘ FAILED

Calls issued before the store is ready are wrapped as
:class:`~formcache.models.PendingOperation` objects, queued, and drained
strictly in enqueue order once initialization settles. Each queued
operation is awaited before the next starts and a failing one is logged
and skipped. A FAILED store stays failed until ``open()`` is called again.

Readiness flips to READY before the queue drains. Calls issued while a
drain is still in progress join the back of the queue instead of running
directly, so an older queued write can never overwrite a newer one.

The storage itself is delegated to a :class:`StructuredEngine`
(see ``memory_engine`` and ``sqlite_engine``).
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import deque
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Deque, Iterable, Optional

from ..exceptions import StorageError, TierUnavailableError
from ..models import PendingOperation, Readiness

logger = logging.getLogger(__name__)

UpgradeCallback = Callable[["StructuredHandle", int, int], Awaitable[None]]

# Set while a queued operation runs, so its own store calls bypass the queue.
_in_drain: ContextVar[bool] = ContextVar("formcache_in_drain", default=False)


# ---------------------------------------------------------------------------
# Engine interfaces
# ---------------------------------------------------------------------------


class StructuredCollection(abc.ABC):
    """One named collection of JSON-compatible values."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None."""

    @abc.abstractmethod
    async def put(self, key: str, value: Any) -> None:
        """Store ``value``; must only return once the write is committed."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if something was removed."""


class StructuredHandle(abc.ABC):
    """An opened database exposing its collections."""

    @abc.abstractmethod
    def has_collection(self, name: str) -> bool:
        ...

    @abc.abstractmethod
    async def create_collection(self, name: str) -> None:
        """Create a collection. Only called from the upgrade callback."""

    @abc.abstractmethod
    def collection(self, name: str) -> StructuredCollection:
        """Return a collection, raising ``StorageError`` if it does not exist."""

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class StructuredEngine(abc.ABC):
    """Opens databases by name and schema version."""

    @abc.abstractmethod
    async def open(self, name: str, version: int, upgrade: UpgradeCallback) -> StructuredHandle:
        """
        Open (creating if needed) the database ``name``.

        When the stored schema version is lower than ``version`` the engine
        awaits ``upgrade(handle, old_version, version)`` before returning.
        """


# ---------------------------------------------------------------------------
# Store with lifecycle and pending queue
# ---------------------------------------------------------------------------


class StructuredStore:
    """
    Lifecycle and queueing wrapper around a structured engine.

    Args:
        engine: Engine providing the actual storage.
        name: Database name passed to the engine.
        version: Schema version passed to the engine.
        collections: Collections created on first open.
    """

    def __init__(
        self,
        engine: Optional[StructuredEngine],
        name: str = "formcache",
        version: int = 1,
        collections: Iterable[str] = ("images", "documents", "formData", "settings"),
    ) -> None:
        self._engine = engine
        self._name = name
        self._version = version
        self._collections = tuple(collections)
        self._handle: Optional[StructuredHandle] = None
        self._readiness = Readiness.UNINITIALIZED
        self._init_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._pending: Deque[PendingOperation] = deque()
        self._draining = False
        self._stats = {"queued": 0, "drained": 0, "drain_failures": 0}
        if engine is None:
            # No engine available on this platform; permanently unavailable.
            self._readiness = Readiness.FAILED

    @property
    def readiness(self) -> Readiness:
        return self._readiness

    @property
    def is_ready(self) -> bool:
        return self._readiness is Readiness.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def has_backlog(self) -> bool:
        """True while queued operations are waiting or being drained."""
        return self._draining or bool(self._pending)

    def _should_defer(self) -> bool:
        if self._readiness is not Readiness.READY:
            return True
        return self.has_backlog and not _in_drain.get()

    def stats(self) -> dict[str, Any]:
        return {**self._stats, "pending": len(self._pending), "readiness": self._readiness.value}

    # -- Lifecycle -----------------------------------------------------------

    async def open(self) -> Readiness:
        """
        Initialize the store, or join an initialization already in flight.

        A store in FAILED state re-attempts initialization. Resolves once the
        readiness has settled and the pending queue has been drained.
        """
        if self._engine is None:
            return self._readiness
        if self._readiness is Readiness.FAILED and self._init_task is not None and self._init_task.done():
            logger.info("Re-attempting structured store initialization for '%s'.", self._name)
            self._init_task = None
            self._readiness = Readiness.UNINITIALIZED
        task = self._ensure_opening()
        return await asyncio.shield(task)

    def _ensure_opening(self) -> asyncio.Task:
        if self._init_task is None:
            self._readiness = Readiness.INITIALIZING
            self._init_task = asyncio.get_running_loop().create_task(self._initialize())
        return self._init_task

    async def _initialize(self) -> Readiness:
        try:
            self._handle = await self._engine.open(self._name, self._version, self._upgrade)
        except Exception as e:
            logger.error("Structured store '%s' failed to initialize: %s", self._name, e, exc_info=True)
            self._handle = None
            self._readiness = Readiness.FAILED
        else:
            self._readiness = Readiness.READY
            logger.info("Structured store '%s' v%d initialized.", self._name, self._version)
        await self._drain_pending()
        return self._readiness

    async def _upgrade(self, handle: StructuredHandle, old_version: int, new_version: int) -> None:
        for name in self._collections:
            if not handle.has_collection(name):
                await handle.create_collection(name)
                logger.debug("Created collection '%s' (schema v%d → v%d).", name, old_version, new_version)

    async def close(self) -> None:
        if self._init_task is not None and not self._init_task.done():
            await asyncio.shield(self._init_task)
        if self._handle is not None:
            await self._handle.close()
            self._handle = None
            logger.info("Structured store '%s' closed.", self._name)
        self._readiness = Readiness.UNINITIALIZED if self._engine is not None else Readiness.FAILED
        self._init_task = None

    # -- Pending queue -------------------------------------------------------

    def enqueue(self, name: str, execute: Callable[[], Awaitable[Any]]) -> None:
        """
        Queue ``execute`` to run once initialization settles.

        Triggers initialization if it has not started. If the store has
        already settled, a drain is scheduled immediately.
        """
        self._pending.append(PendingOperation(name=name, execute=execute))
        self._stats["queued"] += 1
        logger.debug("Queued operation: %s (readiness=%s).", name, self._readiness.value)

        if self._readiness in (Readiness.UNINITIALIZED, Readiness.INITIALIZING) and self._engine is not None:
            self._ensure_opening()
        elif not self._draining:
            self._drain_task = asyncio.get_running_loop().create_task(self._drain_pending())

    async def _drain_pending(self) -> None:
        # A single drainer keeps queued operations strictly sequential.
        if self._draining:
            return
        self._draining = True
        token = _in_drain.set(True)
        try:
            if self._pending:
                logger.info("Processing %d pending operations.", len(self._pending))
            while self._pending:
                op = self._pending.popleft()
                try:
                    await op.execute()
                except Exception as e:
                    self._stats["drain_failures"] += 1
                    logger.error("Error processing pending operation %s: %s", op.name, e)
                else:
                    self._stats["drained"] += 1
                    logger.debug("Completed pending operation: %s", op.name)
        finally:
            _in_drain.reset(token)
            self._draining = False

    async def wait_drained(self) -> None:
        """Wait until initialization and any scheduled drain have finished."""
        if self._init_task is not None:
            await asyncio.shield(self._init_task)
        if self._drain_task is not None:
            await asyncio.shield(self._drain_task)

    async def _defer(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Queue ``call`` and wait for its own result."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        async def execute() -> None:
            try:
                result = await call()
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
                raise
            if not future.done():
                future.set_result(result)

        self.enqueue(name, execute)
        return await future

    # -- Data access ---------------------------------------------------------

    def _collection(self, name: str) -> StructuredCollection:
        if self._readiness is not Readiness.READY or self._handle is None:
            raise TierUnavailableError("structured", f"Structured store is {self._readiness.value}.")
        return self._handle.collection(name)

    async def put(self, collection: str, key: str, value: Any) -> None:
        """
        Store ``value`` under ``key`` in ``collection``.

        Raises:
            TierUnavailableError: If the store has FAILED.
            StorageError: If the engine write or its commit fails.
        """
        if self._readiness is Readiness.FAILED:
            raise TierUnavailableError("structured", "Structured store failed to initialize.")
        if self._should_defer():
            return await self._defer(f"put_{collection}_{key}", lambda: self.put(collection, key, value))
        try:
            await self._collection(collection).put(key, value)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Structured put failed for '{collection}/{key}': {e}") from e

    async def get(self, collection: str, key: str) -> Optional[Any]:
        """Return the value under ``key``, or None. Raises like :meth:`put`."""
        if self._readiness is Readiness.FAILED:
            raise TierUnavailableError("structured", "Structured store failed to initialize.")
        if self._should_defer():
            return await self._defer(f"get_{collection}_{key}", lambda: self.get(collection, key))
        try:
            return await self._collection(collection).get(key)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Structured get failed for '{collection}/{key}': {e}") from e

    async def delete(self, collection: str, key: str) -> bool:
        """Remove ``key``. Raises like :meth:`put`."""
        if self._readiness is Readiness.FAILED:
            raise TierUnavailableError("structured", "Structured store failed to initialize.")
        if self._should_defer():
            return await self._defer(f"delete_{collection}_{key}", lambda: self.delete(collection, key))
        try:
            return await self._collection(collection).delete(key)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Structured delete failed for '{collection}/{key}': {e}") from e


__all__ = [
    "StructuredCollection",
    "StructuredHandle",
    "StructuredEngine",
    "StructuredStore",
    "UpgradeCallback",
]
