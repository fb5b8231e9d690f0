# src/formcache/cache.py
"""
TieredCache: orchestrates the structured, flat and remote tiers.

Write path::

    structured Ready?  ── yes ──► put ──► ok: mirror minimal projection to flat,
         │                          │        schedule remote upsert
         │                          └─ fails ─┐
         └─ not yet ──► queue the write,      │
                        return QUEUED         ▼
                                   flat store (chunked if large)
                                   ├─ QuotaExceeded → force_clean, retry once
                                   └─ still failing → minimal projection (DEGRADED)

Read path (first non-empty hit wins)::

    structured → flat base key → flat minimal key → orphan chunks → remote
                                                                   (+ backfill)

Absence is never an error: ``read`` returns ``[]`` when no tier has data.
Best-effort side effects (minimal mirroring, remote upserts, backfills)
are logged on failure and never change the caller's result.

Example::

    cache = create_tiered_cache(load_config(), remote_store=my_remote)
    result = await cache.write("L1", images)
    if not result:
        ...  # every tier failed; prompt the user to re-enter
    images = await cache.read("L1")
    await cache.close()
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .chunking import ChunkCodec
from .config import CacheConfig, load_config
from .exceptions import (
    CorruptRecordError,
    QuotaExceededError,
    RemoteUnreachableError,
    StorageError,
    TierUnavailableError,
)
from .keys import chunk_key, setting_key
from .models import (
    DEFAULT_CATEGORIES,
    CacheRecord,
    Item,
    QuotaSnapshot,
    Readiness,
    RecordCategory,
    RecordShape,
    WriteOutcome,
    WriteResult,
)
from .quota import QuotaMonitor
from .storage.flat import FlatStore, JsonFileFlatStore, MemoryFlatStore
from .storage.memory_engine import MemoryStructuredEngine
from .storage.remote import RemoteBackup, RemoteStore
from .storage.sqlite_engine import SqliteStructuredEngine
from .storage.structured import StructuredEngine, StructuredStore
from .sync import BackgroundTaskQueue

logger = logging.getLogger(__name__)

SETTINGS_COLLECTION = "settings"
FEATURED_SETTING = "featured_image"

Migrate = Callable[[CacheRecord], CacheRecord]


class TieredCache:
    """
    Tiered persistence cache for per-form records.

    Construct it once at the application's composition root (usually via
    :func:`create_tiered_cache`) and pass it to whatever needs it.

    Args:
        flat: Synchronous key/value tier.
        structured: Asynchronous structured tier.
        quota: Quota monitor over ``flat``.
        codec: Chunk codec used for oversized flat writes.
        remote: Optional remote backup adapter.
        tasks: Background queue for remote side effects; required with ``remote``.
        categories: Record categories by name.
        migrate: Applied to every record loaded from any tier.
    """

    def __init__(
        self,
        flat: FlatStore,
        structured: StructuredStore,
        quota: QuotaMonitor,
        codec: Optional[ChunkCodec] = None,
        remote: Optional[RemoteBackup] = None,
        tasks: Optional[BackgroundTaskQueue] = None,
        categories: Optional[Dict[str, RecordCategory]] = None,
        migrate: Optional[Migrate] = None,
    ) -> None:
        self._flat = flat
        self._structured = structured
        self._quota = quota
        self._codec = codec or ChunkCodec()
        self._remote = remote
        self._tasks = tasks if tasks is not None else (BackgroundTaskQueue() if remote else None)
        self._categories = dict(categories or DEFAULT_CATEGORIES)
        self._migrate = migrate
        self._write_stats: Counter = Counter()
        self._read_stats: Counter = Counter()

    @property
    def structured(self) -> StructuredStore:
        return self._structured

    @property
    def flat(self) -> FlatStore:
        return self._flat

    def category(self, name: str) -> RecordCategory:
        try:
            return self._categories[name]
        except KeyError:
            raise ValueError(
                f"Unknown record category '{name}'. Known: {sorted(self._categories)}"
            ) from None

    async def open(self) -> Readiness:
        """Initialize the structured tier eagerly. Optional; first use triggers it too."""
        return await self._structured.open()

    # -- Write ---------------------------------------------------------------

    async def write(self, form_id: str, items: List[Item], category: str = "images") -> WriteResult:
        """
        Store ``items`` as the whole record for ``form_id`` (full replace).

        Returns:
            A truthy ``WriteResult`` unless every tier failed. A QUEUED result
            is optimistic: the write runs once the structured tier settles.

        Raises:
            ValueError: If the category is unknown or item ids are missing or
                not unique.
        """
        cat = self.category(category)
        if not form_id:
            logger.error("Cannot write %s without a form id.", cat.name)
            return self._count(WriteResult(WriteOutcome.FAILED, detail="missing form id"))

        record = CacheRecord(category=cat.name, form_id=form_id, items=list(items))

        # Writes issued while older ones still drain must land after them.
        pending = self._structured.readiness in (Readiness.UNINITIALIZED, Readiness.INITIALIZING)
        if pending or self._structured.has_backlog:
            async def queued_write() -> None:
                result = await self._write_now(record, cat)
                if not result:
                    raise StorageError(f"Queued write of {cat.base_key(form_id)} failed on every tier.")

            self._structured.enqueue(f"write_{cat.base_key(form_id)}", queued_write)
            logger.debug("Structured store busy or not ready; queued write of %s.", cat.base_key(form_id))
            return self._count(WriteResult(WriteOutcome.QUEUED, key=cat.base_key(form_id)))

        return await self._write_now(record, cat)

    async def _write_now(self, record: CacheRecord, cat: RecordCategory) -> WriteResult:
        key = cat.base_key(record.form_id)
        result: Optional[WriteResult] = None

        if self._structured.is_ready:
            try:
                await self._structured.put(cat.collection, key, record.model_dump(mode="json"))
            except StorageError as e:
                logger.warning("Structured write of %s failed, falling back to flat store: %s", key, e)
            else:
                logger.debug("Stored %d %s for %s in structured store.", len(record.items), cat.name, record.form_id)
                self._mirror_minimal(record, cat)
                result = WriteResult(WriteOutcome.STRUCTURED, key=key)
        else:
            logger.debug("Structured store %s; writing %s to flat store.", self._structured.readiness.value, key)

        if result is None:
            result = self._write_flat(record, cat)

        self._schedule_push(record, cat)
        return self._count(result)

    def _mirror_minimal(self, record: CacheRecord, cat: RecordCategory) -> None:
        if not cat.has_mirror:
            return
        mirror = record.project(cat.mirror_fields, RecordShape.MINIMAL)
        try:
            self._flat.set_json(cat.minimal_key(record.form_id), _envelope(mirror))
        except StorageError as e:
            logger.warning("Could not mirror %s to flat store: %s", cat.minimal_key(record.form_id), e)

    def _write_flat(self, record: CacheRecord, cat: RecordCategory) -> WriteResult:
        if self._quota.is_near_full():
            self._quota.cleanup_chunks()

        try:
            return self._store_flat(record, cat)
        except QuotaExceededError as e:
            logger.warning("Flat store full writing %s (%s); running force clean.", cat.base_key(record.form_id), e)
            self._quota.force_clean()
            try:
                return self._store_flat(record, cat)
            except StorageError as retry_error:
                logger.warning("Flat write retry failed: %s", retry_error)
        except StorageError as e:
            logger.warning("Flat write of %s failed: %s", cat.base_key(record.form_id), e)

        # The previous full copy must not outlive a replace that did not land.
        self._purge_flat(cat.base_key(record.form_id))
        key = cat.minimal_key(record.form_id)
        if not cat.has_minimal:
            self._remove_quietly(key)
            logger.error("All tiers failed for %s; %s has no minimal projection.", cat.base_key(record.form_id), cat.name)
            return WriteResult(WriteOutcome.FAILED, key=key, detail="no minimal projection")

        minimal = record.project(cat.minimal_fields, RecordShape.MINIMAL)
        try:
            self._flat.set_json(key, _envelope(minimal))
        except StorageError as e:
            self._remove_quietly(key)
            logger.error("All tiers failed for %s; data may be lost for this session: %s", key, e)
            return WriteResult(WriteOutcome.FAILED, key=key, detail=str(e))
        logger.warning("Stored only a minimal projection of %s under %s.", cat.name, key)
        return WriteResult(WriteOutcome.DEGRADED, key=key, detail="minimal projection only")

    def _purge_flat(self, base: str) -> None:
        """Remove ``base`` and every chunk key that may belong to it."""
        for key in self._codec.chunk_keys(base, self._stored_chunk_count(base)):
            self._remove_quietly(key)
        self._remove_quietly(base)

    def _remove_quietly(self, key: str) -> None:
        try:
            self._flat.remove(key)
        except StorageError as e:
            logger.warning("Could not remove flat key %s: %s", key, e)

    def _store_flat(self, record: CacheRecord, cat: RecordCategory) -> WriteResult:
        base = cat.base_key(record.form_id)
        for key in self._codec.chunk_keys(base, self._stored_chunk_count(base)):
            self._flat.remove(key)

        basic, chunks = self._codec.split(record.items, base, cat.basic_fields)
        if not chunks:
            self._flat.set_json(base, _envelope(record))
            return WriteResult(WriteOutcome.FLAT, key=base)

        for chunk in chunks:
            self._flat.set_json(chunk.key, chunk.items)
        projection = record.model_copy(update={"items": basic, "shape": RecordShape.BASIC})
        self._flat.set_json(base, _envelope(projection, chunks=len(chunks)))
        logger.debug("Stored %s as basic projection plus %d chunks.", base, len(chunks))
        return WriteResult(WriteOutcome.CHUNKED, key=base)

    def _stored_chunk_count(self, base: str) -> Optional[int]:
        try:
            value = self._flat.get_json(base)
        except CorruptRecordError:
            return None
        if isinstance(value, dict) and isinstance(value.get("chunks"), int):
            return value["chunks"]
        return None

    def _schedule_push(self, record: CacheRecord, cat: RecordCategory) -> None:
        if self._remote is None or self._tasks is None:
            return
        remote = self._remote
        if self._tasks.submit(f"push_{cat.base_key(record.form_id)}", lambda: remote.push(record, cat)):
            self._write_stats["remote_submitted"] += 1

    def _count(self, result: WriteResult) -> WriteResult:
        self._write_stats[result.outcome.value] += 1
        return result

    # -- Read ----------------------------------------------------------------

    async def read(self, form_id: str, category: str = "images") -> List[Item]:
        """
        Return the items stored for ``form_id``, or ``[]`` when no tier has any.

        Raises:
            ValueError: If the category is unknown.
        """
        cat = self.category(category)
        if not form_id:
            return []
        record = await self._read_record(form_id, cat)
        if record is None:
            self._read_stats["miss"] += 1
            return []
        return self._apply_migrate(record).items

    async def _read_record(self, form_id: str, cat: RecordCategory) -> Optional[CacheRecord]:
        record = await self._read_structured(form_id, cat)
        if record is not None:
            return self._hit("structured", record)

        base = cat.base_key(form_id)
        record = self._read_flat_key(base, form_id, cat)
        if record is not None:
            return self._hit("flat", record)

        record = self._read_flat_key(cat.minimal_key(form_id), form_id, cat, minimal=True)
        if record is not None:
            return self._hit("minimal", record)

        items = self._codec.reconstruct(None, self._chunk_source(base))
        record = self._build_record(cat, form_id, items, RecordShape.FULL, None, base)
        if record is not None:
            logger.info("Recovered %d %s for %s from orphan chunks.", len(items), cat.name, form_id)
            return self._hit("chunks", record)

        record = await self._read_remote(form_id, cat)
        if record is not None:
            self._schedule_backfill(record, cat)
            return self._hit("remote", record)
        return None

    def _hit(self, tier: str, record: CacheRecord) -> CacheRecord:
        self._read_stats[tier] += 1
        logger.debug("Read %d %s for %s from %s tier.", len(record.items), record.category, record.form_id, tier)
        return record

    async def _read_structured(self, form_id: str, cat: RecordCategory) -> Optional[CacheRecord]:
        key = cat.base_key(form_id)
        try:
            value = await self._structured.get(cat.collection, key)
        except TierUnavailableError:
            return None
        except StorageError as e:
            logger.warning("Structured read of %s failed: %s", key, e)
            return None
        if not value:
            return None
        try:
            record = CacheRecord.model_validate(value)
        except ValidationError as e:
            logger.warning("Ignoring corrupt structured record %s: %s", key, e)
            return None
        return record if record.items else None

    def _read_flat_key(
        self, key: str, form_id: str, cat: RecordCategory, minimal: bool = False
    ) -> Optional[CacheRecord]:
        try:
            value = self._flat.get_json(key)
        except CorruptRecordError as e:
            logger.warning("Ignoring corrupt flat value: %s", e)
            return None
        if value is None:
            return None

        decoded = self._decode_flat(value, key, cat, minimal)
        if decoded is None:
            return None
        shape, items, chunk_count, timestamp = decoded
        if shape is RecordShape.BASIC:
            items = self._codec.reconstruct(items, self._chunk_source(key), chunk_count)
        return self._build_record(cat, form_id, items, shape, timestamp, key)

    def _decode_flat(
        self, value: Any, key: str, cat: RecordCategory, minimal: bool = False
    ) -> Optional[Tuple[RecordShape, List[Item], Optional[int], Optional[float]]]:
        """Split a flat value into shape, items, chunk count and timestamp."""
        if isinstance(value, dict) and "shape" in value:
            try:
                shape = RecordShape(value["shape"])
            except ValueError:
                logger.warning("Unknown shape %r under %s; ignoring value.", value["shape"], key)
                return None
            items = value.get("items")
            if not isinstance(items, list):
                logger.warning("Flat value under %s has no item list; ignoring.", key)
                return None
            chunks = value.get("chunks")
            timestamp = value.get("timestamp")
            return (
                shape,
                items,
                chunks if isinstance(chunks, int) else None,
                timestamp if isinstance(timestamp, (int, float)) else None,
            )

        if isinstance(value, list):
            # Untagged arrays written before shapes were stored.
            if minimal:
                return RecordShape.MINIMAL, value, None, None
            if _looks_basic(value, cat):
                return RecordShape.BASIC, value, None, None
            return RecordShape.FULL, value, None, None

        logger.warning("Unrecognized flat value under %s; ignoring.", key)
        return None

    def _chunk_source(self, base: str) -> Callable[[int], Any]:
        def source(index: int) -> Any:
            return self._flat.get_json(chunk_key(base, index))
        return source

    def _build_record(
        self,
        cat: RecordCategory,
        form_id: str,
        items: List[Item],
        shape: RecordShape,
        timestamp: Optional[float],
        key: str,
    ) -> Optional[CacheRecord]:
        if not items:
            return None
        data: Dict[str, Any] = {"category": cat.name, "form_id": form_id, "items": items, "shape": shape}
        if timestamp is not None:
            data["timestamp"] = timestamp
        try:
            return CacheRecord.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring invalid record under %s: %s", key, e)
            return None

    async def _read_remote(self, form_id: str, cat: RecordCategory) -> Optional[CacheRecord]:
        if self._remote is None:
            return None
        try:
            items = await self._remote.pull(form_id, cat)
        except RemoteUnreachableError as e:
            logger.warning("Remote read of %s for %s failed: %s", cat.name, form_id, e)
            return None
        if not items:
            return None
        return self._build_record(cat, form_id, items, RecordShape.FULL, None, f"remote:{form_id}")

    def _schedule_backfill(self, record: CacheRecord, cat: RecordCategory) -> None:
        if self._tasks is None:
            return
        key = cat.base_key(record.form_id)

        async def backfill() -> None:
            if self._structured.readiness is Readiness.FAILED:
                logger.debug("Skipping backfill of %s; structured store unavailable.", key)
                return
            await self._structured.put(cat.collection, key, record.model_dump(mode="json"))
            logger.info("Backfilled %s into structured store from remote.", key)

        self._tasks.submit(f"backfill_{key}", backfill)

    def _apply_migrate(self, record: CacheRecord) -> CacheRecord:
        if self._migrate is None:
            return record
        try:
            migrated = self._migrate(record)
        except Exception as e:
            logger.error("Migration of %s record for %s failed: %s", record.category, record.form_id, e, exc_info=True)
            return record
        return migrated if isinstance(migrated, CacheRecord) else record

    # -- Clear ---------------------------------------------------------------

    async def clear(self, form_id: str, category: Optional[str] = None) -> None:
        """
        Remove a record from every local tier it may occupy.

        With ``category=None`` every category is cleared along with the
        featured index setting. Missing keys are not an error.
        """
        cats = [self.category(category)] if category else list(self._categories.values())
        for cat in cats:
            base = cat.base_key(form_id)
            await self._delete_structured(cat.collection, base)
            for key in self._codec.chunk_keys(base, self._stored_chunk_count(base)):
                self._flat.remove(key)
            self._flat.remove(base)
            self._flat.remove(cat.minimal_key(form_id))

        if category is None:
            key = setting_key(FEATURED_SETTING, form_id)
            self._flat.remove(key)
            await self._delete_structured(SETTINGS_COLLECTION, key)
        logger.info("Cleared %s for form %s.", category or "all records", form_id)

    async def _delete_structured(self, collection: str, key: str) -> None:
        try:
            await self._structured.delete(collection, key)
        except TierUnavailableError:
            pass
        except StorageError as e:
            logger.warning("Structured delete of %s/%s failed: %s", collection, key, e)

    # -- Form drafts -----------------------------------------------------------

    async def save_form_draft(self, form_id: str, data: Dict[str, Any]) -> WriteResult:
        """Store a form draft as a one-item record whose item id is ``form_id``."""
        return await self.write(form_id, [{**data, "id": form_id}], category="form")

    async def load_form_draft(self, form_id: str) -> Optional[Dict[str, Any]]:
        items = await self.read(form_id, category="form")
        return items[0] if items else None

    # -- Settings ------------------------------------------------------------

    async def save_setting(self, name: str, form_id: str, value: Any) -> bool:
        """
        Store a small scalar under ``{name}_{form_id}``.

        The flat tier is written immediately; the structured tier when it is
        ready, or once it becomes ready. Returns False only if neither tier
        accepted the value.
        """
        key = setting_key(name, form_id)
        stored = False
        try:
            self._flat.set_json(key, value)
            stored = True
        except StorageError as e:
            logger.warning("Flat write of setting %s failed: %s", key, e)

        payload = {"key": key, "value": value, "timestamp": time.time()}
        readiness = self._structured.readiness
        if readiness in (Readiness.UNINITIALIZED, Readiness.INITIALIZING):
            self._structured.enqueue(
                f"setting_{key}",
                lambda: self._structured.put(SETTINGS_COLLECTION, key, payload),
            )
            stored = True
        elif readiness is Readiness.READY:
            try:
                await self._structured.put(SETTINGS_COLLECTION, key, payload)
                stored = True
            except StorageError as e:
                logger.warning("Structured write of setting %s failed: %s", key, e)
        return stored

    async def get_setting(self, name: str, form_id: str, default: Any = None) -> Any:
        key = setting_key(name, form_id)
        try:
            value = self._flat.get_json(key)
        except CorruptRecordError as e:
            logger.warning("Ignoring corrupt setting: %s", e)
            value = None
        if value is not None:
            return value

        try:
            stored = await self._structured.get(SETTINGS_COLLECTION, key)
        except TierUnavailableError:
            return default
        except StorageError as e:
            logger.warning("Structured read of setting %s failed: %s", key, e)
            return default
        if isinstance(stored, dict) and stored.get("value") is not None:
            return stored["value"]
        return default

    async def save_featured_index(self, form_id: str, index: int) -> bool:
        return await self.save_setting(FEATURED_SETTING, form_id, int(index))

    async def get_featured_index(self, form_id: str) -> int:
        value = await self.get_setting(FEATURED_SETTING, form_id, 0)
        if isinstance(value, bool):
            return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    # -- Introspection & lifecycle ---------------------------------------------

    def usage(self) -> QuotaSnapshot:
        """Current flat-tier usage estimate as a ``QuotaSnapshot``."""
        return self._quota.snapshot()

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "writes": dict(self._write_stats),
            "reads": dict(self._read_stats),
            "structured": self._structured.stats(),
        }
        if self._tasks is not None:
            stats["sync"] = self._tasks.stats()
        return stats

    async def join(self) -> None:
        """Wait for queued structured operations and background jobs to finish."""
        await self._structured.wait_drained()
        if self._tasks is not None:
            await self._tasks.join()

    async def close(self) -> None:
        await self._structured.wait_drained()
        if self._tasks is not None:
            await self._tasks.close()
        await self._structured.close()
        logger.info("Tiered cache closed.")


def _envelope(record: CacheRecord, chunks: Optional[int] = None) -> Dict[str, Any]:
    value: Dict[str, Any] = {
        "shape": record.shape.value,
        "items": record.items,
        "timestamp": record.timestamp,
    }
    if chunks is not None:
        value["chunks"] = chunks
    return value


def _looks_basic(items: List[Any], cat: RecordCategory) -> bool:
    """Heuristic for untagged arrays: items without large fields but with a url."""
    if not cat.large_fields or not items or not isinstance(items[0], dict):
        return False
    first = items[0]
    return "url" in first and not any(f in first for f in cat.large_fields)


def _build_engine(config: CacheConfig) -> Optional[StructuredEngine]:
    if not config.structured.enabled:
        logger.info("Structured store disabled; flat store is the primary tier.")
        return None
    if config.structured.backend == "memory":
        return MemoryStructuredEngine()
    return SqliteStructuredEngine(config.structured.db_path)


def create_tiered_cache(
    config: Optional[CacheConfig] = None,
    remote_store: Optional[RemoteStore] = None,
    migrate: Optional[Migrate] = None,
    user_id_provider: Optional[Callable[[], Optional[str]]] = None,
) -> TieredCache:
    """Create a TieredCache instance from config."""
    config = config or load_config()

    if config.flat.backend == "json":
        flat: FlatStore = JsonFileFlatStore(config.flat.path, config.flat.capacity_bytes)
    else:
        flat = MemoryFlatStore(config.flat.capacity_bytes)

    structured = StructuredStore(
        _build_engine(config),
        name=config.structured.name,
        version=config.structured.version,
        collections=config.structured.collections,
    )
    quota = QuotaMonitor(
        flat,
        budget_bytes=config.quota.budget_bytes,
        near_full_threshold=config.quota.near_full_threshold,
        protected_markers=config.quota.protected_markers,
    )
    codec = ChunkCodec(
        chunk_size=config.chunking.chunk_size,
        direct_threshold=config.chunking.direct_threshold,
        probe_limit=config.chunking.probe_limit,
    )

    remote = None
    tasks = None
    if remote_store is not None and config.remote.enabled:
        remote = RemoteBackup(
            remote_store,
            collection=config.remote.collection,
            fallback_collection=config.remote.fallback_collection,
            user_id_provider=user_id_provider,
        )
        tasks = BackgroundTaskQueue(
            max_size=config.remote.queue_size,
            max_retries=config.remote.max_retries,
            base_delay=config.remote.base_delay_seconds,
            max_delay=config.remote.max_delay_seconds,
        )

    return TieredCache(
        flat=flat,
        structured=structured,
        quota=quota,
        codec=codec,
        remote=remote,
        tasks=tasks,
        categories=config.categories,
        migrate=migrate,
    )


__all__ = [
    "TieredCache",
    "create_tiered_cache",
    "FEATURED_SETTING",
    "SETTINGS_COLLECTION",
]
