# src/formcache/__init__.py
"""
formcache - Tiered persistence cache for per-form client data.

Stores image lists, document lists, form drafts and small settings across a
structured local tier, a small flat key/value tier and an optional remote
durable store, with automatic fallback, chunking of oversized records,
quota cleanup and remote backfill.
"""

from importlib.metadata import PackageNotFoundError, version

from .cache import TieredCache, create_tiered_cache
from .chunking import Chunk, ChunkCodec
from .config import (
    CacheConfig,
    ChunkingConfig,
    FlatStoreConfig,
    QuotaConfig,
    RemoteSyncConfig,
    StructuredStoreConfig,
    load_config,
)
from .exceptions import (
    FormCacheError,
    ConfigError,
    StorageError,
    TierUnavailableError,
    QuotaExceededError,
    CorruptRecordError,
    RemoteUnreachableError,
)
from .models import (
    CacheRecord,
    Item,
    PendingOperation,
    QuotaSnapshot,
    Readiness,
    RecordCategory,
    RecordShape,
    WriteOutcome,
    WriteResult,
)
from .quota import QuotaMonitor
from .sync import BackgroundTaskQueue

try:
    __version__ = version("formcache")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    # Orchestrator
    "TieredCache",
    "create_tiered_cache",
    # Components
    "Chunk",
    "ChunkCodec",
    "QuotaMonitor",
    "BackgroundTaskQueue",
    # Configuration
    "CacheConfig",
    "ChunkingConfig",
    "FlatStoreConfig",
    "QuotaConfig",
    "RemoteSyncConfig",
    "StructuredStoreConfig",
    "load_config",
    # Models
    "CacheRecord",
    "Item",
    "PendingOperation",
    "QuotaSnapshot",
    "Readiness",
    "RecordCategory",
    "RecordShape",
    "WriteOutcome",
    "WriteResult",
    # Exceptions
    "FormCacheError",
    "ConfigError",
    "StorageError",
    "TierUnavailableError",
    "QuotaExceededError",
    "CorruptRecordError",
    "RemoteUnreachableError",
    "__version__",
]
