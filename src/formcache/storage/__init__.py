# src/formcache/storage/__init__.py
"""
Storage tiers and engines.

- **FlatStore** (small, synchronous): key/value strings with a hard capacity
- **StructuredStore** (larger, asynchronous): named collections with a
  readiness lifecycle and a queue for calls made before it is ready
- **RemoteBackup**: best-effort durable backup over a ``RemoteStore``

Architecture::

    StructuredStore → FlatStore → RemoteStore
    (memory/SQLite)   (memory/JSON)  (external)
"""

from .flat import FlatStore, JsonFileFlatStore, MemoryFlatStore, entry_size
from .memory_engine import MemoryStructuredEngine
from .remote import INVALID_FORM_IDS, InMemoryRemoteStore, RemoteBackup, RemoteStore
from .sqlite_engine import SqliteStructuredEngine
from .structured import (
    StructuredCollection,
    StructuredEngine,
    StructuredHandle,
    StructuredStore,
)

__all__ = [
    # Flat
    "FlatStore",
    "MemoryFlatStore",
    "JsonFileFlatStore",
    "entry_size",
    # Structured
    "StructuredCollection",
    "StructuredEngine",
    "StructuredHandle",
    "StructuredStore",
    "MemoryStructuredEngine",
    "SqliteStructuredEngine",
    # Remote
    "RemoteStore",
    "InMemoryRemoteStore",
    "RemoteBackup",
    "INVALID_FORM_IDS",
]
