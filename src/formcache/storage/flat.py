# src/formcache/storage/flat.py
"""
Flat Store: synchronous key/value tier with a hard capacity ceiling.

This is the small, always-available tier. It stores whatever string it is
given under whatever key it is given; chunking and projections are decided
by the caller. Size is accounted the way a browser-class key/value store
would be estimated: ``(len(key) + len(value)) * 2`` bytes per entry.

Backends:
- :class:`MemoryFlatStore`: process-lifetime dictionary.
- :class:`JsonFileFlatStore`: the same, written through to a JSON file with
  an atomic tmp → rename on every mutation.

Example::

    store = JsonFileFlatStore("~/.local/share/formcache/flat_store.json")
    store.set("listing_images_L1", '{"shape": "full", "items": []}')
    for key, value in store.enumerate():
        ...
"""

from __future__ import annotations

import abc
import json
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

from ..exceptions import CorruptRecordError, QuotaExceededError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024


def entry_size(key: str, value: str) -> int:
    """Estimated bytes taken by one entry (two bytes per character)."""
    return (len(key) + len(value)) * 2


class FlatStore(abc.ABC):
    """
    Abstract base for synchronous key/value storage.

    Implementations never suspend the caller. ``set`` raises
    :class:`QuotaExceededError` when the entry would not fit.
    """

    capacity_bytes: int

    @abc.abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None."""

    @abc.abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abc.abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key``; removing a missing key is a no-op."""

    @abc.abstractmethod
    def key(self, index: int) -> Optional[str]:
        """Return the key at position ``index`` or None when out of range."""

    @abc.abstractmethod
    def __len__(self) -> int:
        ...

    def enumerate(self) -> Iterator[tuple[str, str]]:
        """Yield ``(key, value)`` pairs from a snapshot taken at call time."""
        snapshot = []
        for i in range(len(self)):
            k = self.key(i)
            if k is None:
                continue
            v = self.get(k)
            if v is not None:
                snapshot.append((k, v))
        return iter(snapshot)

    def keys(self) -> list[str]:
        return [k for k, _ in self.enumerate()]

    def get_json(self, key: str) -> Optional[object]:
        """Return the parsed JSON value under ``key``.

        Raises:
            CorruptRecordError: If the stored string is not valid JSON.
        """
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptRecordError(key, detail=str(e)) from e

    def set_json(self, key: str, value: object) -> None:
        self.set(key, json.dumps(value, separators=(",", ":")))


class MemoryFlatStore(FlatStore):
    """Dictionary-backed flat store.

    Args:
        capacity_bytes: Hard ceiling on the summed entry sizes.
    """

    def __init__(self, capacity_bytes: int = DEFAULT_CAPACITY_BYTES) -> None:
        self.capacity_bytes = capacity_bytes
        self._data: dict[str, str] = {}
        self._used_bytes = 0

    @property
    def used_bytes(self) -> int:
        return self._used_bytes

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"flat store values must be str, got {type(value).__name__}")
        old = self._data.get(key)
        freed = entry_size(key, old) if old is not None else 0
        needed = entry_size(key, value)
        if self._used_bytes - freed + needed > self.capacity_bytes:
            raise QuotaExceededError(key=key, needed=needed, capacity=self.capacity_bytes)

        self._data[key] = value
        self._used_bytes += needed - freed
        try:
            self._persist()
        except StorageError:
            self._rollback(key, old)
            raise

    def remove(self, key: str) -> None:
        old = self._data.pop(key, None)
        if old is None:
            return
        self._used_bytes -= entry_size(key, old)
        self._persist()

    def key(self, index: int) -> Optional[str]:
        if index < 0 or index >= len(self._data):
            return None
        return list(self._data)[index]

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def enumerate(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._data.items()))

    def clear(self) -> int:
        count = len(self._data)
        self._data.clear()
        self._used_bytes = 0
        self._persist()
        return count

    def _rollback(self, key: str, old: Optional[str]) -> None:
        new = self._data.pop(key)
        self._used_bytes -= entry_size(key, new)
        if old is not None:
            self._data[key] = old
            self._used_bytes += entry_size(key, old)

    def _persist(self) -> None:
        """Hook for write-through backends."""


class JsonFileFlatStore(MemoryFlatStore):
    """
    Flat store persisted to a single JSON object on disk.

    The file is loaded once at construction. Every mutation rewrites it
    atomically (write ``.tmp`` then rename) so a crash never leaves a
    half-written file. An unreadable file is logged and replaced by an
    empty store rather than blocking startup.

    Args:
        path: JSON file path (``~`` is expanded).
        capacity_bytes: Hard ceiling on the summed entry sizes.
    """

    def __init__(self, path: str | Path, capacity_bytes: int = DEFAULT_CAPACITY_BYTES) -> None:
        super().__init__(capacity_bytes)
        self._path = Path(os.path.expanduser(str(path)))
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Flat store file %s unreadable (%s); starting empty.", self._path, e)
            return
        if not isinstance(data, dict):
            logger.warning("Flat store file %s is not a JSON object; starting empty.", self._path)
            return
        for key, value in data.items():
            if isinstance(key, str) and isinstance(value, str):
                self._data[key] = value
                self._used_bytes += entry_size(key, value)
        logger.debug("Loaded %d flat store keys from %s.", len(self._data), self._path)

    def _persist(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(self._data), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as e:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
            raise StorageError(f"Failed to write flat store file {self._path}: {e}") from e


__all__ = [
    "FlatStore",
    "MemoryFlatStore",
    "JsonFileFlatStore",
    "entry_size",
]
