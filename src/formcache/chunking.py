# src/formcache/chunking.py
"""
Chunk codec for records that are too large to store under one flat key.

A record with more than ``direct_threshold`` items is written as a basic
projection under its base key plus ``ceil(n / chunk_size)`` chunk keys
holding the full items. Reading merges the chunks back onto the basic
projection by item id; fields from a chunk win over fields from the
projection.

Two scan modes exist for reconstruction:

- With a stored chunk count every index ``0..count-1`` is visited and a
  missing or corrupt chunk is skipped, so one lost chunk does not hide the
  ones after it.
- Without a count (values written before counts were stored) indices are
  probed up to ``probe_limit`` and the scan stops at the first gap.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .exceptions import CorruptRecordError
from .keys import chunk_key
from .models import Item, project_items

logger = logging.getLogger(__name__)

ChunkSource = Callable[[int], Optional[List[Item]]]


@dataclass
class Chunk:
    """A contiguous slice of a record's items stored under ``key``."""
    index: int
    key: str
    items: List[Item] = field(default_factory=list)


class ChunkCodec:
    """
    Splits item sequences into fixed-size chunks and merges them back.

    Args:
        chunk_size: Items per chunk (the last chunk may be shorter).
        direct_threshold: Sequences with at most this many items are not chunked.
        probe_limit: Highest number of indices probed when no count is known.
    """

    def __init__(self, chunk_size: int = 2, direct_threshold: int = 3, probe_limit: int = 20) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.chunk_size = chunk_size
        self.direct_threshold = direct_threshold
        self.probe_limit = probe_limit

    def needs_chunking(self, items: List[Item]) -> bool:
        return len(items) > self.direct_threshold

    def chunk_count(self, n_items: int) -> int:
        return math.ceil(n_items / self.chunk_size)

    def chunk_keys(self, base: str, count: Optional[int] = None) -> List[str]:
        """Keys to probe or clear for ``base``: at least ``probe_limit`` of them."""
        limit = max(self.probe_limit, count or 0)
        return [chunk_key(base, i) for i in range(limit)]

    def split(
        self,
        items: List[Item],
        base: str,
        basic_fields: Tuple[str, ...] = ("id", "name", "url", "path"),
    ) -> Tuple[Optional[List[Item]], List[Chunk]]:
        """
        Split ``items`` for storage under ``base``.

        Returns:
            ``(None, [])`` when the sequence is small enough to store whole,
            otherwise the basic projection and the chunks in index order.
        """
        if not self.needs_chunking(items):
            return None, []
        basic = project_items(items, basic_fields)
        chunks = [
            Chunk(index=i, key=chunk_key(base, i), items=items[start:start + self.chunk_size])
            for i, start in enumerate(range(0, len(items), self.chunk_size))
        ]
        logger.debug("Split %d items under %s into %d chunks.", len(items), base, len(chunks))
        return basic, chunks

    def reconstruct(
        self,
        basic: Optional[List[Item]],
        chunk_source: ChunkSource,
        chunk_count: Optional[int] = None,
    ) -> List[Item]:
        """
        Rebuild a record from its basic projection and chunks.

        Args:
            basic: Basic projection, or None when only chunks are available.
            chunk_source: Returns the items of chunk ``index`` or None when
                absent; may raise ``CorruptRecordError``.
            chunk_count: Stored number of chunks, or None for probing.

        Returns:
            Items in the order first encountered. Items only present in
            chunks are appended after the projection's items.
        """
        accumulated: List[Item] = [dict(item) for item in (basic or [])]
        by_id: Dict[object, Item] = {item.get("id"): item for item in accumulated}

        sparse = chunk_count is not None
        limit = chunk_count if sparse else self.probe_limit
        for index in range(limit):
            try:
                chunk = chunk_source(index)
            except CorruptRecordError as e:
                logger.warning("Skipping corrupt chunk %d: %s", index, e)
                continue
            if chunk is None:
                if sparse:
                    logger.warning("Chunk %d of %d missing; skipping.", index, chunk_count)
                    continue
                break
            if not isinstance(chunk, list):
                logger.warning("Chunk %d is not a list; skipping.", index)
                continue
            for item in chunk:
                if not isinstance(item, dict):
                    continue
                existing = by_id.get(item.get("id"))
                if existing is not None:
                    existing.update(item)
                else:
                    merged = dict(item)
                    accumulated.append(merged)
                    by_id[merged.get("id")] = merged
        return accumulated


__all__ = [
    "Chunk",
    "ChunkCodec",
    "ChunkSource",
]
