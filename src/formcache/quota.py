# src/formcache/quota.py
"""
Quota monitoring and cleanup for the flat key/value tier.

Usage is an estimate, ``(len(key) + len(value)) * 2`` summed over every
entry, compared against a fixed budget. Each scan is O(total keys), so the
orchestrator only scans on the fallback write path.

Two cleanup strategies are provided, both safe to call speculatively and
idempotent:

- :meth:`QuotaMonitor.cleanup_chunks` removes every chunk key.
- :meth:`QuotaMonitor.force_clean` keeps at most the minimal variant and
  the literal base key of every key group, never touching keys that look
  like session state.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from .keys import MINIMAL_MARKER, is_chunk_key, strip_chunk_suffix
from .logging_config import log_display
from .models import QuotaSnapshot
from .storage.flat import FlatStore, entry_size

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_BYTES = 5_242_880
DEFAULT_PROTECTED_MARKERS = ("auth", "token", "session", "current")


class QuotaMonitor:
    """
    Estimates flat-tier usage and frees space on demand.

    Args:
        flat: The flat store to inspect.
        budget_bytes: Budget the estimate is measured against.
        near_full_threshold: Default ratio for :meth:`is_near_full`.
        protected_markers: Substrings of keys that cleanup never removes.
    """

    def __init__(
        self,
        flat: FlatStore,
        budget_bytes: int = DEFAULT_BUDGET_BYTES,
        near_full_threshold: float = 0.8,
        protected_markers: Iterable[str] = DEFAULT_PROTECTED_MARKERS,
    ) -> None:
        self._flat = flat
        self.budget_bytes = budget_bytes
        self.near_full_threshold = near_full_threshold
        self.protected_markers = tuple(protected_markers)

    def snapshot(self) -> QuotaSnapshot:
        used = 0
        count = 0
        for key, value in self._flat.enumerate():
            used += entry_size(key, value)
            count += 1
        return QuotaSnapshot(used_bytes=used, budget_bytes=self.budget_bytes, key_count=count)

    def usage_ratio(self) -> float:
        return self.snapshot().ratio

    def is_near_full(self, threshold: Optional[float] = None) -> bool:
        """True when usage is above ``threshold``, or when usage cannot be measured."""
        limit = self.near_full_threshold if threshold is None else threshold
        try:
            ratio = self.usage_ratio()
        except Exception as e:
            logger.warning("Could not estimate flat store usage: %s", e)
            return True
        if ratio > limit:
            log_display(logger, logging.INFO, "Flat store usage at %.1f%% of budget.", ratio * 100)
            return True
        return False

    def _is_protected(self, key: str) -> bool:
        return any(marker in key for marker in self.protected_markers)

    def _remove_all(self, keys: List[str]) -> int:
        removed = 0
        for key in keys:
            try:
                self._flat.remove(key)
            except Exception as e:
                logger.warning("Failed to remove flat store key %s: %s", key, e)
            else:
                removed += 1
        return removed

    def cleanup_chunks(self) -> int:
        """Remove every chunk-suffixed key. Returns the number removed."""
        targets = [key for key in self._flat.keys() if is_chunk_key(key)]
        removed = self._remove_all(targets)
        if removed:
            logger.info("Removed %d chunk keys from flat store.", removed)
        return removed

    def force_clean(self) -> int:
        """
        Reduce every multi-key group to its minimal variant and base key.

        Keys are grouped by their base key (chunk suffix stripped). In groups
        with more than one member, every key other than the literal base key
        and keys containing ``minimal`` is removed. Protected keys are
        skipped entirely.

        Returns:
            Number of keys removed.
        """
        groups: Dict[str, List[str]] = defaultdict(list)
        for key in self._flat.keys():
            if self._is_protected(key):
                continue
            groups[strip_chunk_suffix(key)].append(key)

        targets: List[str] = []
        for base, members in groups.items():
            if len(members) <= 1:
                continue
            targets.extend(k for k in members if k != base and MINIMAL_MARKER not in k)

        removed = self._remove_all(targets)
        if removed:
            logger.warning("Force clean removed %d flat store keys.", removed)
        return removed


__all__ = [
    "QuotaMonitor",
    "DEFAULT_BUDGET_BYTES",
    "DEFAULT_PROTECTED_MARKERS",
]
