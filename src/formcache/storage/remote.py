# src/formcache/storage/remote.py
"""
Remote durable store adapter.

The remote store itself (a managed document database) is an external
collaborator; this module only defines the interface the cache consumes
and :class:`RemoteBackup`, which maps cache records onto remote documents:

- collection ``listings`` (configurable), document id = form id
- one field per record category (``images``, ``documents``, ...)
- ``updatedAt`` set to the ISO-8601 UTC time of the push

Form ids that are not real listing ids (``""``, ``default``,
``undefined``, ``null``) are redirected to a per-user fallback collection
with ``tempId`` recording the original id.

Every failure is translated to :class:`RemoteUnreachableError`.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

from ..exceptions import RemoteUnreachableError
from ..models import CacheRecord, Item, RecordCategory

logger = logging.getLogger(__name__)

INVALID_FORM_IDS = frozenset({"", "default", "undefined", "null"})


@runtime_checkable
class RemoteStore(Protocol):
    """Document store consumed by the cache. Both calls may fail independently."""

    async def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def upsert_document(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` into the document, creating it if needed."""
        ...


class InMemoryRemoteStore:
    """Dictionary-backed :class:`RemoteStore` for local runs and tests."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self.collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def upsert_document(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        docs = self.collections.setdefault(collection, {})
        docs.setdefault(doc_id, {}).update(copy.deepcopy(fields))


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class RemoteBackup:
    """
    Pushes records to and pulls records from a :class:`RemoteStore`.

    Args:
        store: The remote collaborator.
        collection: Collection keyed by form id.
        fallback_collection: Collection keyed by user id for invalid form ids.
        user_id_provider: Returns the current user id (``None`` → ``"anonymous"``).
    """

    def __init__(
        self,
        store: RemoteStore,
        collection: str = "listings",
        fallback_collection: str = "user-data",
        user_id_provider: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self._store = store
        self._collection = collection
        self._fallback_collection = fallback_collection
        self._user_id_provider = user_id_provider

    def _current_user(self) -> str:
        user_id = self._user_id_provider() if self._user_id_provider else None
        return user_id or "anonymous"

    def locate(self, form_id: str) -> Tuple[str, str]:
        """Return ``(collection, doc_id)`` for ``form_id``."""
        if form_id in INVALID_FORM_IDS:
            return self._fallback_collection, self._current_user()
        return self._collection, form_id

    async def push(self, record: CacheRecord, category: RecordCategory) -> None:
        """Upsert ``record.items`` into the remote document for its form."""
        collection, doc_id = self.locate(record.form_id)
        fields: Dict[str, Any] = {
            category.remote_field: record.items,
            "updatedAt": _utc_now_iso(),
        }
        if collection == self._fallback_collection:
            logger.warning(
                "Invalid form id %r for remote backup; using %s/%s.",
                record.form_id, collection, doc_id,
            )
            fields["tempId"] = record.form_id or "default"
        try:
            await self._store.upsert_document(collection, doc_id, fields)
        except Exception as e:
            raise RemoteUnreachableError(f"Upsert of {collection}/{doc_id} failed: {e}") from e
        logger.debug("Pushed %d %s to %s/%s.", len(record.items), category.name, collection, doc_id)

    async def pull(self, form_id: str, category: RecordCategory) -> Optional[list[Item]]:
        """Return the remote items for ``form_id``, or None when absent."""
        collection, doc_id = self.locate(form_id)
        try:
            doc = await self._store.get_document(collection, doc_id)
        except Exception as e:
            raise RemoteUnreachableError(f"Fetch of {collection}/{doc_id} failed: {e}") from e
        if not doc:
            return None
        items = doc.get(category.remote_field)
        if not isinstance(items, list) or not items:
            return None
        return items


__all__ = [
    "RemoteStore",
    "InMemoryRemoteStore",
    "RemoteBackup",
    "INVALID_FORM_IDS",
]
