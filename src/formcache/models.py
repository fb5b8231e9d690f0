# src/formcache/models.py
"""
Core data models for the formcache library.

This module defines the Pydantic models and small value types shared by the
cache tiers: the cached record itself, the per-category projection rules,
the structured store lifecycle states, queued operations, quota snapshots
and write outcomes.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from .keys import base_key, minimal_key

Item = Dict[str, Any]


class RecordShape(str, Enum):
    """
    Discriminant stored alongside every flat-tier value.

    FULL values carry complete items, BASIC values carry a projection whose
    remaining fields live in chunk keys, MINIMAL values carry only the
    fields needed to render a listing.
    """
    FULL = "full"
    BASIC = "basic"
    MINIMAL = "minimal"


class Readiness(str, Enum):
    """Lifecycle state of the structured store."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class RecordCategory(BaseModel):
    """
    Describes how one kind of record (images, documents, ...) is keyed,
    projected and mirrored to the remote store.

    Attributes:
        name: Category name used by callers (``"images"``).
        key_prefix: Prefix for flat-tier keys (``"listing_images"``).
        collection: Structured store collection holding full records.
        remote_field: Field of the remote document holding the items.
        basic_fields: Fields kept in the basic projection of a chunked record.
        mirror_fields: Fields mirrored to the flat tier after a structured write.
        minimal_fields: Fields kept when a write degrades to a minimal projection.
        large_fields: Fields whose absence marks a legacy value as a basic projection.
    """
    name: str = Field(description="Category name used by callers.")
    key_prefix: str = Field(description="Prefix for flat-tier keys.")
    collection: str = Field(description="Structured store collection name.")
    remote_field: str = Field(description="Remote document field holding the items.")
    basic_fields: Tuple[str, ...] = Field(default=("id", "name", "url", "path"))
    mirror_fields: Tuple[str, ...] = Field(default=("id", "url", "name"))
    minimal_fields: Tuple[str, ...] = Field(default=("id", "url", "name"))
    large_fields: Tuple[str, ...] = Field(default=())

    @field_validator("basic_fields", "mirror_fields", "minimal_fields")
    @classmethod
    def require_id(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Projections must keep ``id`` so they can be merged back."""
        if "id" not in v:
            raise ValueError("projection fields must include 'id'")
        return v

    @property
    def has_mirror(self) -> bool:
        """False when the mirror projection would keep nothing but ``id``."""
        return set(self.mirror_fields) != {"id"}

    @property
    def has_minimal(self) -> bool:
        """False when a minimal projection would keep nothing but ``id``."""
        return set(self.minimal_fields) != {"id"}

    def base_key(self, form_id: str) -> str:
        return base_key(self.key_prefix, form_id)

    def minimal_key(self, form_id: str) -> str:
        return minimal_key(self.key_prefix, form_id)


DEFAULT_CATEGORIES: Dict[str, RecordCategory] = {
    "images": RecordCategory(
        name="images",
        key_prefix="listing_images",
        collection="images",
        remote_field="images",
        basic_fields=("id", "name", "url", "path"),
        mirror_fields=("id", "url", "name"),
        minimal_fields=("id", "url", "name"),
        large_fields=("preview",),
    ),
    "documents": RecordCategory(
        name="documents",
        key_prefix="listing_documents",
        collection="documents",
        remote_field="documents",
        basic_fields=("id", "name", "url", "path", "category", "isPublic"),
        mirror_fields=("id", "name", "url", "category", "isPublic"),
        minimal_fields=("id", "url", "name", "category"),
        large_fields=("description",),
    ),
    "form": RecordCategory(
        name="form",
        key_prefix="listing_form",
        collection="formData",
        remote_field="formData",
        basic_fields=("id",),
        mirror_fields=("id",),
        minimal_fields=("id",),
    ),
}


class CacheRecord(BaseModel):
    """
    A named, ordered sequence of items scoped to a form.

    Item ids must be unique within a record; insertion order is preserved.

    Attributes:
        category: Name of the record category.
        form_id: The form/listing the record belongs to.
        items: Ordered items, each a dict carrying a stable ``id``.
        timestamp: Unix time of the write that produced this record.
        shape: Which projection ``items`` holds.
    """
    category: str = Field(description="Record category name.")
    form_id: str = Field(description="Form/listing identifier.")
    items: List[Item] = Field(default_factory=list, description="Ordered items with stable ids.")
    timestamp: float = Field(default_factory=time.time, description="Unix timestamp of the write.")
    shape: RecordShape = Field(default=RecordShape.FULL, description="Projection held in items.")

    @model_validator(mode="after")
    def check_unique_ids(self) -> "CacheRecord":
        seen = set()
        for item in self.items:
            if "id" not in item:
                raise ValueError(f"every item in a '{self.category}' record needs an 'id'")
            if item["id"] in seen:
                raise ValueError(f"duplicate item id {item['id']!r} in '{self.category}' record")
            seen.add(item["id"])
        return self

    def project(self, fields: Tuple[str, ...], shape: RecordShape) -> "CacheRecord":
        """Return a copy whose items keep only ``fields``."""
        return self.model_copy(update={
            "items": project_items(self.items, fields),
            "shape": shape,
        })


def project_items(items: List[Item], fields: Tuple[str, ...]) -> List[Item]:
    """Reduce each item to the listed fields, skipping fields it does not have."""
    return [{f: item[f] for f in fields if f in item} for item in items]


@dataclass
class PendingOperation:
    """
    A deferred store call queued while the structured store is not ready.

    Attributes:
        name: Human readable name used in logs.
        execute: Zero-argument coroutine factory performing the call.
    """
    name: str
    execute: Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class QuotaSnapshot:
    """Estimated flat-tier usage against its budget. Derived, never persisted."""
    used_bytes: int
    budget_bytes: int
    key_count: int

    @property
    def ratio(self) -> float:
        if self.budget_bytes <= 0:
            return 1.0
        return self.used_bytes / self.budget_bytes

    @property
    def percent(self) -> float:
        return self.ratio * 100


class WriteOutcome(str, Enum):
    """Where a write landed."""
    STRUCTURED = "structured"
    QUEUED = "queued"
    FLAT = "flat"
    CHUNKED = "chunked"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class WriteResult:
    """
    Result of a ``TieredCache.write`` call.

    Truthy unless every tier failed. A FAILED result means the data may be
    lost for this session and the caller should prompt for re-entry.
    """
    outcome: WriteOutcome
    key: str = ""
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is not WriteOutcome.FAILED

    @property
    def degraded(self) -> bool:
        return self.outcome is WriteOutcome.DEGRADED

    def __bool__(self) -> bool:
        return self.ok
