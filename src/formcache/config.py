# src/formcache/config.py
"""
Pydantic models for formcache configuration.

Each tier gets its own model, mirroring the way the tiers themselves are
split. ``CacheConfig`` aggregates them and is what ``create_tiered_cache``
consumes. Configuration can be built in code or loaded from the
``[formcache]`` table of a TOML file::

    [formcache.flat]
    backend = "json"
    path = "~/.local/share/formcache/flat_store.json"

    [formcache.quota]
    near_full_threshold = 0.75

The same file may carry a ``[logging]`` table for ``logging_config``.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from .exceptions import ConfigError
from .models import DEFAULT_CATEGORIES, RecordCategory

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FORMCACHE_CONFIG"
DEFAULT_COLLECTIONS = ["images", "documents", "formData", "settings"]


class FlatStoreConfig(BaseModel):
    """Configuration for the synchronous key/value tier.

    Attributes:
        backend: ``"memory"`` (process lifetime) or ``"json"`` (file backed).
        path: JSON file used by the json backend.
        capacity_bytes: Hard ceiling, measured like the quota estimate.
    """

    backend: Literal["memory", "json"] = Field(default="memory", description="Flat store backend")
    path: str = Field(
        default="~/.local/share/formcache/flat_store.json",
        description="JSON file path for the json backend",
    )
    capacity_bytes: int = Field(default=5 * 1024 * 1024, gt=0, description="Hard capacity ceiling")


class StructuredStoreConfig(BaseModel):
    """Configuration for the asynchronous structured tier.

    Attributes:
        enabled: When False the tier is constructed in Failed state and every
            call falls through to the flat tier.
        backend: ``"sqlite"`` (aiosqlite file) or ``"memory"``.
        db_path: SQLite database path.
        name: Logical database name passed to the engine.
        version: Schema version; raising it triggers the upgrade callback.
        collections: Collections created on first open.
    """

    enabled: bool = Field(default=True, description="Enable structured storage tier")
    backend: Literal["sqlite", "memory"] = Field(default="sqlite", description="Engine backend")
    db_path: str = Field(
        default="~/.local/share/formcache/structured.db",
        description="SQLite database path",
    )
    name: str = Field(default="formcache", description="Logical database name")
    version: int = Field(default=1, ge=1, description="Schema version")
    collections: List[str] = Field(default_factory=lambda: list(DEFAULT_COLLECTIONS))


class QuotaConfig(BaseModel):
    """Configuration for flat-tier quota monitoring.

    Attributes:
        budget_bytes: Budget the usage estimate is compared against.
        near_full_threshold: Ratio above which cleanup is triggered.
        protected_markers: Substrings marking keys ``force_clean`` never touches.
    """

    budget_bytes: int = Field(default=5_242_880, gt=0, description="Estimated flat-tier budget")
    near_full_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    protected_markers: List[str] = Field(
        default_factory=lambda: ["auth", "token", "session", "current"]
    )


class ChunkingConfig(BaseModel):
    """Configuration for splitting oversized records.

    Attributes:
        chunk_size: Items per chunk.
        direct_threshold: Records with at most this many items are stored whole.
        probe_limit: Chunk indices probed (and cleared) when no count is stored.
    """

    chunk_size: int = Field(default=2, ge=1)
    direct_threshold: int = Field(default=3, ge=0)
    probe_limit: int = Field(default=20, ge=1)


class RemoteSyncConfig(BaseModel):
    """Configuration for best-effort remote backup.

    Attributes:
        enabled: Whether records are pushed to / pulled from the remote store.
        collection: Remote collection keyed by form id.
        fallback_collection: Collection keyed by user id for invalid form ids.
        queue_size: Maximum pending background jobs; extra jobs are dropped.
        max_retries: Retries per job after the first attempt.
        base_delay_seconds: First backoff delay.
        max_delay_seconds: Backoff ceiling.
    """

    enabled: bool = Field(default=True, description="Enable remote backup")
    collection: str = Field(default="listings")
    fallback_collection: str = Field(default="user-data")
    queue_size: int = Field(default=100, ge=1)
    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=0.1, ge=0.0)
    max_delay_seconds: float = Field(default=5.0, ge=0.0)

    @model_validator(mode="after")
    def check_delays(self) -> "RemoteSyncConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class CacheConfig(BaseModel):
    """Top-level configuration for a ``TieredCache``."""

    flat: FlatStoreConfig = Field(default_factory=FlatStoreConfig)
    structured: StructuredStoreConfig = Field(default_factory=StructuredStoreConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    remote: RemoteSyncConfig = Field(default_factory=RemoteSyncConfig)
    categories: Dict[str, RecordCategory] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORIES)
    )

    @model_validator(mode="after")
    def check_category_collections(self) -> "CacheConfig":
        """Every category must map to a collection the structured store creates."""
        missing = [
            c.collection for c in self.categories.values()
            if c.collection not in self.structured.collections
        ]
        if missing:
            raise ValueError(f"categories reference unknown collections: {missing}")
        return self


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_toml(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a TOML file, raising ``ConfigError`` when it cannot be parsed."""
    path = Path(os.path.expanduser(str(path)))
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> CacheConfig:
    """
    Load a ``CacheConfig``.

    The file is taken from ``path`` or the ``FORMCACHE_CONFIG`` environment
    variable. A missing file yields defaults; an unreadable or invalid one
    raises ``ConfigError``. ``overrides`` is deep-merged over the file values.

    Args:
        path: Optional TOML file path.
        overrides: Optional nested dict applied last.

    Returns:
        The validated configuration.
    """
    data: Dict[str, Any] = {}
    source = path or os.environ.get(CONFIG_ENV_VAR)
    if source:
        resolved = Path(os.path.expanduser(str(source)))
        if resolved.exists():
            data = read_toml(resolved).get("formcache", {})
            logger.debug("Loaded formcache config from %s.", resolved)
        else:
            logger.info("Config file %s not found; using defaults.", resolved)

    if overrides:
        data = _deep_merge(data, overrides)

    try:
        return CacheConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid formcache configuration: {e}") from e
