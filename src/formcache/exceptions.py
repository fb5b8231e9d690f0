# src/formcache/exceptions.py
"""
Custom exceptions for the formcache library.

This module defines the error taxonomy used across the cache tiers so that
the orchestrator can decide, per failure, whether to fall through to the
next tier, retry after cleanup, or give up. Absence of a record is never an
exception: lookups return ``None`` (or an empty list) instead.
"""

from typing import Optional


class FormCacheError(Exception):
    """Base class for all formcache specific errors."""
    def __init__(self, message: str = "An unspecified error occurred in formcache."):
        super().__init__(message)

class ConfigError(FormCacheError):
    """Raised for errors related to configuration loading or validation."""
    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)

class StorageError(FormCacheError):
    """Base class for errors related to a local storage tier."""
    def __init__(self, message: str = "Storage error."):
        super().__init__(message)

class TierUnavailableError(StorageError):
    """
    Raised when a tier is unsupported, not initialized, or has permanently
    failed its initialization. Callers should skip to the next tier.
    """
    def __init__(self, tier: str = "unknown", message: str = "Storage tier unavailable."):
        self.tier = tier
        super().__init__(f"{message} Tier: '{tier}'")

class QuotaExceededError(StorageError):
    """Raised when the flat key/value tier has no room left for a write."""
    def __init__(self, key: str = "", needed: int = 0, capacity: int = 0, message: str = "Storage quota exceeded."):
        self.key = key
        self.needed = needed
        self.capacity = capacity
        super().__init__(f"{message} Key: '{key}', needed: {needed} bytes, capacity: {capacity} bytes.")

class CorruptRecordError(StorageError):
    """
    Raised when a stored value cannot be parsed or validated.
    The orchestrator treats this exactly like a missing record.
    """
    def __init__(self, key: str = "", message: str = "Stored record is corrupt.", detail: Optional[str] = None):
        self.key = key
        text = f"{message} Key: '{key}'"
        if detail:
            text += f" ({detail})"
        super().__init__(text)

class RemoteUnreachableError(FormCacheError):
    """Raised when the remote durable store cannot be read or written."""
    def __init__(self, message: str = "Remote store unreachable."):
        super().__init__(message)
