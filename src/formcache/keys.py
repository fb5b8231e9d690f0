# src/formcache/keys.py
"""
Persisted key naming for the flat key/value tier.

These formats are load-bearing: the read path and the quota cleanup both
parse keys back, and existing stored data depends on them.

- base key:    ``{prefix}_{formId}``
- chunk key:   ``{prefix}_{formId}_chunk_{n}``
- minimal key: ``{prefix}_minimal_{formId}``
"""

CHUNK_MARKER = "_chunk_"
MINIMAL_MARKER = "minimal"


def base_key(prefix: str, form_id: str) -> str:
    return f"{prefix}_{form_id}"


def chunk_key(base: str, index: int) -> str:
    return f"{base}{CHUNK_MARKER}{index}"


def minimal_key(prefix: str, form_id: str) -> str:
    return f"{prefix}_{MINIMAL_MARKER}_{form_id}"


def setting_key(name: str, form_id: str) -> str:
    return f"{name}_{form_id}"


def is_chunk_key(key: str) -> bool:
    return CHUNK_MARKER in key


def strip_chunk_suffix(key: str) -> str:
    """Return ``key`` with any ``_chunk_N`` suffix removed."""
    marker = key.find(CHUNK_MARKER)
    if marker < 0:
        return key
    return key[:marker]
