# tests/storage/test_flat_store.py
"""
Tests for the flat key/value tier.

These tests verify:
- get/set/remove and snapshot enumeration
- Capacity enforcement with QuotaExceededError
- JSON helpers and corrupt value detection
- Write-through persistence of JsonFileFlatStore
"""

import json

import pytest

from formcache.exceptions import CorruptRecordError, QuotaExceededError, StorageError
from formcache.storage.flat import JsonFileFlatStore, MemoryFlatStore, entry_size


class TestMemoryFlatStore:
    def test_set_get_remove(self):
        store = MemoryFlatStore()
        store.set("a", "1")
        assert store.get("a") == "1"
        store.remove("a")
        assert store.get("a") is None

    def test_remove_missing_is_noop(self):
        store = MemoryFlatStore()
        store.remove("missing")
        assert len(store) == 0

    def test_key_by_index(self):
        store = MemoryFlatStore()
        store.set("a", "1")
        store.set("b", "2")
        assert [store.key(0), store.key(1), store.key(2)] == ["a", "b", None]

    def test_enumerate_is_snapshot(self):
        store = MemoryFlatStore()
        store.set("a", "1")
        store.set("b", "2")
        pairs = store.enumerate()
        store.remove("a")
        assert list(pairs) == [("a", "1"), ("b", "2")]

    def test_used_bytes_tracks_replacement(self):
        store = MemoryFlatStore()
        store.set("k", "abc")
        store.set("k", "a")
        assert store.used_bytes == entry_size("k", "a")

    def test_quota_exceeded(self):
        store = MemoryFlatStore(capacity_bytes=20)
        store.set("k", "1234")  # 10 bytes
        with pytest.raises(QuotaExceededError) as excinfo:
            store.set("j", "123456789")
        assert excinfo.value.key == "j"
        assert store.get("j") is None
        assert store.used_bytes == 10

    def test_replacing_value_frees_its_space(self):
        store = MemoryFlatStore(capacity_bytes=20)
        store.set("k", "123456789")  # exactly 20 bytes
        store.set("k", "987654321")
        assert store.get("k") == "987654321"

    def test_rejects_non_strings(self):
        with pytest.raises(TypeError):
            MemoryFlatStore().set("k", 5)

    def test_json_helpers(self):
        store = MemoryFlatStore()
        store.set_json("k", {"shape": "full", "items": [{"id": "a"}]})
        assert store.get("k") == '{"shape":"full","items":[{"id":"a"}]}'
        assert store.get_json("k")["items"] == [{"id": "a"}]
        assert store.get_json("missing") is None

    def test_corrupt_json(self):
        store = MemoryFlatStore()
        store.set("k", "{not json")
        with pytest.raises(CorruptRecordError):
            store.get_json("k")


class TestJsonFileFlatStore:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "flat.json"
        JsonFileFlatStore(path).set("listing_images_L1", "[]")

        reopened = JsonFileFlatStore(path)
        assert reopened.get("listing_images_L1") == "[]"
        assert reopened.used_bytes == entry_size("listing_images_L1", "[]")

    def test_remove_is_persisted(self, tmp_path):
        path = tmp_path / "flat.json"
        store = JsonFileFlatStore(path)
        store.set("a", "1")
        store.remove("a")
        assert json.loads(path.read_text()) == {}

    def test_no_tmp_file_left(self, tmp_path):
        path = tmp_path / "flat.json"
        JsonFileFlatStore(path).set("a", "1")
        assert not (tmp_path / "flat.json.tmp").exists()

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "flat.json"
        path.write_text("{{{", encoding="utf-8")
        store = JsonFileFlatStore(path)
        assert len(store) == 0

    def test_persist_failure_rolls_back(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        store = JsonFileFlatStore(blocker / "flat.json")

        with pytest.raises(StorageError):
            store.set("a", "1")
        assert store.get("a") is None
        assert store.used_bytes == 0
