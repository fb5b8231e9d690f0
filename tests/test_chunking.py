# tests/test_chunking.py
"""
Tests for ChunkCodec.

These tests verify:
- The direct-storage threshold
- Chunk count, keys and sizes produced by split
- Reconstruction merging against a basic projection
- Gap handling with and without a stored chunk count
"""

import pytest

from formcache.chunking import Chunk, ChunkCodec
from formcache.exceptions import CorruptRecordError


@pytest.fixture
def codec():
    return ChunkCodec(chunk_size=2, direct_threshold=3, probe_limit=20)


def _source(chunks):
    """Chunk source backed by a dict of index -> items."""
    return lambda index: chunks.get(index)


class TestSplit:
    def test_small_sequences_are_not_chunked(self, codec, images):
        basic, chunks = codec.split(images(3), "listing_images_L1")
        assert basic is None
        assert chunks == []

    def test_seven_items_make_four_chunks(self, codec, images):
        basic, chunks = codec.split(images(7), "listing_images_L1")
        assert len(chunks) == 4
        assert [len(c.items) for c in chunks] == [2, 2, 2, 1]
        assert [c.key for c in chunks] == [f"listing_images_L1_chunk_{i}" for i in range(4)]
        assert all(isinstance(c, Chunk) for c in chunks)

    def test_basic_projection_drops_large_fields(self, codec, images):
        basic, _ = codec.split(images(5), "listing_images_L1")
        assert len(basic) == 5
        assert all(set(item) == {"id", "name", "url", "path"} for item in basic)

    def test_custom_basic_fields(self, codec, documents):
        basic, _ = codec.split(documents(4), "listing_documents_L1", ("id", "category"))
        assert basic[0] == {"id": "doc0", "category": "legal"}

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            ChunkCodec(chunk_size=0)

    def test_chunk_keys_cover_stored_count(self, codec):
        assert len(codec.chunk_keys("b")) == 20
        assert len(codec.chunk_keys("b", 25)) == 25


class TestReconstruct:
    def test_round_trip_of_seven_items(self, codec, images):
        """Split then reconstruct returns the same items by id."""
        items = images(7)
        basic, chunks = codec.split(items, "listing_images_L1")
        stored = {c.index: c.items for c in chunks}

        rebuilt = codec.reconstruct(basic, _source(stored), chunk_count=len(chunks))

        assert {i["id"] for i in rebuilt} == {i["id"] for i in items}
        by_id = {i["id"]: i for i in rebuilt}
        for item in items:
            assert by_id[item["id"]] == item

    def test_round_trip_without_count(self, codec, images):
        items = images(6)
        basic, chunks = codec.split(items, "k")
        rebuilt = codec.reconstruct(basic, _source({c.index: c.items for c in chunks}))
        assert len(rebuilt) == 6

    def test_chunk_fields_win(self, codec):
        basic = [{"id": "a", "name": "old"}]
        rebuilt = codec.reconstruct(basic, _source({0: [{"id": "a", "name": "new", "preview": "p"}]}))
        assert rebuilt == [{"id": "a", "name": "new", "preview": "p"}]

    def test_chunk_only_items_are_appended(self, codec):
        basic = [{"id": "a"}]
        rebuilt = codec.reconstruct(basic, _source({0: [{"id": "b"}]}))
        assert [i["id"] for i in rebuilt] == ["a", "b"]

    def test_no_basic(self, codec):
        rebuilt = codec.reconstruct(None, _source({0: [{"id": "a"}, {"id": "b"}], 1: [{"id": "c"}]}))
        assert [i["id"] for i in rebuilt] == ["a", "b", "c"]

    def test_nothing_at_all(self, codec):
        assert codec.reconstruct(None, _source({})) == []

    def test_probe_stops_at_first_gap_without_count(self, codec):
        chunks = {0: [{"id": "a"}], 2: [{"id": "c"}]}
        rebuilt = codec.reconstruct(None, _source(chunks))
        assert [i["id"] for i in rebuilt] == ["a"]

    def test_stored_count_skips_gaps(self, codec):
        chunks = {0: [{"id": "a"}], 2: [{"id": "c"}]}
        rebuilt = codec.reconstruct(None, _source(chunks), chunk_count=3)
        assert [i["id"] for i in rebuilt] == ["a", "c"]

    def test_probe_limit_bounds_scan(self):
        codec = ChunkCodec(probe_limit=2)
        chunks = {i: [{"id": str(i)}] for i in range(5)}
        assert len(codec.reconstruct(None, _source(chunks))) == 2

    def test_corrupt_chunk_is_skipped(self, codec):
        def source(index):
            if index == 0:
                raise CorruptRecordError("k_chunk_0")
            if index == 1:
                return [{"id": "b"}]
            return None

        rebuilt = codec.reconstruct(None, source)
        assert [i["id"] for i in rebuilt] == ["b"]

    def test_basic_is_not_mutated(self, codec):
        basic = [{"id": "a", "name": "old"}]
        codec.reconstruct(basic, _source({0: [{"id": "a", "name": "new"}]}))
        assert basic == [{"id": "a", "name": "old"}]
