# tests/storage/test_sqlite_engine.py
"""
Tests for the aiosqlite-backed structured engine.

Each test uses its own database file under ``tmp_path``.
"""

import aiosqlite
import pytest

from formcache.exceptions import CorruptRecordError, StorageError
from formcache.models import Readiness
from formcache.storage.sqlite_engine import SqliteStructuredEngine
from formcache.storage.structured import StructuredStore


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "nested" / "structured.db"


class TestSqliteEngine:
    @pytest.mark.asyncio
    async def test_creates_tables_on_first_open(self, db_path):
        store = StructuredStore(SqliteStructuredEngine(db_path))
        assert await store.open() is Readiness.READY
        await store.close()

        async with aiosqlite.connect(db_path) as conn:
            async with conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'") as cursor:
                tables = {row[0] for row in await cursor.fetchall()}
            async with conn.execute("PRAGMA user_version") as cursor:
                version = (await cursor.fetchone())[0]
        assert {"images", "documents", "formData", "settings"} <= tables
        assert version == 1

    @pytest.mark.asyncio
    async def test_put_get_delete(self, db_path):
        store = StructuredStore(SqliteStructuredEngine(db_path))
        await store.put("images", "listing_images_L1", {"items": [{"id": "a"}]})
        assert await store.get("images", "listing_images_L1") == {"items": [{"id": "a"}]}
        assert await store.delete("images", "listing_images_L1") is True
        assert await store.delete("images", "listing_images_L1") is False
        assert await store.get("images", "listing_images_L1") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, db_path):
        store = StructuredStore(SqliteStructuredEngine(db_path))
        await store.put("settings", "featured_image_L1", {"value": 2})
        await store.close()

        reopened = StructuredStore(SqliteStructuredEngine(db_path))
        assert await reopened.get("settings", "featured_image_L1") == {"value": 2}
        await reopened.close()

    @pytest.mark.asyncio
    async def test_version_upgrade_adds_table(self, db_path):
        v1 = StructuredStore(SqliteStructuredEngine(db_path), version=1, collections=("images",))
        await v1.open()
        await v1.close()

        v2 = StructuredStore(SqliteStructuredEngine(db_path), version=2, collections=("images", "floorplans"))
        await v2.put("floorplans", "k", [1, 2])
        assert await v2.get("floorplans", "k") == [1, 2]
        await v2.close()

    @pytest.mark.asyncio
    async def test_downgrade_fails(self, db_path):
        v2 = StructuredStore(SqliteStructuredEngine(db_path), version=2)
        await v2.open()
        await v2.close()

        v1 = StructuredStore(SqliteStructuredEngine(db_path), version=1)
        assert await v1.open() is Readiness.FAILED

    @pytest.mark.asyncio
    async def test_corrupt_row(self, db_path):
        store = StructuredStore(SqliteStructuredEngine(db_path))
        await store.open()
        await store.close()

        async with aiosqlite.connect(db_path) as conn:
            await conn.execute(
                "INSERT INTO images (key, value, updated_at) VALUES (?, ?, ?)",
                ("broken", "{not json", 0.0),
            )
            await conn.commit()

        reopened = StructuredStore(SqliteStructuredEngine(db_path))
        with pytest.raises(CorruptRecordError):
            await reopened.get("images", "broken")
        await reopened.close()

    @pytest.mark.asyncio
    async def test_unknown_collection(self, db_path):
        store = StructuredStore(SqliteStructuredEngine(db_path))
        await store.open()
        with pytest.raises(StorageError):
            await store.get("nope", "k")
        await store.close()

    @pytest.mark.asyncio
    async def test_invalid_collection_name_fails_init(self, db_path):
        store = StructuredStore(SqliteStructuredEngine(db_path), collections=("bad name;",))
        assert await store.open() is Readiness.FAILED

    @pytest.mark.asyncio
    async def test_unopenable_path_fails_init(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not directory", encoding="utf-8")
        store = StructuredStore(SqliteStructuredEngine(blocker / "db.sqlite"))
        assert await store.open() is Readiness.FAILED
