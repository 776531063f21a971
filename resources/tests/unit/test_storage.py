"""
Unit tests for the persistent store implementations.
"""

import json

import pytest

from featurebot.core.storage import FeatureStorage, JsonFileStore, MemoryStore
from featurebot.utils.errors import StorageError


class TestMemoryStore:
    """In-memory store."""

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self):
        store = MemoryStore()
        assert await store.load("nothing") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = MemoryStore()
        value = {"items": [1, 2]}
        await store.save("key", value)
        value["items"].append(3)

        loaded = await store.load("key")
        assert loaded == {"items": [1, 2]}
        loaded["items"].append(4)
        assert await store.load("key") == {"items": [1, 2]}

    @pytest.mark.asyncio
    async def test_rejects_non_json_values(self):
        store = MemoryStore()
        with pytest.raises(StorageError):
            await store.save("key", {"bad": object()})

    @pytest.mark.asyncio
    async def test_delete(self):
        store = MemoryStore({"key": 1})
        await store.delete("key")
        assert store.keys() == []


class TestJsonFileStore:
    """JSON file store."""

    @pytest.mark.asyncio
    async def test_round_trip_with_nested_key(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.save("features/message_cache", {"enabled": True})

        assert (tmp_path / "features" / "message_cache.json").exists()
        assert await store.load("features/message_cache") == {"enabled": True}

    @pytest.mark.asyncio
    async def test_dotted_key_keeps_full_name(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.save("settings.v2", [1])

        assert (tmp_path / "settings.v2.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_file_recovers_from_backup(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.save("features", {"version": 1})
        await store.save("features", {"version": 2})

        (tmp_path / "features.json").write_text("{not json", encoding="utf-8")

        assert await store.load("features") == {"version": 1}

    @pytest.mark.asyncio
    async def test_corrupt_file_without_backup_raises(self, tmp_path):
        store = JsonFileStore(tmp_path, create_backup=False)
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StorageError):
            await store.load("broken")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "../escape", "a//b", "with space"])
    async def test_invalid_keys_rejected(self, tmp_path, key):
        store = JsonFileStore(tmp_path)
        with pytest.raises(StorageError):
            await store.save(key, 1)

    @pytest.mark.asyncio
    async def test_delete_removes_file_and_backup(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.save("key", 1)
        await store.save("key", 2)

        await store.delete("key")

        assert await store.load("key") is None
        assert not (tmp_path / "key.json.bak").exists()

    @pytest.mark.asyncio
    async def test_written_file_is_plain_json(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.save("key", {"a": [1, 2]})

        assert json.loads((tmp_path / "key.json").read_text(encoding="utf-8")) == {"a": [1, 2]}


class TestFeatureStorage:
    """Scoped storage handles."""

    @pytest.mark.asyncio
    async def test_default_when_missing(self):
        storage = FeatureStorage(MemoryStore(), "features/alpha")
        assert await storage.load({"fallback": True}) == {"fallback": True}

    @pytest.mark.asyncio
    async def test_child_key(self):
        store = MemoryStore()
        storage = FeatureStorage(store, "features/alpha")
        await storage.child("cache").save({"entries": []})

        assert store.keys() == ["features/alpha/cache"]
