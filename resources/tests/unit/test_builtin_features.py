"""
Unit tests for the built-in message cache, anti-delete and auto-react features.
"""

import time
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from featurebot.core.commands import CommandRegistry
from featurebot.core.events import EventBus
from featurebot.core.interfaces import ITransportClient
from featurebot.core.storage import MemoryStore
from featurebot.core.transport import TransportBridge
from featurebot.features.builtin.anti_delete import AntiDeleteFeature, describe_message
from featurebot.features.builtin.auto_react import AutoReactFeature
from featurebot.features.builtin.message_cache import MessageCacheFeature
from featurebot.features.interfaces import FeatureState
from featurebot.features.loader import FeatureLoader
from featurebot.features.manager import FeatureManager
from featurebot.utils.config import FeatureBotSettings


def message(message_id, chat_id="chat1", text="hello", from_me=False):
    return {
        "key": {"id": message_id, "remoteJid": chat_id, "fromMe": from_me},
        "message": {"conversation": text},
        "messageTimestamp": 1700000000
    }


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def client():
    return AsyncMock(spec=ITransportClient)


@pytest.fixture
def commands():
    return CommandRegistry()


@pytest.fixture
def settings():
    return FeatureBotSettings(
        _env_file=None,
        features_config={
            "message_cache": {"settings": {"max_per_chat": 2}},
            "anti_delete": {"settings": {"target": "owner@chat"}}
        }
    )


@pytest.fixture
def make_manager(bus, store, settings, commands):
    def _make():
        loader = FeatureLoader()
        loader.register(MessageCacheFeature)
        loader.register(AntiDeleteFeature)
        manager = FeatureManager(bus, store, loader=loader, settings=settings, command_router=commands)
        manager.discover()
        return manager
    return _make


@pytest_asyncio.fixture
async def running(make_manager, bus, client):
    bridge = TransportBridge(bus, client)
    bridge.attach()
    manager = make_manager()
    errors = await manager.start_all()
    assert errors == {}
    yield manager
    await manager.stop_all()
    bridge.detach()


class TestMessageCacheFeature:
    """Message cache handlers and commands."""

    @pytest.mark.asyncio
    async def test_upsert_caches_per_chat_with_bound(self, running, bus):
        await bus.emit("messages.upsert", {"messages": [message("m1"), message("m2"), message("m3")]})

        cache = running.get_feature("message_cache")
        assert cache.get_message("m1") is None
        assert [m["key"]["id"] for m in cache.get_messages("chat1")] == ["m3", "m2"]
        assert cache.get_message({"id": "m3"})["message"]["conversation"] == "hello"

    @pytest.mark.asyncio
    async def test_update_merges_changes(self, running, bus):
        await bus.emit("messages.upsert", {"messages": [message("m1")]})
        await bus.emit("messages.update", {"messages": [{"key": {"id": "m1"}, "update": {"status": 3}}]})

        cached = running.get_feature("message_cache").get_message("m1")
        assert cached["status"] == 3
        assert cached["message"]["conversation"] == "hello"

    @pytest.mark.asyncio
    async def test_delete_marks_entry(self, running, bus):
        await bus.emit("messages.upsert", {"messages": [message("m1")]})
        await bus.emit("messages.delete", {"keys": [{"id": "m1", "remoteJid": "chat1"}]})

        entry = running.get_feature("message_cache").get_entry("m1")
        assert entry.deleted is True

    @pytest.mark.asyncio
    async def test_malformed_messages_are_ignored(self, running, bus):
        await bus.emit("messages.upsert", {"messages": [{"no": "key"}, "junk", message("m1")]})

        assert running.get_feature("message_cache").get_cache_stats()["total_entries"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_event_sweeps_expired(self, running, bus):
        cache_feature = running.get_feature("message_cache")
        cache_feature.cache.put("chat1", "old", message("old"), timestamp=time.time() - 4 * 24 * 60 * 60)

        await bus.emit("cache.cleanup", {})

        assert cache_feature.get_message("old") is None

    @pytest.mark.asyncio
    async def test_clear_event_for_one_chat(self, running, bus):
        await bus.emit("messages.upsert", {"messages": [message("a", "chat1"), message("b", "chat2")]})

        await bus.emit("cache.clear", {"chat_id": "chat1"})

        cache_feature = running.get_feature("message_cache")
        assert cache_feature.get_message("a") is None
        assert cache_feature.get_message("b") is not None

    @pytest.mark.asyncio
    async def test_commands(self, running, bus, commands):
        await bus.emit("messages.upsert", {"messages": [message("m1")]})

        stats = await commands.dispatch("cachestats")
        assert "Total messages: 1" in stats

        reply = await commands.dispatch("clearcache", [])
        assert reply == "Cleared all 1 cached messages"
        assert running.get_feature("message_cache").get_cache_stats()["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_connection_close_saves_snapshot(self, running, bus, store):
        await bus.emit("messages.upsert", {"messages": [message("m1")]})

        await bus.emit("connection.update", {"connection": "close"})

        snapshot = await store.load("features/message_cache/cache")
        assert [entry["entry_id"] for entry in snapshot["entries"]] == ["m1"]
        assert running.get_feature("message_cache").connection_state == "close"

    @pytest.mark.asyncio
    async def test_cache_survives_restart(self, make_manager, bus):
        manager = make_manager()
        await manager.start_all()
        await bus.emit("messages.upsert", {"messages": [message("m1")]})
        await manager.stop_all()

        restarted = make_manager()
        await restarted.start_all()

        assert restarted.get_feature("message_cache").get_message("m1") is not None
        await restarted.stop_all()

    @pytest.mark.asyncio
    async def test_sweeper_runs_only_while_started(self, running):
        cache_feature = running.get_feature("message_cache")
        assert cache_feature.get_status()["sweeper_running"] is True

        await running.stop("message_cache")

        assert cache_feature.cache.sweeper_running is False
        assert cache_feature.get_status()["sweeper_running"] is False


class TestAntiDeleteFeature:
    """Deleted message recovery."""

    @pytest.mark.asyncio
    async def test_deleted_message_is_forwarded(self, running, bus, client):
        await bus.emit("messages.upsert", {"messages": [message("m1", text="secret")]})

        await bus.emit("messages.delete", {"keys": [{"id": "m1", "remoteJid": "chat1"}]})

        client.send.assert_awaited_once()
        target, payload = client.send.await_args.args
        assert target == "owner@chat"
        assert "secret" in payload["text"]
        assert "chat1" in payload["text"]

        history = running.get_feature("anti_delete").get_delete_history("chat1")
        assert [record["message_id"] for record in history] == ["m1"]

    @pytest.mark.asyncio
    async def test_own_and_unknown_deletions_are_not_forwarded(self, running, bus, client):
        await bus.emit("messages.upsert", {"messages": [message("mine", from_me=True)]})

        await bus.emit("messages.delete", {"keys": [
            {"id": "mine", "remoteJid": "chat1", "fromMe": True},
            {"id": "unknown", "remoteJid": "chat1"}
        ]})

        client.send.assert_not_awaited()
        assert running.get_feature("anti_delete").get_delete_history() == []

    @pytest.mark.asyncio
    async def test_no_target_records_without_forwarding(self, make_manager, bus, client, settings):
        settings.features_config = {}
        bridge = TransportBridge(bus, client)
        bridge.attach()
        manager = make_manager()
        await manager.start_all()
        await bus.emit("messages.upsert", {"messages": [message("m1")]})

        await bus.emit("messages.delete", {"key": {"id": "m1", "remoteJid": "chat1"}})

        client.send.assert_not_awaited()
        assert len(manager.get_feature("anti_delete").records) == 1
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_cannot_start_without_message_cache(self, make_manager, store):
        await store.save("features", {"message_cache": {"enabled": False}})
        manager = make_manager()

        errors = await manager.start_all()

        assert set(errors) == {"anti_delete"}
        assert manager.get_state("anti_delete") == FeatureState.LOADED

    @pytest.mark.asyncio
    async def test_records_persist_across_restart(self, make_manager, bus):
        manager = make_manager()
        await manager.start_all()
        await bus.emit("messages.upsert", {"messages": [message("m1")]})
        await bus.emit("messages.delete", {"key": {"id": "m1", "remoteJid": "chat1"}})
        await manager.stop_all()

        restarted = make_manager()
        await restarted.start_all()

        assert "m1" in restarted.get_feature("anti_delete").records
        await restarted.stop_all()


@pytest.fixture
def make_react_manager(bus, store, commands):
    def _make(**react_settings):
        loader = FeatureLoader()
        loader.register(AutoReactFeature)
        settings = FeatureBotSettings(
            _env_file=None,
            features_config={"auto_react": {"settings": {"enabled": True, "probability": 1.0, **react_settings}}}
        )
        manager = FeatureManager(bus, store, loader=loader, settings=settings, command_router=commands)
        manager.discover()
        return manager
    return _make


def sent_reactions(bus):
    sent = []

    async def handler(payload):
        sent.append(payload)

    bus.subscribe("transport", "message.send", handler)
    return sent


class TestAutoReactFeature:
    """Random reactions, cooldown and commands."""

    @pytest.mark.asyncio
    async def test_reacts_with_configured_emoji(self, make_react_manager, bus):
        sent = sent_reactions(bus)
        manager = make_react_manager(reactions=["🔥"])
        await manager.start_all()

        await bus.emit("messages.upsert", {"messages": [message("m1", "chat1")]})

        assert sent == [{
            "target": "chat1",
            "payload": {"react": {"text": "🔥", "key": {"id": "m1", "remoteJid": "chat1", "fromMe": False}}}
        }]
        stats = manager.get_feature("auto_react").get_reaction_stats()
        assert stats["total_reactions"] == 1
        assert stats["reactions_by_emoji"] == {"🔥": 1}
        assert stats["reactions_by_chat"] == {"chat1": 1}
        assert stats["last_24_hours"] == 1
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_disabled_and_zero_probability_send_nothing(self, make_react_manager, bus):
        sent = sent_reactions(bus)
        manager = make_react_manager(probability=0.0)
        await manager.start_all()

        await bus.emit("messages.upsert", {"messages": [message("m1")]})
        await manager.get_feature("auto_react").command_off()
        await manager.get_feature("auto_react").command_probability(["1"])
        await bus.emit("messages.upsert", {"messages": [message("m2", "chat2")]})

        assert sent == []
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_own_messages_are_skipped(self, make_react_manager, bus):
        sent = sent_reactions(bus)
        manager = make_react_manager()
        await manager.start_all()

        await bus.emit("messages.upsert", {"messages": [message("m1", from_me=True), {"no": "key"}]})

        assert sent == []
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_cooldown_per_sender(self, make_react_manager, bus):
        sent = sent_reactions(bus)
        manager = make_react_manager(cooldown_seconds=60)
        await manager.start_all()

        await bus.emit("messages.upsert", {"messages": [message("m1", "chat1")]})
        await bus.emit("messages.upsert", {"messages": [message("m2", "chat1")]})
        await bus.emit("messages.upsert", {"messages": [message("m3", "chat2")]})

        assert [item["payload"]["react"]["key"]["id"] for item in sent] == ["m1", "m3"]
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_settings_commands_persist(self, make_react_manager, store, commands):
        manager = make_react_manager()
        await manager.start_all()

        assert await commands.dispatch("autoreact_probability", ["2"]) == "Probability must be between 0.0 and 1.0"
        assert await commands.dispatch("autoreact_probability", ["abc"]) == "Probability must be between 0.0 and 1.0"
        assert (await commands.dispatch("autoreact_probability", ["0.5"])).startswith("Auto-react probability set to 0.5")
        assert await commands.dispatch("autoreact_reactions", ["👍", "😂"]) == "Auto-react reactions set to: 👍 😂"
        assert await commands.dispatch("autoreact_off") == "Auto-react disabled"

        persisted = await store.load("features/auto_react")
        assert persisted["probability"] == 0.5
        assert persisted["reactions"] == ["👍", "😂"]
        assert persisted["enabled"] is False
        status = await commands.dispatch("autoreact_status")
        assert "Enabled: no" in status
        assert "Reactions: 👍 😂" in status
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_history_persists_on_close_and_restart(self, make_react_manager, bus, store, commands):
        manager = make_react_manager(reactions=["❤️"])
        await manager.start_all()
        await bus.emit("messages.upsert", {"messages": [message("m1")]})

        await bus.emit("connection.update", {"connection": "close"})

        snapshot = await store.load("features/auto_react/reactions")
        assert [record["message_id"] for record in snapshot["reactions"]] == ["m1"]
        await manager.stop_all()

        restarted = make_react_manager()
        await restarted.start_all()
        assert "Total reactions: 1" in await commands.dispatch("autoreact_stats")
        await restarted.stop_all()

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, make_react_manager, bus):
        manager = make_react_manager(max_history=2)
        await manager.start_all()
        feature = manager.get_feature("auto_react")

        for index in range(3):
            feature.record_reaction({"id": f"m{index}", "remoteJid": "chat1"}, "user", "👍")

        assert [record["message_id"] for record in feature.history.values()] == ["m1", "m2"]
        await manager.stop_all()


class TestDescribeMessage:
    """Content rendering."""

    @pytest.mark.parametrize("content, expected", [
        ({"conversation": "hi"}, "hi"),
        ({"extendedTextMessage": {"text": "long"}}, "long"),
        ({"imageMessage": {"caption": "cat"}}, "[Image: cat]"),
        ({"documentMessage": {"fileName": "a.pdf"}}, "[Document: a.pdf]"),
        ({"stickerMessage": {}}, "[Sticker]"),
        ({"pollMessage": {}}, "[pollMessage]"),
        ({}, "[Empty message]"),
    ])
    def test_describe(self, content, expected):
        assert describe_message({"message": content}) == expected
