"""
Message cache feature.

Keeps recent messages per conversation in a ``RetentionCache`` so that other
features (anti-delete in particular) can look up a message after the
transport reports it deleted or edited.
"""

import copy
from typing import Any

from featurebot.cache.retention import CacheEntry, RetentionCache
from featurebot.core.transport import TransportEvents
from featurebot.features.base import Feature
from featurebot.features.interfaces import FeatureCapability, FeatureCommand, FeatureMetadata
from featurebot.utils.errors import StorageError

DAY_SECONDS = 24 * 60 * 60


def message_key(message: Any) -> dict[str, Any] | None:
    """Return the ``key`` dict of a transport message, or None if malformed."""
    if not isinstance(message, dict):
        return None
    key = message.get("key")
    if not isinstance(key, dict) or not key.get("id"):
        return None
    return key


class MessageCacheFeature(Feature):
    """Caches inbound messages per chat with a count bound and a retention window."""

    metadata = FeatureMetadata(
        name="message_cache",
        version="1.0.0",
        description="Caches recent messages per chat for other features",
        events=[
            TransportEvents.MESSAGES_UPSERT,
            TransportEvents.MESSAGES_UPDATE,
            TransportEvents.MESSAGES_DELETE,
            TransportEvents.CONNECTION_UPDATE,
            "cache.cleanup",
            "cache.clear"
        ],
        commands=["cachestats", "clearcache"],
        settings_schema={
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "max_per_chat": {"type": "integer", "minimum": 0},
                "retention_seconds": {"type": "number", "exclusiveMinimum": 0},
                "cleanup_interval_seconds": {"type": "number", "exclusiveMinimum": 0},
                "persist": {"type": "boolean"}
            }
        },
        default_settings={
            "enabled": True,
            "max_per_chat": 1000,
            "retention_seconds": 3 * DAY_SECONDS,
            "cleanup_interval_seconds": 6 * 60 * 60,
            "persist": True
        }
    )
    capabilities = FeatureCapability.HANDLERS | FeatureCapability.COMMANDS

    def __init__(self):
        super().__init__()
        self.cache: RetentionCache | None = None
        self.connection_state: str | None = None

    async def on_initialize(self) -> None:
        self.cache = RetentionCache(
            max_per_bucket=self.get_setting("max_per_chat", 1000),
            retention_seconds=self.get_setting("retention_seconds", 3 * DAY_SECONDS)
        )
        if self.get_setting("persist", True):
            try:
                restored = await self.cache.load(self._snapshot_storage())
                self.logger.info(f"Restored {restored} cached messages")
            except StorageError as e:
                self.logger.warning(f"Failed to load cache data, starting empty: {e}")

    async def on_start(self) -> None:
        self.cache.start_sweeper(
            self.get_setting("cleanup_interval_seconds", 6 * 60 * 60),
            on_sweep=self._after_sweep
        )

    async def on_stop(self) -> None:
        await self.cache.stop_sweeper()
        await self.save_cache()

    def get_handlers(self):
        return {
            TransportEvents.MESSAGES_UPSERT: self.handle_upsert,
            TransportEvents.MESSAGES_UPDATE: self.handle_update,
            TransportEvents.MESSAGES_DELETE: self.handle_delete,
            TransportEvents.CONNECTION_UPDATE: self.handle_connection_update,
            "cache.cleanup": self.handle_cleanup,
            "cache.clear": self.handle_clear
        }

    def get_commands(self) -> list[FeatureCommand]:
        return [
            FeatureCommand(
                name="cachestats",
                description="Show message cache statistics",
                usage="cachestats",
                handler=self.command_cachestats
            ),
            FeatureCommand(
                name="clearcache",
                description="Clear the message cache for one chat or all chats",
                usage="clearcache [chat_id]",
                handler=self.command_clearcache
            )
        ]

    # Event handlers

    async def handle_upsert(self, payload: Any) -> None:
        if not self.is_enabled():
            return
        for message in self._messages_of(payload):
            self.store_message(message)

    async def handle_update(self, payload: Any) -> None:
        if not self.is_enabled():
            return
        for item in self._messages_of(payload):
            key = message_key(item)
            if key is None:
                continue
            changes = item.get("update")
            if not isinstance(changes, dict):
                changes = {k: v for k, v in item.items() if k != "key"}
            if self.cache.update(key["id"], copy.deepcopy(changes)) is not None:
                self.logger.debug(f"Updated cached message: {key['id']}")

    async def handle_delete(self, payload: Any) -> None:
        if not self.is_enabled():
            return
        for key in self._keys_of(payload):
            if self.cache.mark_deleted(key["id"]) is not None:
                self.logger.debug(f"Marked cached message as deleted: {key['id']}")

    async def handle_connection_update(self, payload: Any) -> None:
        if not isinstance(payload, dict) or "connection" not in payload:
            return
        self.connection_state = payload["connection"]
        self.logger.info(f"Connection state changed: {self.connection_state}")
        if self.connection_state == "close":
            await self.save_cache()

    async def handle_cleanup(self, payload: Any) -> None:
        removed = self.cleanup()
        if removed:
            await self.save_cache()

    async def handle_clear(self, payload: Any) -> None:
        chat_id = payload.get("chat_id") if isinstance(payload, dict) else None
        await self.clear_cache(chat_id)

    # Commands

    async def command_cachestats(self, args: list[str] | None = None) -> str:
        stats = self.get_cache_stats()
        lines = [
            "Message cache status",
            f"Total messages: {stats['total_entries']}",
            f"Total chats: {stats['total_buckets']}",
            f"Deleted messages kept: {stats['deleted_entries']}",
            f"Average per chat: {stats['avg_entries_per_bucket']:.1f}",
            f"Hit rate: {stats['hit_rate']:.0%}",
            f"Retention: {stats['retention_seconds'] / 3600:g} hours",
            f"Max per chat: {stats['max_per_bucket']}"
        ]
        return "\n".join(lines)

    async def command_clearcache(self, args: list[str] | None = None) -> str:
        chat_id = args[0] if args else None
        removed = await self.clear_cache(chat_id)
        if chat_id:
            return f"Cleared {removed} cached messages for {chat_id}"
        return f"Cleared all {removed} cached messages"

    # Public API used by other features

    def store_message(self, message: Any) -> bool:
        """Cache one transport message under its chat.

        Returns:
            False if the message has no usable key
        """
        key = message_key(message)
        if key is None:
            self.logger.debug(f"Ignoring message without key: {message!r}")
            return False
        chat_id = key.get("remoteJid") or "unknown"
        self.cache.put(chat_id, key["id"], copy.deepcopy(message))
        return True

    def get_message(self, key: str | dict[str, Any]) -> dict[str, Any] | None:
        """Look up a cached message by id or by transport key."""
        message_id = key if isinstance(key, str) else (key or {}).get("id")
        if not message_id:
            return None
        return self.cache.get(message_id)

    def get_entry(self, message_id: str) -> CacheEntry | None:
        return self.cache.get_entry(message_id)

    def get_messages(self, chat_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent cached messages of a chat, newest first."""
        return [entry.payload for entry in self.cache.list_bucket(chat_id, limit)]

    def get_cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()

    def cleanup(self) -> int:
        """Sweep expired messages now."""
        removed = self.cache.sweep()
        if removed:
            self.logger.debug(f"Cleaned up {removed} old messages")
        return removed

    async def clear_cache(self, chat_id: str | None = None) -> int:
        removed = self.cache.clear(chat_id)
        await self.save_cache()
        return removed

    async def save_cache(self) -> None:
        if self.cache is None or self.context is None or not self.get_setting("persist", True):
            return
        try:
            await self.cache.save(self._snapshot_storage())
        except StorageError as e:
            self.logger.error(f"Failed to save cache data: {e}")

    def is_enabled(self) -> bool:
        return bool(self.get_setting("enabled", True))

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["connection_state"] = self.connection_state
        status["sweeper_running"] = self.cache.sweeper_running if self.cache is not None else False
        if self.cache is not None:
            status["cached_messages"] = len(self.cache)
        return status

    # Internals

    def _snapshot_storage(self):
        return self.context.storage.child("cache")

    async def _after_sweep(self, removed: int) -> None:
        await self.save_cache()

    @staticmethod
    def _messages_of(payload: Any) -> list[Any]:
        if isinstance(payload, dict):
            messages = payload.get("messages")
            if isinstance(messages, list):
                return messages
            if "key" in payload:
                return [payload]
        elif isinstance(payload, list):
            return payload
        return []

    @staticmethod
    def _keys_of(payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, dict):
            if isinstance(payload.get("keys"), list):
                candidates = payload["keys"]
            elif "key" in payload:
                candidates = [payload["key"]]
            else:
                candidates = []
        elif isinstance(payload, list):
            candidates = payload
        else:
            candidates = []
        return [key for key in candidates if isinstance(key, dict) and key.get("id")]
