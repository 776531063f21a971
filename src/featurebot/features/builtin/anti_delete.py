"""
Anti-delete feature.

When the transport reports a deleted message, the original content is looked
up in the message cache and forwarded to a configured target through
``message.send``.
"""

import time
from collections import OrderedDict
from typing import Any

from featurebot.core.transport import TransportEvents
from featurebot.features.base import Feature
from featurebot.features.builtin.message_cache import MessageCacheFeature
from featurebot.features.interfaces import FeatureCapability, FeatureMetadata
from featurebot.utils.errors import StorageError

DAY_SECONDS = 24 * 60 * 60

MEDIA_LABELS = {
    "imageMessage": "Image",
    "videoMessage": "Video",
    "audioMessage": "Audio message",
    "documentMessage": "Document",
    "stickerMessage": "Sticker"
}


def describe_message(message: dict[str, Any] | None) -> str:
    """Render the readable content of a transport message."""
    content = (message or {}).get("message") or {}
    if not isinstance(content, dict) or not content:
        return "[Empty message]"

    if content.get("conversation"):
        return str(content["conversation"])
    text = (content.get("extendedTextMessage") or {}).get("text")
    if text:
        return str(text)

    for kind, label in MEDIA_LABELS.items():
        if kind in content:
            media = content[kind] or {}
            detail = media.get("caption") or media.get("fileName")
            return f"[{label}: {detail}]" if detail else f"[{label}]"

    return f"[{next(iter(content))}]"


class AntiDeleteFeature(Feature):
    """Forwards the content of deleted messages to a target chat."""

    metadata = FeatureMetadata(
        name="anti_delete",
        version="1.0.0",
        description="Recovers deleted messages from the message cache",
        dependencies=["message_cache"],
        events=[TransportEvents.MESSAGES_DELETE],
        settings_schema={
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "target": {"type": ["string", "null"]},
                "skip_own": {"type": "boolean"},
                "max_records": {"type": "integer", "minimum": 1},
                "retention_seconds": {"type": "number", "exclusiveMinimum": 0}
            }
        },
        default_settings={
            "enabled": True,
            "target": None,
            "skip_own": True,
            "max_records": 10000,
            "retention_seconds": 3 * DAY_SECONDS
        }
    )
    capabilities = FeatureCapability.HANDLERS

    def __init__(self):
        super().__init__()
        self.records: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self.forwarded_count = 0

    async def on_initialize(self) -> None:
        try:
            data = await self._records_storage().load({})
        except StorageError as e:
            self.logger.warning(f"Failed to load delete records: {e}")
            return
        for record in (data or {}).get("records", []):
            if isinstance(record, dict) and record.get("message_id"):
                self.records[record["message_id"]] = record
        self._prune()
        self.logger.debug(f"Loaded {len(self.records)} delete records")

    async def on_stop(self) -> None:
        await self.save_records()

    def get_handlers(self):
        return {TransportEvents.MESSAGES_DELETE: self.handle_delete}

    async def handle_delete(self, payload: Any) -> None:
        if not self.get_setting("enabled", True):
            return

        cache = self.get_dependency("message_cache")
        # Not an isinstance check: a reloaded message_cache is a new class
        if cache is None or not hasattr(cache, "get_message"):
            self.logger.warning("Message cache not available")
            return

        for key in MessageCacheFeature._keys_of(payload):
            if key.get("fromMe") and self.get_setting("skip_own", True):
                continue
            original = cache.get_message(key)
            if original is None:
                self.logger.warning(f"Deleted message {key['id']} not found in cache")
                continue
            record = self.record_deletion(key, original)
            await self.forward(record)

    def record_deletion(self, key: dict[str, Any], original: dict[str, Any]) -> dict[str, Any]:
        """Keep a bounded record of a recovered deletion."""
        record = {
            "message_id": key["id"],
            "chat_id": key.get("remoteJid"),
            "sender": key.get("participant") or key.get("remoteJid"),
            "deleted_at": time.time(),
            "content": describe_message(original),
            "original": original
        }
        self.records.pop(key["id"], None)
        self.records[key["id"]] = record
        self._prune()
        return record

    async def forward(self, record: dict[str, Any]) -> bool:
        target = self.get_setting("target")
        if not target:
            self.logger.warning("No forward target configured for deleted messages")
            return False

        await self.emit(TransportEvents.MESSAGE_SEND, {
            "target": target,
            "payload": {"text": self.format_record(record)}
        })
        self.forwarded_count += 1
        self.logger.info(f"Forwarded deleted message {record['message_id']} to {target}")
        return True

    @staticmethod
    def format_record(record: dict[str, Any]) -> str:
        deleted_at = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record["deleted_at"]))
        return (
            "Deleted message detected\n"
            f"Chat: {record['chat_id']}\n"
            f"From: {record['sender']}\n"
            f"Deleted at: {deleted_at}\n"
            f"Original message:\n{record['content']}"
        )

    def get_delete_history(self, chat_id: str | None = None, limit: int = 10) -> list[dict[str, Any]]:
        """Recovered deletions, newest first."""
        history = [
            record for record in reversed(self.records.values())
            if chat_id is None or record["chat_id"] == chat_id
        ]
        return history[:limit]

    async def save_records(self) -> None:
        try:
            await self._records_storage().save({"records": list(self.records.values())})
        except StorageError as e:
            self.logger.error(f"Failed to save delete records: {e}")

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["records"] = len(self.records)
        status["forwarded"] = self.forwarded_count
        status["target"] = self.get_setting("target")
        return status

    def _records_storage(self):
        return self.context.storage.child("deletes")

    def _prune(self) -> None:
        cutoff = time.time() - self.get_setting("retention_seconds", 3 * DAY_SECONDS)
        while self.records:
            oldest = next(iter(self.records.values()))
            if oldest["deleted_at"] >= cutoff and len(self.records) <= self.get_setting("max_records", 10000):
                break
            self.records.popitem(last=False)
