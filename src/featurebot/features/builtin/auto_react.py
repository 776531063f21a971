"""
Auto-react feature.

Reacts to inbound messages with a random emoji. Each message is reacted to
with the configured probability, at most once per sender per cooldown
window. Reactions go out as ``message.send`` requests and are kept in a
bounded history for statistics.
"""

import random
import time
from collections import OrderedDict
from typing import Any

from featurebot.core.transport import TransportEvents
from featurebot.features.base import Feature
from featurebot.features.builtin.message_cache import message_key
from featurebot.features.interfaces import FeatureCapability, FeatureCommand, FeatureMetadata
from featurebot.utils.errors import StorageError

DAY_SECONDS = 24 * 60 * 60
DEFAULT_REACTIONS = ["❤️", "👍", "😂", "😍", "🔥"]


class AutoReactFeature(Feature):
    """Randomly reacts to inbound messages."""

    metadata = FeatureMetadata(
        name="auto_react",
        version="1.0.0",
        description="Randomly reacts to inbound messages",
        events=[TransportEvents.MESSAGES_UPSERT, TransportEvents.CONNECTION_UPDATE],
        commands=[
            "autoreact_on",
            "autoreact_off",
            "autoreact_status",
            "autoreact_probability",
            "autoreact_reactions",
            "autoreact_stats"
        ],
        settings_schema={
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "probability": {"type": "number", "minimum": 0, "maximum": 1},
                "reactions": {"type": "array", "items": {"type": "string"}},
                "cooldown_seconds": {"type": "number", "minimum": 0},
                "skip_own": {"type": "boolean"},
                "max_history": {"type": "integer", "minimum": 1}
            }
        },
        default_settings={
            "enabled": False,
            "probability": 0.3,
            "reactions": list(DEFAULT_REACTIONS),
            "cooldown_seconds": 5,
            "skip_own": True,
            "max_history": 1000
        }
    )
    capabilities = FeatureCapability.HANDLERS | FeatureCapability.COMMANDS

    def __init__(self, rng: random.Random | None = None):
        super().__init__()
        self.random = rng or random.Random()
        self.history: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self.cooldowns: dict[str, float] = {}

    async def on_initialize(self) -> None:
        try:
            data = await self._history_storage().load({})
        except StorageError as e:
            self.logger.warning(f"Failed to load reaction history: {e}")
            return
        for record in (data or {}).get("reactions", []):
            if isinstance(record, dict) and record.get("message_id"):
                self.history[self._record_id(record)] = record
        self._prune_history()
        self.logger.debug(f"Loaded {len(self.history)} reaction records")

    async def on_stop(self) -> None:
        await self.save_history()

    def get_handlers(self):
        return {
            TransportEvents.MESSAGES_UPSERT: self.handle_upsert,
            TransportEvents.CONNECTION_UPDATE: self.handle_connection_update
        }

    def get_commands(self) -> list[FeatureCommand]:
        return [
            FeatureCommand(
                name="autoreact_on",
                description="Enable auto-react",
                usage="autoreact_on",
                handler=self.command_on
            ),
            FeatureCommand(
                name="autoreact_off",
                description="Disable auto-react",
                usage="autoreact_off",
                handler=self.command_off
            ),
            FeatureCommand(
                name="autoreact_status",
                description="Show auto-react settings",
                usage="autoreact_status",
                handler=self.command_status
            ),
            FeatureCommand(
                name="autoreact_probability",
                description="Set the reaction probability (0.0 - 1.0)",
                usage="autoreact_probability <0.0-1.0>",
                handler=self.command_probability
            ),
            FeatureCommand(
                name="autoreact_reactions",
                description="Set the emojis to react with",
                usage="autoreact_reactions <emoji> [emoji...]",
                handler=self.command_reactions
            ),
            FeatureCommand(
                name="autoreact_stats",
                description="Show auto-react statistics",
                usage="autoreact_stats",
                handler=self.command_stats
            )
        ]

    # Event handlers

    async def handle_upsert(self, payload: Any) -> None:
        if not self.get_setting("enabled", False):
            return
        messages = payload.get("messages") if isinstance(payload, dict) else payload
        if not isinstance(messages, list):
            return
        for message in messages:
            key = message_key(message)
            if key is None:
                continue
            if key.get("fromMe") and self.get_setting("skip_own", True):
                continue
            await self.maybe_react(key)

    async def handle_connection_update(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        if payload.get("connection") == "close":
            self.logger.info("Connection closed, saving reaction history")
            await self.save_history()

    # Reacting

    async def maybe_react(self, key: dict[str, Any]) -> str | None:
        """React to one message if the cooldown and the dice allow it.

        Returns:
            The emoji sent, or None if no reaction was sent
        """
        user_id = key.get("participant") or key.get("remoteJid")
        if self.is_on_cooldown(user_id):
            return None
        if self.random.random() >= self.get_setting("probability", 0.3):
            return None
        reactions = self.get_setting("reactions") or []
        if not reactions:
            return None

        emoji = self.random.choice(reactions)
        await self.emit(TransportEvents.MESSAGE_SEND, {
            "target": key.get("remoteJid"),
            "payload": {"react": {"text": emoji, "key": key}}
        })
        self.record_reaction(key, user_id, emoji)
        self.cooldowns[user_id] = time.monotonic()
        self.logger.debug(f"Reacted {emoji} to message {key['id']}")
        return emoji

    def is_on_cooldown(self, user_id: str | None) -> bool:
        last = self.cooldowns.get(user_id)
        if last is None:
            return False
        return time.monotonic() - last < self.get_setting("cooldown_seconds", 5)

    def record_reaction(self, key: dict[str, Any], user_id: str | None, emoji: str) -> dict[str, Any]:
        record = {
            "message_id": key["id"],
            "chat_id": key.get("remoteJid"),
            "user_id": user_id,
            "reaction": emoji,
            "timestamp": time.time()
        }
        self.history[self._record_id(record)] = record
        self._prune_history()
        self._prune_cooldowns()
        return record

    def get_reaction_stats(self) -> dict[str, Any]:
        """Reaction counts in total, per emoji, per chat and for the last day."""
        day_ago = time.time() - DAY_SECONDS
        by_emoji: dict[str, int] = {}
        by_chat: dict[str, int] = {}
        last_day = 0
        for record in self.history.values():
            by_emoji[record["reaction"]] = by_emoji.get(record["reaction"], 0) + 1
            by_chat[record["chat_id"]] = by_chat.get(record["chat_id"], 0) + 1
            if record["timestamp"] > day_ago:
                last_day += 1
        return {
            "total_reactions": len(self.history),
            "reactions_by_emoji": by_emoji,
            "reactions_by_chat": by_chat,
            "last_24_hours": last_day
        }

    async def save_history(self) -> None:
        try:
            await self._history_storage().save({
                "reactions": list(self.history.values()),
                "saved_at": time.time()
            })
        except StorageError as e:
            self.logger.error(f"Failed to save reaction history: {e}")

    # Commands

    async def command_on(self, args: list[str] | None = None) -> str:
        await self._update_setting("enabled", True)
        return "Auto-react enabled"

    async def command_off(self, args: list[str] | None = None) -> str:
        await self._update_setting("enabled", False)
        return "Auto-react disabled"

    async def command_status(self, args: list[str] | None = None) -> str:
        lines = [
            "Auto-react status",
            f"Enabled: {'yes' if self.get_setting('enabled', False) else 'no'}",
            f"Probability: {self.get_setting('probability', 0.3)}",
            f"Reactions: {' '.join(self.get_setting('reactions') or [])}",
            f"Cooldown: {self.get_setting('cooldown_seconds', 5)}s"
        ]
        return "\n".join(lines)

    async def command_probability(self, args: list[str] | None = None) -> str:
        if not args:
            return "Usage: autoreact_probability <0.0-1.0>"
        try:
            probability = float(args[0])
        except ValueError:
            return "Probability must be between 0.0 and 1.0"
        if not 0 <= probability <= 1:
            return "Probability must be between 0.0 and 1.0"
        await self._update_setting("probability", probability)
        return f"Auto-react probability set to {probability} ({probability:.1%})"

    async def command_reactions(self, args: list[str] | None = None) -> str:
        if not args:
            return "Usage: autoreact_reactions <emoji> [emoji...]"
        await self._update_setting("reactions", list(args))
        return f"Auto-react reactions set to: {' '.join(args)}"

    async def command_stats(self, args: list[str] | None = None) -> str:
        stats = self.get_reaction_stats()
        lines = [
            "Auto-react statistics",
            f"Total reactions: {stats['total_reactions']}",
            f"Last 24 hours: {stats['last_24_hours']}"
        ]
        for emoji, count in sorted(stats["reactions_by_emoji"].items(), key=lambda item: -item[1]):
            lines.append(f"{emoji} {count}")
        return "\n".join(lines)

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["enabled"] = bool(self.get_setting("enabled", False))
        status["reactions_sent"] = len(self.history)
        return status

    async def _update_setting(self, key: str, value: Any) -> None:
        self.set_setting(key, value)
        await self.save_settings()

    def _history_storage(self):
        return self.context.storage.child("reactions")

    @staticmethod
    def _record_id(record: dict[str, Any]) -> str:
        return f"{record['message_id']}_{record.get('timestamp', 0)}"

    def _prune_history(self) -> None:
        max_history = self.get_setting("max_history", 1000)
        while len(self.history) > max_history:
            self.history.popitem(last=False)

    def _prune_cooldowns(self) -> None:
        cutoff = time.monotonic() - 2 * self.get_setting("cooldown_seconds", 5)
        for user_id in [user for user, last in self.cooldowns.items() if last < cutoff]:
            del self.cooldowns[user_id]
