"""
Bridge between the messaging transport and the event bus.

Inbound protocol events are republished verbatim under fixed event names.
Outbound ``message.send`` events are forwarded to the transport client, which
owns delivery, retries and framing.
"""

import asyncio
from typing import Any

from featurebot.core.events import EventBus
from featurebot.core.interfaces import ITransportClient
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)

BRIDGE_OWNER = "transport"


class TransportEvents:
    """Fixed event names used between the transport and features."""
    CONNECTION_UPDATE = "connection.update"
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    MESSAGES_DELETE = "messages.delete"
    MESSAGE_SEND = "message.send"

    INBOUND = (CONNECTION_UPDATE, MESSAGES_UPSERT, MESSAGES_UPDATE, MESSAGES_DELETE)


class TransportBridge:
    """Republishes transport events on the bus and forwards send requests."""

    def __init__(self, bus: EventBus, client: ITransportClient | None = None):
        self.bus = bus
        self.client = client
        self._attached = False
        self.sent_count = 0
        self.failed_count = 0

    def attach(self) -> None:
        """Start forwarding ``message.send`` to the client."""
        if self._attached:
            return
        self.bus.subscribe(BRIDGE_OWNER, TransportEvents.MESSAGE_SEND, self._on_send)
        self._attached = True
        logger.info("Transport bridge attached")

    def detach(self) -> None:
        self.bus.unsubscribe_all(BRIDGE_OWNER)
        self._attached = False

    @property
    def attached(self) -> bool:
        return self._attached

    async def forward(self, event_name: str, payload: Any) -> Any:
        """Republish an inbound transport event on the bus."""
        if event_name not in TransportEvents.INBOUND:
            logger.debug(f"Forwarding non-standard transport event: {event_name}")
        return await self.bus.emit(event_name, payload)

    def forward_threadsafe(self, event_name: str, payload: Any, loop: asyncio.AbstractEventLoop):
        """Republish from a transport callback thread onto ``loop``."""
        return self.bus.emit_threadsafe(event_name, payload, loop)

    async def _on_send(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("target"):
            logger.warning(f"Dropping message.send without a target: {payload!r}")
            return
        if self.client is None:
            logger.warning(f"No transport client, dropping message to {payload['target']}")
            return

        try:
            await self.client.send(payload["target"], payload.get("payload"))
        except Exception:
            self.failed_count += 1
            raise
        self.sent_count += 1
