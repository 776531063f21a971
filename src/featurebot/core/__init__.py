"""
Core infrastructure for featurebot.

This package contains the event bus, the persistence contract and its
stores, and the collaborator interfaces the runtime core depends on.
"""

from .commands import CommandRegistry
from .events import EventBus, EventSubscription, MiddlewarePhase
from .interfaces import ICommandRouter, IMetrics, IStore, ITransportClient
from .storage import FeatureStorage, JsonFileStore, MemoryStore
from .transport import TransportBridge, TransportEvents

__all__ = [
    "CommandRegistry",
    "EventBus",
    "EventSubscription",
    "FeatureStorage",
    "ICommandRouter",
    "IMetrics",
    "IStore",
    "ITransportClient",
    "JsonFileStore",
    "MemoryStore",
    "MiddlewarePhase",
    "TransportBridge",
    "TransportEvents"
]
