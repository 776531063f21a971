"""
Interface definitions for the featurebot runtime.

These abstract base classes define the contracts the core needs from its
collaborators: the messaging transport, the persistent store, the command
router, and metrics collection.
"""

from abc import ABC, abstractmethod
from typing import Any

JSONValue = dict[str, Any] | list[Any] | str | int | float | bool | None


class IMetrics(ABC):
    """Abstract interface for per-event metrics collection."""

    @abstractmethod
    def record_event(
        self,
        event_name: str,
        duration: float = 0.0,
        handler_errors: int = 0,
        middleware_errors: int = 0
    ) -> None:
        """Record one emit of an event."""
        pass

    @abstractmethod
    def get_metrics(self, event_name: str | None = None) -> dict[str, Any]:
        """Get counters for one event, or for all events."""
        pass

    @abstractmethod
    def reset_metrics(self) -> None:
        """Reset all metrics."""
        pass


class IStore(ABC):
    """Abstract interface for the persistent key/value store.

    Values are JSON-compatible. Atomicity and corruption recovery are the
    store's responsibility.
    """

    @abstractmethod
    async def load(self, key: str) -> JSONValue:
        """Load the value stored under key.

        Args:
            key: Storage key, '/' separates namespaces

        Returns:
            Stored value or None if the key has never been saved
        """
        pass

    @abstractmethod
    async def save(self, key: str, value: JSONValue) -> None:
        """Persist a value under key.

        Args:
            key: Storage key
            value: JSON-compatible value
        """
        pass

    async def delete(self, key: str) -> None:
        """Remove a key. Stores that cannot delete overwrite with None."""
        await self.save(key, None)


class ITransportClient(ABC):
    """Abstract interface for the messaging transport.

    The transport owns delivery, retries and protocol framing. The core only
    forwards outbound send requests to it.
    """

    @abstractmethod
    async def send(self, target: str, payload: Any) -> Any:
        """Send a payload to a target (e.g. a conversation id)."""
        pass


class ICommandRouter(ABC):
    """Abstract interface for the command router fed by started features."""

    @abstractmethod
    def register_command(self, name: str, command: Any, feature_name: str) -> None:
        """Register a named command on behalf of a feature."""
        pass

    @abstractmethod
    def unregister_command(self, name: str) -> bool:
        """Remove a named command.

        Returns:
            True if the command was registered
        """
        pass
