"""
In-memory command router.

Started features register their commands here; the manager removes them
again when the feature stops. Dispatch is left to whatever front end parses
user input.
"""

import inspect
import threading
from typing import Any

from featurebot.core.interfaces import ICommandRouter
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)


class CommandRegistry(ICommandRouter):
    """Maps command names to the command objects of started features."""

    def __init__(self):
        self._commands: dict[str, Any] = {}
        self._owners: dict[str, str] = {}
        self._lock = threading.RLock()

    def register_command(self, name: str, command: Any, feature_name: str) -> None:
        key = name.lower()
        with self._lock:
            owner = self._owners.get(key)
            if owner and owner != feature_name:
                logger.warning(f"Command {key} of {owner} is replaced by {feature_name}")
            self._commands[key] = command
            self._owners[key] = feature_name
        logger.debug(f"Registered command {key} for feature {feature_name}")

    def unregister_command(self, name: str) -> bool:
        key = name.lower()
        with self._lock:
            self._owners.pop(key, None)
            return self._commands.pop(key, None) is not None

    def get_command(self, name: str) -> Any | None:
        with self._lock:
            return self._commands.get(name.lower())

    def get_owner(self, name: str) -> str | None:
        with self._lock:
            return self._owners.get(name.lower())

    def list_commands(self, feature_name: str | None = None) -> list[str]:
        with self._lock:
            return sorted(
                name for name, owner in self._owners.items()
                if feature_name is None or owner == feature_name
            )

    async def dispatch(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a registered command's handler.

        Raises:
            KeyError: If no command with that name is registered
        """
        command = self.get_command(name)
        if command is None:
            raise KeyError(f"Unknown command: {name}")

        handler = getattr(command, "handler", command)
        result = handler(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
