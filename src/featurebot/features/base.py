"""
Convenience base class for features.

``Feature`` stores the injected context and offers settings, event and
dependency helpers so concrete features only implement their behaviour.
"""

import copy
import logging
import time
from typing import Any

from featurebot.features.interfaces import FeatureContext, IFeature

_MISSING = object()


def merge_settings(base: dict[str, Any], override: dict[str, Any] | None) -> dict[str, Any]:
    """Deep-merge ``override`` into a copy of ``base``.

    Nested dicts are merged key by key; any other value replaces the base value.
    """
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Feature(IFeature):
    """Base class wiring a feature to its injected context."""

    def __init__(self):
        self.context: FeatureContext | None = None
        self.settings: dict[str, Any] = copy.deepcopy(self.metadata.default_settings)
        self.initialized = False
        self.started = False

    @property
    def name(self) -> str:
        return self.context.name if self.context else self.metadata.name

    @property
    def logger(self) -> logging.Logger:
        if self.context:
            return self.context.logger
        return logging.getLogger(f"featurebot.features.{self.metadata.name}")

    async def initialize(self, context: FeatureContext) -> None:
        self.context = context
        self.settings = merge_settings(self.settings, context.settings)
        await self.on_initialize()
        self.initialized = True

    async def start(self) -> None:
        await self.on_start()
        self.started = True

    async def stop(self) -> None:
        try:
            await self.on_stop()
        finally:
            self.started = False

    # Hooks for subclasses

    async def on_initialize(self) -> None:
        pass

    async def on_start(self) -> None:
        pass

    async def on_stop(self) -> None:
        pass

    # Settings

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Read a setting by dotted key, e.g. ``"notify.target"``."""
        value: Any = self.settings
        for part in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(part, _MISSING)
            if value is _MISSING:
                return default
        return value

    def set_setting(self, key: str, value: Any) -> None:
        """Set a setting by dotted key, creating intermediate dicts."""
        parts = key.split(".")
        current = self.settings
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value
        self.logger.debug(f"Setting updated: {key} = {value!r}")

    async def save_settings(self) -> None:
        """Persist the current settings through the feature's storage."""
        if self.context is None:
            return
        await self.context.storage.save(self.settings)

    # Bus and dependencies

    async def emit(self, event_name: str, payload: Any = None) -> Any:
        if self.context is None:
            raise RuntimeError(f"Feature {self.name} is not initialized")
        return await self.context.bus.emit(event_name, payload)

    def get_dependency(self, name: str) -> IFeature | None:
        if self.context is None:
            return None
        return self.context.get_dependency(name)

    async def handle_error(self, error: Exception, where: str) -> None:
        """Log an error raised inside the feature and publish ``feature.error``."""
        self.logger.error(f"{self.name} error in {where}: {error}")
        await self.emit("feature.error", {
            "feature": self.name,
            "error": str(error),
            "context": where,
            "timestamp": time.time()
        })

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.metadata.version,
            "initialized": self.initialized,
            "started": self.started
        }
