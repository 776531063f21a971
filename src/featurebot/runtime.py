"""
Runtime bootstrap for featurebot.

``FeatureRuntime`` wires settings, persistent store, event bus, feature
manager, command registry and transport bridge together.

Usage:
    async with FeatureRuntime(transport_client=client) as runtime:
        await runtime.bridge.forward("messages.upsert", payload)
"""

from typing import Any

from featurebot.core.commands import CommandRegistry
from featurebot.core.events import EventBus
from featurebot.core.interfaces import IStore, ITransportClient
from featurebot.core.storage import JsonFileStore
from featurebot.core.transport import TransportBridge
from featurebot.features.base import merge_settings
from featurebot.features.loader import FeatureLoader
from featurebot.features.manager import FeatureManager
from featurebot.features.validation import FeatureValidator
from featurebot.utils.config import FeatureBotSettings, get_settings
from featurebot.utils.errors import ConfigurationError
from featurebot.utils.logging import configure_logging, setup_logging

logger = setup_logging(__name__)


class FeatureRuntime:
    """Owns the core components for one process."""

    def __init__(
        self,
        settings: FeatureBotSettings | None = None,
        store: IStore | None = None,
        transport_client: ITransportClient | None = None,
        loader: FeatureLoader | None = None,
        configure_logs: bool = False
    ):
        """Initialize the runtime.

        Args:
            settings: Application settings (defaults to the global settings)
            store: Persistent store (defaults to a JsonFileStore under data_dir)
            transport_client: Messaging transport to forward sends to
            loader: Feature loader (defaults to one fed from the manifest)
            configure_logs: Apply the logging settings to the featurebot loggers
        """
        self.settings = settings or get_settings()
        if configure_logs:
            configure_logging(self.settings)

        validation = self.settings.validate_settings()
        for warning in validation.warnings:
            logger.warning(f"Settings warning: {warning}")
        if not validation.valid:
            raise ConfigurationError(
                "Invalid featurebot settings",
                suggestions=validation.errors
            )

        self._apply_cache_defaults()
        self.validator = FeatureValidator(self.settings)
        self.store = store or JsonFileStore(self.settings.get_data_dir())
        self.bus = EventBus(max_concurrent_handlers=self.settings.bus_max_concurrent_handlers)
        self.commands = CommandRegistry()
        self.bridge = TransportBridge(self.bus, transport_client)

        if loader is None:
            loader = FeatureLoader(self.validator)
            loader.load_manifest(self.settings.feature_manifest)
        self.loader = loader

        self.manager = FeatureManager(
            self.bus,
            self.store,
            loader=self.loader,
            settings=self.settings,
            command_router=self.commands,
            validator=self.validator
        )
        self._running = False

    async def start(self) -> dict[str, Exception]:
        """Attach the bridge and manager, discover and start all features.

        Returns:
            Feature name -> error for features that failed to start
        """
        if self._running:
            logger.warning("Feature runtime already started")
            return {}

        system = self.validator.validate_feature_system()
        for warning in system.warnings:
            logger.warning(f"Feature system warning: {warning}")
        for error in system.errors:
            logger.error(f"Feature system error: {error}")

        self.bridge.attach()
        self.manager.attach()
        self.manager.discover()
        errors = await self.manager.start_all()
        self._running = True

        logger.info(f"Feature runtime started: {len(self.manager.get_feature_names())} features discovered")
        return errors

    async def stop(self) -> None:
        if not self._running:
            return
        errors = await self.manager.stop_all()
        for name, error in errors.items():
            logger.error(f"Feature {name} did not stop cleanly: {error}")
        self.manager.detach()
        self.bridge.detach()
        self._running = False
        logger.info("Feature runtime stopped")

    @property
    def running(self) -> bool:
        return self._running

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "features": self.manager.list_features(),
            "bus": self.bus.get_stats(),
            "metrics": self.bus.get_metrics(),
            "commands": self.commands.list_commands()
        }

    async def __aenter__(self) -> "FeatureRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _apply_cache_defaults(self) -> None:
        # Application-level cache settings seed the message cache feature;
        # explicit per-feature settings still win.
        cache = self.settings.get_cache_config()
        defaults = {
            "max_per_chat": cache["max_per_bucket"],
            "retention_seconds": cache["retention_seconds"],
            "cleanup_interval_seconds": cache["sweep_interval_seconds"]
        }
        features_config = dict(self.settings.features_config)
        entry = dict(features_config.get("message_cache", {}))
        entry["settings"] = merge_settings(defaults, entry.get("settings"))
        features_config["message_cache"] = entry
        # Copy, the settings may be the process-wide instance
        self.settings = self.settings.model_copy(update={"features_config": features_config})
