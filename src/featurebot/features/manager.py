"""
Feature lifecycle manager for featurebot.

This module owns the dependency graph and the per-feature state machine
``DISCOVERED -> LOADED -> STARTED -> STOPPED``. It is the only component that
moves a feature between states. Any step may end in ``FAILED``, which is left
only through an explicit reload.
"""

import asyncio
import contextvars
import time
from contextlib import asynccontextmanager
from typing import Any

from featurebot.core.events import EventBus
from featurebot.core.interfaces import ICommandRouter, IStore
from featurebot.core.storage import FeatureStorage
from featurebot.features.base import merge_settings
from featurebot.features.errors import (
    DependencyMissingError,
    FeatureConfigurationError,
    FeatureError,
    FeatureLifecycleError,
    FeatureStateError,
)
from featurebot.features.interfaces import (
    FeatureCapability,
    FeatureContext,
    FeatureDescriptor,
    FeatureState,
    IFeature,
)
from featurebot.features.loader import FeatureLoader
from featurebot.features.registry import FeatureRecord, FeatureRegistry
from featurebot.features.validation import FeatureValidator
from featurebot.utils.config import FeatureBotSettings, get_settings
from featurebot.utils.logging import get_feature_logger, setup_logging

logger = setup_logging(__name__)

MANAGER_OWNER = "feature_manager"
FEATURE_CONFIG_KEY = "features"
DEFAULT_FEATURE_CONFIG = {"enabled": True, "auto_start": True}

# Features whose lifecycle transition the current call chain is inside
_active_transitions: contextvars.ContextVar[frozenset[str]] = contextvars.ContextVar(
    "featurebot_active_transitions", default=frozenset()
)


class FeatureManager:
    """High-level feature lifecycle manager."""

    def __init__(
        self,
        bus: EventBus,
        store: IStore,
        loader: FeatureLoader | None = None,
        settings: FeatureBotSettings | None = None,
        command_router: ICommandRouter | None = None,
        validator: FeatureValidator | None = None
    ):
        """Initialize the feature manager.

        Args:
            bus: Event bus shared with every feature
            store: Persistent store for feature settings and config
            loader: Registry of feature factories
            settings: Application settings
            command_router: Optional router fed with feature commands
            validator: Settings validator (defaults to the loader's)
        """
        self.bus = bus
        self.store = store
        self.settings = settings or get_settings()
        self.loader = loader or FeatureLoader(validator)
        self.validator = validator or self.loader.validator
        self.command_router = command_router
        self.registry = FeatureRegistry()
        self.stop_timeout = self.settings.feature_stop_timeout_seconds

        self._locks: dict[str, asyncio.Lock] = {}
        self._started_order: list[str] = []
        self._feature_config: dict[str, dict[str, Any]] | None = None
        self._attached = False

        logger.info("Feature manager initialized")

    # Discovery

    def discover(self) -> list[FeatureDescriptor]:
        """Discover features from the loader and register their descriptors.

        Known features keep their state; only their descriptors are refreshed.

        Returns:
            Descriptors of all well-formed candidates
        """
        descriptors = self.loader.discover()
        for descriptor in descriptors:
            self.registry.register(descriptor)
        return descriptors

    def resolve_load_order(self, descriptors: list[FeatureDescriptor] | None = None) -> list[str]:
        """Get feature names in dependency order.

        Raises:
            CircularDependencyError: If the dependency graph has a cycle
        """
        return self.registry.resolve_load_order(descriptors)

    # Lifecycle

    async def load(self, name: str) -> IFeature:
        """Instantiate and initialize a feature.

        Args:
            name: Feature to load

        Returns:
            The loaded feature instance

        Raises:
            FeatureNotFoundError: If the feature was never discovered
            FeatureStateError: If the feature is not DISCOVERED or STOPPED
            FeatureLifecycleError: If instantiation or initialize fails
        """
        async with self._transition(name):
            record = self.registry.require(name)
            if record.state not in (FeatureState.DISCOVERED, FeatureState.STOPPED):
                raise FeatureStateError(
                    f"Cannot load feature {name} in state {record.state.value}", name, record.state.value
                )
            return await self._load(record)

    async def start(self, name: str) -> None:
        """Start a loaded feature and wire its handlers and commands.

        Raises:
            FeatureNotFoundError: If the feature was never discovered
            FeatureStateError: If the feature is not LOADED or STOPPED
            DependencyMissingError: If a declared dependency is not STARTED
            FeatureLifecycleError: If the start hook or wiring fails
        """
        async with self._transition(name):
            record = self.registry.require(name)
            if record.state == FeatureState.STARTED:
                logger.warning(f"Feature {name} is already started")
                return
            if record.state not in (FeatureState.LOADED, FeatureState.STOPPED):
                raise FeatureStateError(
                    f"Cannot start feature {name} in state {record.state.value}", name, record.state.value
                )
            await self._start(record)

    async def stop(self, name: str) -> None:
        """Stop a started feature.

        Subscriptions and commands are removed even if the stop hook raises
        or times out; in that case the feature ends FAILED and the error is
        raised.

        Raises:
            FeatureNotFoundError: If the feature was never discovered
            FeatureLifecycleError: If the stop hook fails
        """
        async with self._transition(name):
            record = self.registry.require(name)
            if record.state != FeatureState.STARTED:
                logger.debug(f"Feature {name} is not started ({record.state.value}), nothing to stop")
                return
            await self._stop(record)

    async def reload(self, name: str) -> IFeature:
        """Stop, freshly load and start a feature.

        The feature's module is re-imported when it came from the manifest.
        Dependents are not reloaded. Any failure leaves the feature FAILED.

        Returns:
            The new feature instance
        """
        async with self._transition(name):
            record = self.registry.require(name)
            logger.info(f"Reloading feature: {name}")

            if record.state == FeatureState.STARTED:
                try:
                    await self._stop(record)
                except FeatureLifecycleError as e:
                    logger.warning(f"Stop during reload of {name} failed, continuing: {e}")

            record.instance = None
            try:
                self.registry.register(self.loader.reload_factory(name))
            except Exception as e:
                await self._fail(record, "reload", e)
                raise FeatureLifecycleError(f"Failed to reload feature {name}: {e!s}", name, "reload", e) from e

            instance = await self._load(record)
            try:
                await self._start(record)
            except DependencyMissingError as e:
                await self._fail(record, "reload", e)
                raise

            logger.info(f"Reloaded feature: {name}")
            return instance

    async def start_all(self) -> dict[str, Exception]:
        """Load and start every discovered feature in dependency order.

        Best effort: a failing feature is recorded and the rest continue.
        Features disabled in config are loaded but not started; FAILED
        features are left alone until reloaded.

        Returns:
            Feature name -> error for every feature that failed

        Raises:
            CircularDependencyError: If the dependency graph has a cycle
        """
        order = self.resolve_load_order()
        await self.load_feature_config()
        logger.info(f"Starting features in order: {order}")

        errors: dict[str, Exception] = {}
        for name in order:
            record = self.registry.require(name)
            if record.state == FeatureState.FAILED:
                logger.warning(f"Skipping failed feature {name}, reload it to retry")
                continue

            try:
                if record.state == FeatureState.DISCOVERED:
                    await self.load(name)

                config = self.get_feature_config(name)
                if not (config["enabled"] and config["auto_start"]):
                    logger.info(f"Feature {name} is disabled, leaving it loaded")
                    continue

                await self.start(name)
            except FeatureError as e:
                errors[name] = e
                logger.error(f"Failed to start feature {name}: {e}")

        logger.info(f"Started {len(self._started_order)} features, {len(errors)} failed")
        return errors

    async def stop_all(self) -> dict[str, Exception]:
        """Stop every started feature in the exact reverse of start order.

        Returns:
            Feature name -> error for every stop hook that failed
        """
        shutdown_order = list(reversed(self._started_order))
        logger.info(f"Stopping features in order: {shutdown_order}")

        errors: dict[str, Exception] = {}
        for name in shutdown_order:
            try:
                await self.stop(name)
            except FeatureError as e:
                errors[name] = e
                logger.error(f"Error stopping feature {name}: {e}")

        return errors

    # Persistent feature config

    async def load_feature_config(self) -> dict[str, dict[str, Any]]:
        """Load the persisted enable/auto-start flags once and cache them."""
        if self._feature_config is None:
            stored = await self.store.load(FEATURE_CONFIG_KEY)
            if stored is not None and not isinstance(stored, dict):
                logger.warning(f"Ignoring malformed feature config under '{FEATURE_CONFIG_KEY}'")
                stored = None
            self._feature_config = stored or {}
        return self._feature_config

    async def save_feature_config(self) -> None:
        await self.store.save(FEATURE_CONFIG_KEY, await self.load_feature_config())

    def get_feature_config(self, name: str) -> dict[str, Any]:
        """Get the effective enable/auto-start flags of a feature.

        Defaults, then ``features_config`` from settings, then persisted values.
        """
        configured = self.settings.features_config.get(name, {})
        config = dict(DEFAULT_FEATURE_CONFIG)
        config.update({key: configured[key] for key in DEFAULT_FEATURE_CONFIG if key in configured})
        config.update((self._feature_config or {}).get(name, {}))
        return config

    async def enable_feature(self, name: str) -> bool:
        """Enable a feature, persist the flag and start it.

        Returns:
            True if the feature is started afterwards
        """
        record = self.registry.require(name)
        await self._set_feature_flags(name, enabled=True)

        if record.state == FeatureState.DISCOVERED:
            await self.load(name)
        if record.state in (FeatureState.LOADED, FeatureState.STOPPED):
            await self.start(name)
        return record.state == FeatureState.STARTED

    async def disable_feature(self, name: str) -> bool:
        """Disable a feature, persist the flag and stop it.

        Returns:
            True if the feature was running and has been stopped
        """
        record = self.registry.require(name)
        await self._set_feature_flags(name, enabled=False)

        if record.state != FeatureState.STARTED:
            return False
        await self.stop(name)
        return True

    # Bus-driven control

    def attach(self) -> None:
        """Subscribe the manager to ``feature.reload`` and ``features.reload``."""
        if self._attached:
            return
        self.bus.subscribe(MANAGER_OWNER, "feature.reload", self._on_feature_reload)
        self.bus.subscribe(MANAGER_OWNER, "features.reload", self._on_features_reload)
        self._attached = True

    def detach(self) -> None:
        self.bus.unsubscribe_all(MANAGER_OWNER)
        self._attached = False

    async def _on_feature_reload(self, payload: Any) -> None:
        name = payload.get("feature") if isinstance(payload, dict) else None
        if not name:
            logger.warning(f"Ignoring feature.reload without a feature name: {payload!r}")
            return
        try:
            await self.reload(name)
        except FeatureError as e:
            logger.error(f"Reload of {name} requested over the bus failed: {e}")

    async def _on_features_reload(self, payload: Any) -> None:
        self.discover()
        errors = await self.start_all()
        if errors:
            logger.warning(f"Features failed after rediscovery: {sorted(errors)}")

    @asynccontextmanager
    async def managed_lifecycle(self):
        """Context manager for the whole feature lifecycle.

        Usage:
            async with feature_manager.managed_lifecycle():
                # Features are discovered and started
                pass
            # Features are stopped
        """
        self.attach()
        try:
            self.discover()
            await self.start_all()
            yield self
        finally:
            await self.stop_all()
            self.detach()

    # Introspection

    def get_feature(self, name: str) -> IFeature | None:
        record = self.registry.get(name)
        return record.instance if record else None

    def get_feature_names(self) -> list[str]:
        return self.registry.names()

    def get_state(self, name: str) -> FeatureState | None:
        record = self.registry.get(name)
        return record.state if record else None

    def get_descriptor(self, name: str) -> FeatureDescriptor | None:
        record = self.registry.get(name)
        return record.descriptor if record else None

    def get_dependents(self, name: str) -> list[str]:
        """Features that declare ``name`` as a dependency.

        Reload does not cascade; callers that want dependents restarted can
        use this list.
        """
        return self.registry.get_dependents(name)

    def list_features(self) -> dict[str, dict[str, Any]]:
        """List all features with their state, config and status."""
        features = {}
        for record in self.registry.records():
            info = record.to_dict()
            info["config"] = self.get_feature_config(record.descriptor.name)
            info["status"] = None
            if record.instance is not None:
                try:
                    info["status"] = record.instance.get_status()
                except Exception as e:
                    logger.error(f"Error getting status of {record.descriptor.name}: {e}")
            features[record.descriptor.name] = info
        return features

    def get_stats(self) -> dict[str, Any]:
        return {
            "registry": self.registry.get_registry_stats(),
            "started_order": list(self._started_order),
            "subscriptions": self.bus.subscription_count()
        }

    # Internals

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _transition(self, name: str):
        """Hold the lifecycle lock of one feature.

        A hook of the feature (or a handler it triggers) asking for another
        transition of the same feature would wait on its own lock.

        Raises:
            FeatureStateError: If the call chain is already inside a
                transition of this feature
        """
        held = _active_transitions.get()
        if name in held:
            raise FeatureStateError(
                f"Feature {name} requested a lifecycle change from inside its own transition", name
            )
        async with self._lock_for(name):
            token = _active_transitions.set(held | {name})
            try:
                yield
            finally:
                _active_transitions.reset(token)

    async def _load(self, record: FeatureRecord) -> IFeature:
        descriptor = record.descriptor
        name = descriptor.name
        logger.info(f"Loading feature: {name}")

        try:
            instance = descriptor.factory()
            if not isinstance(instance, IFeature):
                raise TypeError(f"Factory of {name} returned {type(instance).__name__}, not an IFeature")

            storage = FeatureStorage(self.store, f"{FEATURE_CONFIG_KEY}/{name}")
            context = FeatureContext(
                name=name,
                bus=self.bus,
                storage=storage,
                logger=get_feature_logger(name),
                settings=await self._resolve_settings(descriptor, storage),
                get_dependency=self._dependency_accessor(descriptor)
            )
            await instance.initialize(context)
        except Exception as e:
            record.instance = None
            await self._fail(record, "load", e)
            raise FeatureLifecycleError(f"Failed to load feature {name}: {e!s}", name, "load", e) from e

        record.instance = instance
        record.state = FeatureState.LOADED
        record.loaded_at = time.time()
        logger.info(f"Loaded feature: {name} v{descriptor.version}")
        return instance

    async def _start(self, record: FeatureRecord) -> None:
        descriptor = record.descriptor
        name = descriptor.name

        missing = [dep for dep in descriptor.dependencies if self.get_state(dep) != FeatureState.STARTED]
        if missing:
            raise DependencyMissingError(name, missing)

        instance = record.instance
        if instance is None:
            raise FeatureStateError(f"Feature {name} has no instance to start", name, record.state.value)

        logger.info(f"Starting feature: {name}")
        try:
            await instance.start()
        except Exception as e:
            await self._fail(record, "start", e)
            raise FeatureLifecycleError(f"Failed to start feature {name}: {e!s}", name, "start", e) from e

        try:
            self._wire(record, instance)
        except Exception as e:
            self._unwire(record)
            try:
                await asyncio.wait_for(instance.stop(), timeout=self.stop_timeout)
            except Exception as stop_error:
                logger.warning(f"Stop after failed wiring of {name} also failed: {stop_error}")
            await self._fail(record, "start", e)
            raise FeatureLifecycleError(f"Failed to wire feature {name}: {e!s}", name, "start", e) from e

        record.state = FeatureState.STARTED
        record.started_at = time.time()
        if name in self._started_order:
            self._started_order.remove(name)
        self._started_order.append(name)

        logger.info(f"Started feature: {name}")
        await self.bus.emit("feature.started", {
            "feature": name,
            "version": descriptor.version,
            "timestamp": record.started_at
        })

    async def _stop(self, record: FeatureRecord) -> None:
        name = record.descriptor.name
        logger.info(f"Stopping feature: {name}")

        try:
            await asyncio.wait_for(record.instance.stop(), timeout=self.stop_timeout)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                message = f"Stop hook of {name} did not finish within {self.stop_timeout}s"
            else:
                message = f"Failed to stop feature {name}: {e!s}"
            await self._fail(record, "stop", e)
            raise FeatureLifecycleError(message, name, "stop", e) from e
        finally:
            self._unwire(record)
            if name in self._started_order:
                self._started_order.remove(name)

        record.state = FeatureState.STOPPED
        logger.info(f"Stopped feature: {name}")
        await self.bus.emit("feature.stopped", {"feature": name, "timestamp": time.time()})

    def _wire(self, record: FeatureRecord, instance: IFeature) -> None:
        name = record.descriptor.name

        if FeatureCapability.HANDLERS in instance.capabilities:
            for event_name, handler in instance.get_handlers().items():
                if record.descriptor.events and event_name not in record.descriptor.events:
                    logger.warning(f"Feature {name} handles undeclared event {event_name}")
                self.bus.subscribe(name, event_name, handler)

        if FeatureCapability.COMMANDS in instance.capabilities:
            if self.command_router is None:
                logger.debug(f"No command router, commands of {name} are not registered")
                return
            for command in instance.get_commands():
                self.command_router.register_command(command.name, command, name)
                record.commands.append(command.name)

    def _unwire(self, record: FeatureRecord) -> None:
        name = record.descriptor.name
        removed = self.bus.unsubscribe_all(name)

        if self.command_router is not None:
            for command_name in record.commands:
                try:
                    self.command_router.unregister_command(command_name)
                except Exception as e:
                    logger.error(f"Failed to unregister command {command_name} of {name}: {e}")
        record.commands.clear()
        logger.debug(f"Unwired feature {name}: {removed} subscriptions removed")

    async def _fail(self, record: FeatureRecord, phase: str, error: BaseException) -> None:
        name = record.descriptor.name
        record.state = FeatureState.FAILED
        record.record_error(error)
        logger.error(f"Feature {name} failed during {phase}: {error}")
        await self.bus.emit("feature.error", {
            "feature": name,
            "phase": phase,
            "error": str(error),
            "timestamp": time.time()
        })

    async def _resolve_settings(self, descriptor: FeatureDescriptor, storage: FeatureStorage) -> dict[str, Any]:
        metadata = descriptor.metadata
        configured = self.settings.features_config.get(descriptor.name, {}).get("settings", {})
        persisted = await storage.load({})
        if not isinstance(persisted, dict):
            raise FeatureConfigurationError(f"Stored settings of {descriptor.name} are not an object", descriptor.name)

        settings = merge_settings(merge_settings(metadata.default_settings, configured), persisted)
        result = self.validator.validate_settings(descriptor.name, settings, metadata.settings_schema)
        if not result.valid:
            raise FeatureConfigurationError("; ".join(result.errors), descriptor.name)
        return settings

    def _dependency_accessor(self, descriptor: FeatureDescriptor):
        def get_dependency(dep_name: str) -> IFeature | None:
            if dep_name not in descriptor.dependencies:
                logger.warning(f"Feature {descriptor.name} requested undeclared dependency {dep_name}")
                return None
            return self.get_feature(dep_name)

        return get_dependency

    async def _set_feature_flags(self, name: str, **flags: Any) -> None:
        config = await self.load_feature_config()
        config.setdefault(name, {}).update(flags)
        await self.save_feature_config()
        logger.info(f"Updated feature config of {name}: {flags}")
