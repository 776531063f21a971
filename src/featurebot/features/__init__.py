"""
featurebot Feature System.

This package provides the plugin architecture that bot behaviour is built
from. Features declare their dependencies and event interests; the manager
loads and starts them in dependency order and wires their handlers to the
event bus.

Key Components:
- IFeature: Base interface for all features
- Feature: Convenience base class with settings and event helpers
- FeatureManager: Lifecycle state machine and dependency ordering
- FeatureLoader: Registry of feature factories fed from a static manifest
- FeatureRegistry: State and relationship management
- FeatureValidator: Metadata and settings validation

Usage:
    from featurebot.core import EventBus, MemoryStore
    from featurebot.features import FeatureLoader, FeatureManager

    loader = FeatureLoader()
    loader.register(MyFeature)
    manager = FeatureManager(EventBus(), MemoryStore(), loader=loader)

    async with manager.managed_lifecycle():
        # Features are started and handling events
        pass
    # Features are stopped in reverse order
"""

from featurebot.features.base import Feature
from featurebot.features.errors import (
    CircularDependencyError,
    DependencyMissingError,
    FeatureConfigurationError,
    FeatureError,
    FeatureLifecycleError,
    FeatureLoadError,
    FeatureNotFoundError,
    FeatureStateError,
)
from featurebot.features.interfaces import (
    FeatureCapability,
    FeatureCommand,
    FeatureContext,
    FeatureDescriptor,
    FeatureMetadata,
    FeatureState,
    IFeature,
)
from featurebot.features.loader import FeatureLoader
from featurebot.features.manager import FeatureManager
from featurebot.features.registry import FeatureRegistry
from featurebot.features.validation import FeatureValidator

__all__ = [
    # Core interfaces
    "IFeature",
    "Feature",
    "FeatureState",
    "FeatureCapability",
    "FeatureMetadata",
    "FeatureCommand",
    "FeatureContext",
    "FeatureDescriptor",

    # Main components
    "FeatureManager",
    "FeatureLoader",
    "FeatureRegistry",
    "FeatureValidator",

    # Exceptions
    "FeatureError",
    "FeatureLoadError",
    "FeatureConfigurationError",
    "FeatureNotFoundError",
    "FeatureStateError",
    "FeatureLifecycleError",
    "CircularDependencyError",
    "DependencyMissingError",
]
