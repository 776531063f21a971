"""
Feature interfaces for featurebot.

This module defines the lifecycle states, metadata models and the abstract
base class every feature implements.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, Flag, auto
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from featurebot.core.events import EventBus
    from featurebot.core.storage import FeatureStorage


class FeatureState(str, Enum):
    """Feature lifecycle states."""
    DISCOVERED = "discovered"
    LOADED = "loaded"
    STARTED = "started"
    STOPPED = "stopped"
    FAILED = "failed"


class FeatureCapability(Flag):
    """Optional extras a feature provides beyond the lifecycle hooks."""
    NONE = 0
    HANDLERS = auto()
    COMMANDS = auto()


class FeatureMetadata(BaseModel):
    """Feature metadata model."""
    name: str
    version: str = "1.0.0"
    description: str = ""
    author: str = ""
    dependencies: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list)
    settings_schema: dict[str, Any] = Field(default_factory=dict)
    default_settings: dict[str, Any] = Field(default_factory=dict)

    # Pydantic v2 configuration
    model_config = ConfigDict(extra="allow")


class FeatureCommand(BaseModel):
    """A named command a feature exposes to the command router."""
    name: str
    description: str = ""
    usage: str = ""
    handler: Any  # Callable invoked by the router

    model_config = ConfigDict(arbitrary_types_allowed=True)


@dataclass(frozen=True)
class FeatureDescriptor:
    """Immutable identity of a discovered feature."""
    name: str
    version: str
    dependencies: tuple[str, ...]
    events: tuple[str, ...]
    commands: tuple[str, ...]
    factory: Callable[[], "IFeature"] = field(compare=False, hash=False, repr=False)
    metadata: FeatureMetadata = field(compare=False, hash=False, repr=False)
    source: str | None = None

    @classmethod
    def from_metadata(
        cls,
        metadata: FeatureMetadata,
        factory: Callable[[], "IFeature"],
        source: str | None = None
    ) -> "FeatureDescriptor":
        return cls(
            name=metadata.name,
            version=metadata.version,
            dependencies=tuple(metadata.dependencies),
            events=tuple(metadata.events),
            commands=tuple(metadata.commands),
            factory=factory,
            metadata=metadata,
            source=source
        )


@dataclass
class FeatureContext:
    """Everything the manager injects into a feature at load time."""
    name: str
    bus: "EventBus"
    storage: "FeatureStorage"
    logger: logging.Logger
    settings: dict[str, Any] = field(default_factory=dict)
    get_dependency: Callable[[str], "IFeature | None"] = lambda name: None


class IFeature(ABC):
    """Abstract base class for all features.

    Handlers and commands are only read by the manager when the matching
    ``FeatureCapability`` flag is set.
    """

    metadata: FeatureMetadata
    capabilities: FeatureCapability = FeatureCapability.NONE

    @abstractmethod
    async def initialize(self, context: FeatureContext) -> None:
        """Prepare the feature. Called once per instance, before start.

        Args:
            context: Injected bus, storage, logger and settings

        Raises:
            Exception: Any error marks the feature FAILED
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """Begin operating. Handlers are subscribed after this returns."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop operating and release resources (timers, tasks).

        Subscriptions and commands are removed by the manager even if this
        raises.
        """
        pass

    def get_handlers(self) -> dict[str, Callable[[Any], Any]]:
        """Return event name -> handler. Read only with HANDLERS capability."""
        return {}

    def get_commands(self) -> list[FeatureCommand]:
        """Return commands. Read only with COMMANDS capability."""
        return []

    def get_status(self) -> dict[str, Any]:
        """Return a feature-specific status snapshot."""
        return {}
