"""
Feature loader for featurebot.

This module keeps the registry of feature factories. Factories are either
registered directly or resolved from a static manifest that maps feature
names to ``"module:attribute"`` targets, so no filesystem scanning or
dynamic evaluation of code happens at runtime.
"""

import importlib
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from featurebot.features.errors import FeatureConfigurationError, FeatureLoadError
from featurebot.features.interfaces import FeatureDescriptor, FeatureMetadata, IFeature
from featurebot.features.validation import FeatureValidator
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)


@dataclass
class FeatureCandidate:
    """A registered factory waiting to be turned into a descriptor."""
    name: str | None
    factory: Callable[[], IFeature] | None
    metadata: FeatureMetadata | None = None
    source: str | None = None
    error: str | None = None


class FeatureLoader:
    """Registry of typed feature factories."""

    def __init__(self, validator: FeatureValidator | None = None):
        """Initialize the feature loader.

        Args:
            validator: Metadata validator (a default one is created if omitted)
        """
        self.validator = validator or FeatureValidator()
        self._candidates: dict[str, FeatureCandidate] = {}

    def register(
        self,
        factory: Callable[[], IFeature],
        metadata: FeatureMetadata | None = None,
        source: str | None = None
    ) -> None:
        """Register a feature factory.

        Args:
            factory: Feature class or zero-argument callable returning an IFeature
            metadata: Explicit metadata; defaults to the factory's ``metadata`` attribute
            source: Where the factory came from, for diagnostics
        """
        metadata = metadata if metadata is not None else getattr(factory, "metadata", None)
        name = metadata.name if isinstance(metadata, FeatureMetadata) else getattr(factory, "__name__", None)
        key = name or f"<unnamed:{id(factory)}>"

        if key in self._candidates:
            logger.warning(f"Feature {key} is already registered, replacing")

        self._candidates[key] = FeatureCandidate(
            name=name,
            factory=factory,
            metadata=metadata,
            source=source
        )
        logger.debug(f"Registered feature factory: {key}")

    def unregister(self, name: str) -> bool:
        return self._candidates.pop(name, None) is not None

    def load_manifest(self, manifest: Mapping[str, str]) -> int:
        """Register every entry of a ``name -> "module:attribute"`` manifest.

        Entries that cannot be imported are kept as broken candidates so that
        ``discover`` reports and skips them.

        Returns:
            Number of entries resolved successfully
        """
        resolved = 0
        for name, target in manifest.items():
            try:
                factory = self._import_target(name, target)
            except FeatureLoadError as e:
                logger.warning(str(e))
                self._candidates[name] = FeatureCandidate(name=name, factory=None, source=target, error=str(e))
                continue

            metadata = getattr(factory, "metadata", None)
            if isinstance(metadata, FeatureMetadata) and metadata.name != name:
                logger.warning(f"Manifest name {name} differs from feature metadata name {metadata.name}")
            self.register(factory, source=target)
            resolved += 1

        logger.info(f"Loaded feature manifest: {resolved}/{len(manifest)} entries resolved")
        return resolved

    def discover(self) -> list[FeatureDescriptor]:
        """Turn registered candidates into descriptors.

        Malformed candidates are skipped with a warning.

        Returns:
            Descriptors in registration order
        """
        descriptors = []
        for key, candidate in self._candidates.items():
            try:
                descriptors.append(self._describe(candidate))
            except FeatureConfigurationError as e:
                logger.warning(f"Skipping feature candidate {key}: {e}")

        logger.info(f"Discovered {len(descriptors)} features: {[d.name for d in descriptors]}")
        return descriptors

    def get_descriptor(self, name: str) -> FeatureDescriptor:
        """Build the descriptor for one registered feature.

        Raises:
            FeatureLoadError: If the name was never registered
            FeatureConfigurationError: If the candidate is malformed
        """
        candidate = self._candidates.get(name)
        if candidate is None:
            raise FeatureLoadError(f"Feature {name} is not registered", name)
        return self._describe(candidate)

    def reload_factory(self, name: str) -> FeatureDescriptor:
        """Re-import the module that defines a feature and re-register it.

        Factories registered directly (without a manifest target) are kept
        as they are.

        Returns:
            The refreshed descriptor
        """
        candidate = self._candidates.get(name)
        if candidate is None:
            raise FeatureLoadError(f"Feature {name} is not registered", name)

        if candidate.source and ":" in candidate.source:
            module_name = candidate.source.partition(":")[0]
            module = sys.modules.get(module_name)
            try:
                if module is not None:
                    importlib.reload(module)
                factory = self._import_target(name, candidate.source)
            except FeatureLoadError:
                raise
            except Exception as e:
                raise FeatureLoadError(f"Failed to re-import {candidate.source}: {e!s}", name, e)

            self._candidates[name] = FeatureCandidate(
                name=name,
                factory=factory,
                metadata=getattr(factory, "metadata", None),
                source=candidate.source
            )
            logger.info(f"Re-imported feature module: {module_name}")

        return self.get_descriptor(name)

    def list_registered(self) -> list[str]:
        return list(self._candidates.keys())

    def _describe(self, candidate: FeatureCandidate) -> FeatureDescriptor:
        if candidate.error:
            raise FeatureConfigurationError(candidate.error, candidate.name)
        if candidate.factory is None or not callable(candidate.factory):
            raise FeatureConfigurationError("Feature factory is not callable", candidate.name)
        if not isinstance(candidate.metadata, FeatureMetadata):
            raise FeatureConfigurationError("Feature factory has no FeatureMetadata", candidate.name)
        if isinstance(candidate.factory, type) and not issubclass(candidate.factory, IFeature):
            raise FeatureConfigurationError(
                f"{candidate.factory.__name__} does not implement IFeature", candidate.name
            )

        result = self.validator.validate_metadata(candidate.metadata)
        for warning in result.warnings:
            logger.warning(f"Feature {candidate.metadata.name}: {warning}")
        if not result.valid:
            raise FeatureConfigurationError("; ".join(result.errors), candidate.metadata.name)

        return FeatureDescriptor.from_metadata(candidate.metadata, candidate.factory, candidate.source)

    @staticmethod
    def _import_target(name: str, target: str) -> Callable[[], IFeature]:
        module_name, _, attribute = target.partition(":")
        if not module_name or not attribute:
            raise FeatureLoadError(f"Manifest target for {name} must be 'module:attribute': {target}", name)

        try:
            module = importlib.import_module(module_name)
        except Exception as e:
            raise FeatureLoadError(f"Failed to import {module_name} for feature {name}: {e!s}", name, e)

        factory = module
        for part in attribute.split("."):
            factory = getattr(factory, part, None)
            if factory is None:
                raise FeatureLoadError(f"{target} does not exist", name)

        return factory
