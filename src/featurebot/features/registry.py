"""
Feature registry for featurebot.

This module keeps per-feature lifecycle records and the dependency graph
used to derive start and stop order.
"""

import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from featurebot.features.errors import CircularDependencyError, FeatureNotFoundError
from featurebot.features.interfaces import FeatureDescriptor, FeatureState, IFeature
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)


@dataclass
class FeatureRecord:
    """Lifecycle information about a discovered feature."""
    descriptor: FeatureDescriptor
    state: FeatureState = FeatureState.DISCOVERED
    instance: IFeature | None = None
    discovered_at: float = field(default_factory=time.time)
    loaded_at: float | None = None
    started_at: float | None = None
    error_count: int = 0
    last_error: str | None = None
    commands: list[str] = field(default_factory=list)

    def record_error(self, error: BaseException) -> None:
        self.error_count += 1
        self.last_error = str(error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.descriptor.name,
            "version": self.descriptor.version,
            "state": self.state.value,
            "dependencies": list(self.descriptor.dependencies),
            "events": list(self.descriptor.events),
            "commands": list(self.commands),
            "loaded_at": self.loaded_at,
            "started_at": self.started_at,
            "error_count": self.error_count,
            "last_error": self.last_error
        }


class FeatureRegistry:
    """Registry for feature records and their dependency relationships."""

    def __init__(self):
        self._records: dict[str, FeatureRecord] = {}
        self._dependency_graph: dict[str, set[str]] = {}  # feature -> dependencies
        self._reverse_deps: dict[str, set[str]] = {}  # feature -> dependents

    def register(self, descriptor: FeatureDescriptor) -> FeatureRecord:
        """Register a descriptor, replacing the descriptor of a known feature.

        An existing record keeps its state and instance; only its descriptor
        and dependency edges are refreshed.
        """
        record = self._records.get(descriptor.name)
        if record is None:
            record = FeatureRecord(descriptor=descriptor)
            self._records[descriptor.name] = record
            logger.debug(f"Registered feature: {descriptor.name} v{descriptor.version}")
        else:
            record.descriptor = descriptor

        self._remove_from_dependency_graph(descriptor.name)
        self._update_dependency_graph(descriptor.name, descriptor.dependencies)
        return record

    def unregister(self, name: str) -> bool:
        if self._records.pop(name, None) is None:
            return False
        self._remove_from_dependency_graph(name)
        return True

    def get(self, name: str) -> FeatureRecord | None:
        return self._records.get(name)

    def require(self, name: str) -> FeatureRecord:
        record = self._records.get(name)
        if record is None:
            raise FeatureNotFoundError(f"Feature {name} has not been discovered", name)
        return record

    def names(self) -> list[str]:
        return list(self._records.keys())

    def records(self) -> list[FeatureRecord]:
        return list(self._records.values())

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get_dependents(self, name: str) -> list[str]:
        """Get features that declare a dependency on ``name``."""
        return sorted(self._reverse_deps.get(name, set()))

    def resolve_load_order(self, descriptors: Iterable[FeatureDescriptor] | None = None) -> list[str]:
        """Order features so that every dependency precedes its dependents.

        Depth-first topological sort over the given descriptors (all
        registered ones by default). Input order breaks ties, so independent
        features keep their discovery order. Dependencies that are not part
        of the set are logged and ignored.

        Args:
            descriptors: Descriptors to order

        Returns:
            Feature names in dependency order

        Raises:
            CircularDependencyError: If the graph contains a cycle
        """
        if descriptors is None:
            graph = {name: list(record.descriptor.dependencies) for name, record in self._records.items()}
        else:
            graph = {descriptor.name: list(descriptor.dependencies) for descriptor in descriptors}

        order: list[str] = []
        visited: set[str] = set()
        visiting: list[str] = []

        def visit(name: str) -> None:
            if name in visited:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name):] + [name]
                raise CircularDependencyError(cycle)

            visiting.append(name)
            for dep in graph[name]:
                if dep not in graph:
                    logger.warning(f"Feature {name} depends on unknown feature {dep}")
                    continue
                visit(dep)
            visiting.pop()

            visited.add(name)
            order.append(name)

        for name in graph:
            visit(name)

        return order

    def get_registry_stats(self) -> dict[str, Any]:
        """Get registry statistics."""
        state_counts: dict[str, int] = {}
        failed = []
        for name, record in self._records.items():
            state_counts[record.state.value] = state_counts.get(record.state.value, 0) + 1
            if record.state == FeatureState.FAILED:
                failed.append(name)

        return {
            "total_features": len(self._records),
            "state_counts": state_counts,
            "failed_features": failed,
            "total_errors": sum(record.error_count for record in self._records.values()),
            "dependency_graph_size": len(self._dependency_graph)
        }

    def _update_dependency_graph(self, name: str, dependencies: Iterable[str]) -> None:
        self._dependency_graph[name] = set(dependencies)
        for dep in self._dependency_graph[name]:
            self._reverse_deps.setdefault(dep, set()).add(name)

    def _remove_from_dependency_graph(self, name: str) -> None:
        for dep in self._dependency_graph.pop(name, set()):
            dependents = self._reverse_deps.get(dep)
            if dependents is not None:
                dependents.discard(name)
                if not dependents:
                    del self._reverse_deps[dep]
