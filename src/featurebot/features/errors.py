"""
Feature-specific error classes for featurebot.

This module defines custom exceptions for feature lifecycle operations.
"""

from featurebot.utils.errors import FeatureBotError


class FeatureError(FeatureBotError):
    """Base exception for feature-related errors."""

    def __init__(self, message: str, feature_name: str | None = None, cause: BaseException | None = None):
        super().__init__(message, context={"feature": feature_name} if feature_name else None)
        self.feature_name = feature_name
        self.cause = cause


class FeatureLoadError(FeatureError):
    """Exception raised when a feature module or factory cannot be resolved."""
    pass


class FeatureConfigurationError(FeatureError):
    """Exception raised when a feature has invalid metadata or settings."""
    pass


class FeatureNotFoundError(FeatureError):
    """Exception raised when a requested feature was never discovered."""
    pass


class FeatureStateError(FeatureError):
    """Exception raised when an operation is not valid in the feature's current state."""

    def __init__(self, message: str, feature_name: str | None = None, state: str | None = None):
        super().__init__(message, feature_name)
        self.state = state


class FeatureLifecycleError(FeatureError):
    """Exception raised when a feature's initialize, start or stop hook fails."""

    def __init__(self, message: str, feature_name: str, phase: str, cause: BaseException | None = None):
        super().__init__(message, feature_name, cause)
        self.phase = phase


class CircularDependencyError(FeatureError):
    """Exception raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}", cycle[0] if cycle else None)
        self.cycle = cycle


class DependencyMissingError(FeatureError):
    """Exception raised when a feature's dependencies are not started."""

    def __init__(self, feature_name: str, missing: list[str]):
        super().__init__(
            f"Feature {feature_name} has unmet dependencies: {', '.join(missing)}",
            feature_name
        )
        self.missing = missing
