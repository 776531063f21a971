"""
Custom exception classes for featurebot.
"""

from typing import Any


class FeatureBotError(Exception):
    """Base exception for all featurebot errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        suggestions: list[str] | None = None,
        context: dict[str, Any] | None = None
    ):
        """Initialize error with enhanced information.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            suggestions: List of suggested remediation steps
            context: Additional context information for debugging
        """
        super().__init__(message)
        self.error_code = error_code or self.__class__.__name__.upper()
        self.suggestions = suggestions or []
        self.context = context or {}


class ConfigurationError(FeatureBotError):
    """Raised when there is an issue with the application configuration."""
    pass


class ValidationError(FeatureBotError):
    """Raised when input data fails validation."""
    pass


class StorageError(FeatureBotError):
    """Raised when the persistent store cannot read or write a key."""
    pass


class EventBusError(FeatureBotError):
    """Base exception for event bus errors."""
    pass


class InvalidEventNameError(EventBusError, ValueError):
    """Raised when an event name is empty or not a string."""
    pass


class HandlerFailure(EventBusError):
    """An event handler raised. Isolated per handler, never raised out of emit."""

    def __init__(self, feature_name: str, event_name: str, cause: BaseException):
        super().__init__(
            f"Handler of feature '{feature_name}' failed on '{event_name}': {cause!r}",
            context={"feature": feature_name, "event": event_name},
        )
        self.feature_name = feature_name
        self.event_name = event_name
        self.cause = cause


class MiddlewareFailure(EventBusError):
    """A middleware transform raised. The pipeline continues with the unmodified payload."""

    def __init__(self, event_name: str, phase: str, cause: BaseException):
        super().__init__(
            f"{phase} middleware for '{event_name}' failed: {cause!r}",
            context={"event": event_name, "phase": phase},
        )
        self.event_name = event_name
        self.phase = phase
        self.cause = cause


class CacheError(FeatureBotError):
    """Base exception for retention cache errors."""
    pass


class SweepFailure(CacheError):
    """A background sweep failed. Logged; the sweep retries on the next interval."""
    pass
