"""
Feature metadata and settings validation for featurebot.

This module validates feature metadata before a feature is accepted by the
manager and checks per-feature settings against the feature's JSON schema.
"""

import re
from typing import Any

import jsonschema
from jsonschema.exceptions import SchemaError
from jsonschema.exceptions import ValidationError as JsonSchemaValidationError

from featurebot.features.interfaces import FeatureMetadata
from featurebot.utils.config import FeatureBotSettings, ValidationResult
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)

FEATURE_NAME_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9_-]*$')
VERSION_PATTERN = re.compile(r'^\d+\.\d+\.\d+.*$')


class FeatureValidator:
    """Validator for feature metadata and configuration."""

    def __init__(self, settings: FeatureBotSettings | None = None):
        """Initialize the feature validator.

        Args:
            settings: Application settings, used for manifest checks
        """
        self.settings = settings

    def validate_feature_system(self) -> ValidationResult:
        """Validate the feature system configuration.

        Returns:
            ValidationResult with validation status
        """
        result = ValidationResult()
        if self.settings is None:
            result.warnings.append("No settings available, skipping feature system validation")
            return result

        if not self.settings.feature_manifest:
            result.warnings.append("Feature manifest is empty")

        for name, target in self.settings.feature_manifest.items():
            if not self._is_valid_feature_name(name):
                result.errors.append(f"Invalid feature name in manifest: {name}")
                result.valid = False
            if ":" not in target:
                result.errors.append(f"Manifest entry for {name} must be 'module:attribute': {target}")
                result.valid = False

        for name, config in self.settings.features_config.items():
            if not isinstance(config, dict):
                result.errors.append(f"Feature config for {name} must be a dictionary")
                result.valid = False
                continue
            if name not in self.settings.feature_manifest:
                result.warnings.append(f"Config given for feature not in manifest: {name}")

        return result

    def validate_metadata(self, metadata: FeatureMetadata) -> ValidationResult:
        """Validate feature metadata.

        Args:
            metadata: Feature metadata to validate

        Returns:
            ValidationResult with validation status
        """
        result = ValidationResult()

        if not metadata.name:
            result.errors.append("Feature name is required")
            result.valid = False
        elif not self._is_valid_feature_name(metadata.name):
            result.errors.append(f"Invalid feature name: {metadata.name}")
            result.valid = False

        if not metadata.version:
            result.errors.append("Feature version is required")
            result.valid = False
        elif not self._is_valid_version(metadata.version):
            result.warnings.append(f"Feature version format may be invalid: {metadata.version}")

        for dep in metadata.dependencies:
            if not self._is_valid_feature_name(dep):
                result.errors.append(f"Invalid dependency name: {dep}")
                result.valid = False
            elif dep == metadata.name:
                result.errors.append(f"Feature {metadata.name} depends on itself")
                result.valid = False

        for event_name in metadata.events:
            if not isinstance(event_name, str) or not event_name.strip():
                result.errors.append(f"Invalid event name: {event_name!r}")
                result.valid = False

        if metadata.settings_schema:
            try:
                jsonschema.Draft7Validator.check_schema(metadata.settings_schema)
            except SchemaError as e:
                result.errors.append(f"Invalid settings schema: {e.message}")
                result.valid = False

        return result

    def validate_settings(self, feature_name: str, settings: dict[str, Any],
                          schema: dict[str, Any] | None = None) -> ValidationResult:
        """Validate settings for a specific feature.

        Args:
            feature_name: Name of the feature
            settings: Settings to validate
            schema: Optional JSON schema for validation

        Returns:
            ValidationResult with validation status
        """
        result = ValidationResult()

        if not isinstance(settings, dict):
            result.errors.append(f"Settings for {feature_name} must be a dictionary")
            result.valid = False
            return result

        if schema:
            try:
                jsonschema.validate(settings, schema)
            except JsonSchemaValidationError as e:
                result.errors.append(f"Settings validation failed for {feature_name}: {e.message}")
                result.valid = False
            except SchemaError as e:
                result.errors.append(f"Invalid settings schema for {feature_name}: {e.message}")
                result.valid = False

        return result

    def _is_valid_feature_name(self, name: str) -> bool:
        if not name or not isinstance(name, str):
            return False
        return bool(FEATURE_NAME_PATTERN.match(name))

    def _is_valid_version(self, version: str) -> bool:
        if not version or not isinstance(version, str):
            return False
        return bool(VERSION_PATTERN.match(version))
