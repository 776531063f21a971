"""Utility modules for featurebot."""
