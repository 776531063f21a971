"""Monitoring utilities for featurebot."""

from .metrics import EventMetrics

__all__ = ["EventMetrics"]
