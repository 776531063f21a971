"""
featurebot - plugin runtime core for a messaging bot.

This package provides:
- A bounded retention cache for recent messages
- An event bus with middleware and isolated handler fan-out
- A feature manager with dependency ordering and lifecycle control
"""

__version__ = "0.1.0"
