"""
Retention cache for featurebot.
"""

from .retention import CacheEntry, RetentionCache

__all__ = ["CacheEntry", "RetentionCache"]
