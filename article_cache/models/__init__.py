"""
Data Models Layer.

This package contains the Pydantic configuration model and the dataclasses
that describe cache records and session statistics.
"""

from .config import CacheConfig
from .records import CacheGroup, CacheItem
from .stats import CacheStats, ReconcileReport

__all__ = ["CacheConfig", "CacheGroup", "CacheItem", "CacheStats", "ReconcileReport"]
