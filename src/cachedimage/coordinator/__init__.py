"""
Resolve cycle orchestration.

- CacheCoordinator: one consumer's hit / fetch / purge lifecycle
"""

from cachedimage.coordinator.cache_coordinator import CacheCoordinator

__all__ = ["CacheCoordinator"]
