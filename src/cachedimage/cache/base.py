"""
Base classes for blob storage.

A blob store maps a cache key to the presence or absence of a local file.
Path resolution is pure; probes and deletes touch the filesystem and are
async so they can be awaited from a resolve cycle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from cachedimage.types import CacheKey


class BlobStore(ABC):
    """Abstract interface for blob store implementations."""

    @abstractmethod
    def resolve_path(self, key: CacheKey) -> Path:
        """Map a key to its deterministic local path. Never does I/O."""
        ...

    @abstractmethod
    async def exists(self, key: CacheKey) -> bool:
        """Check if a blob is present for the key."""
        ...

    @abstractmethod
    async def delete(self, key: CacheKey) -> None:
        """Delete the blob for the key; absent keys are not an error."""
        ...
