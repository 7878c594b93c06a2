"""
Filesystem blob store.

Stores one file per cache key directly under a reserved directory. Transfers
stream into hidden staging files beside the blob and only rename onto the
key once complete, so a probe never sees a partial blob.
"""

from __future__ import annotations

import stat
from pathlib import Path

from cachedimage.cache.base import BlobStore
from cachedimage.exceptions import ConfigurationError, StorageProbeError
from cachedimage.logging import get_logger
from cachedimage.types import CacheEntry, CacheKey

logger = get_logger(__name__)

STAGING_SUFFIX = ".part"


def staging_path(blob_path: Path, tag: str) -> Path:
    """Hidden sibling of ``blob_path`` that a transfer writes before promotion."""
    return blob_path.with_name(f".{blob_path.name}.{tag}{STAGING_SUFFIX}")


def is_staging_file(path: Path) -> bool:
    return path.name.startswith(".") and path.name.endswith(STAGING_SUFFIX)


class CacheStore(BlobStore):
    """Blob store rooted at a reserved cache directory.

    Never touches paths outside ``cache_dir``.
    """

    def __init__(self, cache_dir: str | Path) -> None:
        """Initialize the store.

        Args:
            cache_dir: Reserved directory for cached blobs.
        """
        self.cache_dir = Path(cache_dir)

    def ensure_directory(self) -> None:
        """Create the cache directory if it doesn't exist.

        Raises:
            ConfigurationError: If the directory cannot be created.
        """
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                "Cache directory cannot be created",
                context={"cache_dir": str(self.cache_dir), "error": str(e)},
            ) from e

    def resolve_path(self, key: CacheKey) -> Path:
        return self.cache_dir / key

    def _checked_path(self, key: CacheKey) -> Path:
        """Resolve the key and refuse anything that escapes the cache directory."""
        path = self.resolve_path(key)
        if key in ("", ".", "..") or path.parent != self.cache_dir or path.name != key:
            raise StorageProbeError(
                "Cache key resolves outside the cache directory",
                context={"key": key, "cache_dir": str(self.cache_dir)},
            )
        return path

    async def exists(self, key: CacheKey) -> bool:
        """Check whether a blob file is present for the key.

        Raises:
            StorageProbeError: On an unexpected I/O failure.
        """
        path = self._checked_path(key)
        try:
            st = path.stat()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageProbeError(
                "Failed to probe cached blob",
                context={"key": key, "path": str(path), "error": str(e)},
            ) from e
        return stat.S_ISREG(st.st_mode)

    async def delete(self, key: CacheKey) -> None:
        """Delete the blob for the key if present.

        Raises:
            StorageProbeError: On an unexpected I/O failure.
        """
        path = self._checked_path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageProbeError(
                "Failed to delete cached blob",
                context={"key": key, "path": str(path), "error": str(e)},
            ) from e
        logger.debug("Deleted blob", key=key)

    async def entry(self, key: CacheKey) -> CacheEntry:
        """Describe the blob slot for a key."""
        return CacheEntry(
            key=key,
            local_path=self.resolve_path(key),
            exists=await self.exists(key),
        )

    async def purge_all(self) -> int:
        """Delete every blob in the cache directory.

        Staging files left by interrupted transfers are removed too but not
        counted. Subdirectories are left alone.

        Returns:
            Number of blobs deleted.
        """
        if not self.cache_dir.is_dir():
            return 0

        deleted = 0
        stale = 0
        for path in self.cache_dir.iterdir():
            if not path.is_file():
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageProbeError(
                    "Failed to purge cached blob",
                    context={"path": str(path), "error": str(e)},
                ) from e
            if is_staging_file(path):
                stale += 1
            else:
                deleted += 1

        logger.info(
            "Purged cache directory",
            cache_dir=str(self.cache_dir),
            deleted=deleted,
            staging_removed=stale,
        )
        return deleted
