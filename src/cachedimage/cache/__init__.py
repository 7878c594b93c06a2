"""
Cache package for image blobs.

This package provides:
- Key derivation (keys.py): URI to stable, filesystem-safe cache key
- Blob store interface (base.py)
- Filesystem store (store.py): one file per cache key in a reserved directory
"""

from cachedimage.cache.base import BlobStore
from cachedimage.cache.keys import derive_key
from cachedimage.cache.store import CacheStore

__all__ = [
    "BlobStore",
    "CacheStore",
    "derive_key",
]
