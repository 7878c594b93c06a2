"""
Cache key derivation.

Keys are a 32-bit signed rolling hash (h = h * 31 + unit) over the UTF-16
code units of the URI, rendered in decimal. The same URI always yields the
same key, across processes and platforms. Distinct URIs may collide.
"""

from __future__ import annotations

from cachedimage.types import CacheKey

_MASK_32 = 0xFFFFFFFF
_SIGN_BIT = 0x80000000


def hash_code(value: str) -> int:
    """Return the signed 32-bit string hash of ``value``."""
    data = value.encode("utf-16-le", "surrogatepass")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & _MASK_32
    return h - (1 << 32) if h & _SIGN_BIT else h


def derive_key(uri: str) -> CacheKey:
    """Derive the cache key for a remote URI.

    The result only contains digits and an optional leading minus sign,
    and is at most 11 characters long.
    """
    return CacheKey(str(hash_code(uri)))
