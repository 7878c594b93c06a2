"""
Local cache for remote images.

Remote URIs are mapped to deterministic cache keys; misses are fetched with a
resumable, cancellable transfer and partial data is purged on failure or
teardown.
"""

__version__ = "0.1.0"
