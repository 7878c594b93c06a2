"""
Consumer-facing source selection.

A consumer renders the cached file when one was resolved, and otherwise the
remote URI with a hint to prefer any HTTP-level cache.
"""

from __future__ import annotations

from pathlib import Path

from cachedimage.coordinator import CacheCoordinator
from cachedimage.types import CachePolicy, ImageSource, RemoteResource


def select_source(resource: RemoteResource, local_path: Path | None) -> ImageSource:
    """Pick what to render for a resource."""
    if local_path is not None:
        return ImageSource(uri=str(local_path))
    return ImageSource(uri=resource.uri, cache=CachePolicy.FORCE_CACHE)


async def resolve_source(coordinator: CacheCoordinator, resource: RemoteResource) -> ImageSource:
    """Resolve a resource through the coordinator and pick what to render."""
    return select_source(resource, await coordinator.resolve(resource))
