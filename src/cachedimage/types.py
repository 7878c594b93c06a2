"""
Core types for the image cache.

This module defines the data structures shared by the cache components:
- Enums for fetch and coordinator states and the consumer cache policy
- Frozen dataclasses for immutable values (RemoteResource, CacheEntry,
  FetchProgress, FetchResult, PausedHandle, ImageSource)
- Helper functions for ID generation
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, NewType

import orjson
from uuid6 import uuid7

CacheKey = NewType("CacheKey", str)

# Reported as bytes_expected when the server announced no length
UNKNOWN_LENGTH = -1

SUCCESS_STATUSES = frozenset({200, 206})


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "fs" for fetch sessions)

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


class FetchState(str, Enum):
    """Lifecycle of a single resumable transfer."""

    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class CoordinatorState(str, Enum):
    """Lifecycle of one resolve cycle on a coordinator."""

    IDLE = "idle"
    PROBING = "probing"
    FETCHING = "fetching"
    RESOLVED = "resolved"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


class CachePolicy(str, Enum):
    """Hint passed to the consumer when it falls back to the remote URI."""

    DEFAULT = "default"
    RELOAD = "reload"
    FORCE_CACHE = "force-cache"
    ONLY_IF_CACHED = "only-if-cached"


@dataclass(frozen=True)
class RemoteResource:
    """A remote image, identified by its URI."""

    uri: str


@dataclass(frozen=True)
class CacheEntry:
    """A blob slot in the cache store."""

    key: CacheKey
    local_path: Path
    exists: bool


@dataclass(frozen=True)
class FetchProgress:
    """Bytes written so far against the bytes the server announced."""

    bytes_written: int
    bytes_expected: int

    @property
    def is_complete(self) -> bool:
        if self.bytes_expected == UNKNOWN_LENGTH:
            return False
        return self.bytes_written >= self.bytes_expected

    @property
    def fraction(self) -> float | None:
        """Completed fraction in [0, 1], or None when the length is unknown."""
        if self.bytes_expected <= 0:
            return None
        return min(1.0, self.bytes_written / self.bytes_expected)


@dataclass(frozen=True)
class FetchResult:
    """Completion record of a transfer.

    ``final_path`` only holds the body when ``ok`` is true; a non-success
    response is never written there.
    """

    status: int
    final_path: Path
    bytes_written: int

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES


@dataclass(frozen=True)
class PausedHandle:
    """Resumable handle returned when a transfer is paused.

    Passing it back to ``FetchController.start(resume=...)`` continues from
    ``bytes_written`` with an HTTP Range request. The bytes so far live in
    ``partial_path``, a staging file next to ``dest_path``.
    """

    remote_uri: str
    dest_path: Path
    bytes_written: int
    etag: str | None = None
    partial_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_uri": self.remote_uri,
            "dest_path": str(self.dest_path),
            "bytes_written": self.bytes_written,
            "etag": self.etag,
            "partial_path": str(self.partial_path) if self.partial_path else None,
        }

    def to_json(self) -> bytes:
        """Serialize the handle so a paused transfer can be resumed later."""
        return orjson.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: bytes | str) -> PausedHandle:
        """Rebuild a handle produced by ``to_json``."""
        obj = orjson.loads(data)
        return cls(
            remote_uri=obj["remote_uri"],
            dest_path=Path(obj["dest_path"]),
            bytes_written=int(obj["bytes_written"]),
            etag=obj.get("etag"),
            partial_path=Path(obj["partial_path"]) if obj.get("partial_path") else None,
        )


@dataclass(frozen=True)
class ImageSource:
    """What a consumer should render: a local file or the remote URI."""

    uri: str
    cache: CachePolicy | None = None

    @property
    def is_local(self) -> bool:
        return self.cache is None
