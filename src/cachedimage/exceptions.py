"""
Custom exception hierarchy for the image cache.

All exceptions inherit from CacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class CacheError(Exception):
    """Base exception for all image cache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(CacheError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Blank USER_AGENT
        - Cache directory that cannot be created
    """

    pass


class StorageError(CacheError):
    """Raised when the local blob store misbehaves.

    Context should include:
        - key: The cache key involved
        - path: The filesystem path involved
    """

    pass


class StorageProbeError(StorageError):
    """Raised when probing or deleting a blob fails with an unexpected I/O error.

    Callers treat a failed probe as "not present" and a failed delete as
    ignorable, after logging it.
    """

    pass


class FetchError(CacheError):
    """Raised when a transfer fails.

    Context should include:
        - url: The URL that was being fetched
        - status_code: HTTP status code if applicable
        - error: Underlying error description
    """

    pass


class FetchCancelledError(FetchError):
    """Raised when a transfer is paused or cancelled before it finished."""

    pass
