"""
Cache coordinator: resolves a remote image to a local path.

One coordinator serves one consumer. Each resolve cycle derives the key,
probes the store, and on a miss drives a single fetch session. Failures and
teardown purge whatever partial data the session left behind. Nothing raised
inside a cycle reaches the consumer; it gets None and falls back to the
remote URI.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Coroutine

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from cachedimage.cache.base import BlobStore
from cachedimage.cache.keys import derive_key
from cachedimage.config import Settings
from cachedimage.exceptions import FetchCancelledError, FetchError, StorageError
from cachedimage.logging import get_logger, log_context
from cachedimage.retrieval.fetch import FetchController, FetchSession, ProgressCallback
from cachedimage.types import (
    CacheKey,
    CoordinatorState,
    FetchProgress,
    FetchResult,
    FetchState,
    RemoteResource,
)

logger = get_logger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and not isinstance(exc, FetchCancelledError)


class _CancelToken:
    """Per-cycle cancellation flag, checked after every suspension point."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class CacheCoordinator:
    """Drives the hit / miss / purge lifecycle for one consumer.

    Resolves are serialized; at most one fetch session exists at a time.
    """

    def __init__(
        self,
        store: BlobStore,
        controller: FetchController,
        on_progress: ProgressCallback | None = None,
        max_attempts: int = 1,
        purge_completed_on_teardown: bool = True,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Blob store for probes, paths and purges.
            controller: Fetch controller used on cache misses.
            on_progress: Forwarded progress events of the active fetch.
            max_attempts: Fetch attempts per miss (failed transfers only).
            purge_completed_on_teardown: Also purge a fetch that already completed.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.controller = controller
        self.on_progress = on_progress
        self.max_attempts = max_attempts
        self.purge_completed_on_teardown = purge_completed_on_teardown
        self.retry_wait = wait_exponential(multiplier=0.5, min=0.5, max=8)
        self.state = CoordinatorState.IDLE
        self.resolved_path: Path | None = None
        self._session: FetchSession | None = None
        self._active_key: CacheKey | None = None
        self._tokens: set[_CancelToken] = set()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: BlobStore,
        controller: FetchController,
        on_progress: ProgressCallback | None = None,
    ) -> CacheCoordinator:
        return cls(
            store,
            controller,
            on_progress=on_progress,
            max_attempts=settings.FETCH_MAX_ATTEMPTS,
            purge_completed_on_teardown=settings.PURGE_COMPLETED_ON_TEARDOWN,
        )

    @property
    def session(self) -> FetchSession | None:
        """The fetch session currently in flight, if any."""
        return self._session

    def resolve(self, resource: RemoteResource) -> Coroutine[Any, Any, Path | None]:
        """Resolve a remote resource to a local path.

        The cycle is registered when this is called, so a teardown issued
        before the returned coroutine first runs still cancels it.

        Args:
            resource: The remote image.

        Returns:
            Awaitable of the local path of the cached blob, or None when the
            consumer should use the remote URI directly.
        """
        token = _CancelToken()
        self._tokens.add(token)
        return self._run_cycle(resource, token)

    async def _run_cycle(self, resource: RemoteResource, token: _CancelToken) -> Path | None:
        try:
            if not resource.uri.strip():
                logger.debug("Empty image URI, nothing to cache")
                return None
            async with self._lock:
                return await self._locked_cycle(resource, token)
        finally:
            self._tokens.discard(token)

    async def _locked_cycle(self, resource: RemoteResource, token: _CancelToken) -> Path | None:
        self.resolved_path = None
        if token.cancelled:
            self.state = CoordinatorState.TORN_DOWN
            return None

        key = derive_key(resource.uri)
        dest = self.store.resolve_path(key)
        self._active_key = key

        with log_context(cache_key=key):
            try:
                path = await self._resolve(resource, key, dest, token)
            except asyncio.CancelledError:
                await self._purge(key)
                self.state = CoordinatorState.FAILED
                raise
            except Exception:
                logger.exception("Unexpected error resolving image", url=resource.uri)
                await self._purge(key)
                path = None
            finally:
                self._active_key = None

            if token.cancelled:
                self.state = CoordinatorState.TORN_DOWN
                return None

            self.resolved_path = path
            self.state = CoordinatorState.RESOLVED if path else CoordinatorState.FAILED
            return path

    async def _resolve(
        self,
        resource: RemoteResource,
        key: CacheKey,
        dest: Path,
        token: _CancelToken,
    ) -> Path | None:
        self.state = CoordinatorState.PROBING
        if await self._probe(key):
            logger.debug("Cache hit", url=resource.uri)
            return dest
        if token.cancelled:
            return None

        self.state = CoordinatorState.FETCHING
        logger.debug("Cache miss, fetching", url=resource.uri, path=str(dest))

        try:
            result = await self._fetch_with_retries(resource.uri, dest, token)
        except FetchCancelledError:
            logger.info("Fetch cancelled", url=resource.uri)
            await self._purge(key)
            return None
        except FetchError as e:
            logger.warning("Fetch failed, falling back to remote", url=resource.uri, error=str(e))
            await self._purge(key)
            return None

        if token.cancelled:
            return None

        if not result.ok:
            logger.warning(
                "Fetch returned non-success status, falling back to remote",
                url=resource.uri,
                status=result.status,
            )
            await self._purge(key)
            return None

        return result.final_path

    async def _fetch_with_retries(self, uri: str, dest: Path, token: _CancelToken) -> FetchResult:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            reraise=True,
        )
        return await retrying(self._fetch_once, uri, dest, token)

    async def _fetch_once(self, uri: str, dest: Path, token: _CancelToken) -> FetchResult:
        if token.cancelled:
            raise FetchCancelledError("Resolve was torn down", context={"url": uri})
        session: FetchSession | None = None
        try:
            async with self.controller.open(uri, dest, on_progress=self._forward_progress) as session:
                self._session = session
                return await session.wait()
        finally:
            self._session = None
            if session is not None and session.state is not FetchState.COMPLETED:
                await self._discard_partial(session)

    async def _discard_partial(self, session: FetchSession) -> None:
        try:
            await self.controller.discard_partial(session.paused_handle())
        except StorageError as e:
            logger.warning("Failed to discard partial transfer", error=str(e))

    def _forward_progress(self, progress: FetchProgress) -> None:
        logger.debug(
            "Fetch progress",
            bytes_written=progress.bytes_written,
            bytes_expected=progress.bytes_expected,
        )
        if self.on_progress is not None:
            self.on_progress(progress)

    async def teardown(self) -> None:
        """Release the resource: cancel the cycle and purge partial data.

        Cycles still waiting to start are cancelled too. The coordinator can
        start a new resolve cycle afterwards.
        """
        for token in self._tokens:
            token.cancel()
        self.state = CoordinatorState.TORN_DOWN
        session = self._session
        key = self._active_key
        if session is None or key is None:
            return

        with log_context(session_id=session.session_id, cache_key=key):
            try:
                completed = session.state is FetchState.COMPLETED
                handle = await self.controller.pause(session)
                if completed and not self.purge_completed_on_teardown:
                    logger.debug("Keeping completed blob on teardown", path=str(handle.dest_path))
                elif await self._probe(key):
                    await self.store.delete(key)
                    logger.info("Purged blob on teardown", path=str(handle.dest_path))
            except StorageError as e:
                logger.warning("Teardown cleanup failed", error=str(e))

    async def _probe(self, key: CacheKey) -> bool:
        """Probe the store, treating a failed probe as absent."""
        try:
            return await self.store.exists(key)
        except StorageError as e:
            logger.warning("Cache probe failed, treating as absent", error=str(e))
            return False

    async def _purge(self, key: CacheKey) -> None:
        """Best-effort delete of a blob that must not be served."""
        try:
            if await self.store.exists(key):
                await self.store.delete(key)
                logger.debug("Purged blob")
        except StorageError as e:
            logger.warning("Failed to purge blob", error=str(e))
