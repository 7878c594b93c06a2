"""
Tests for the cache coordinator.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
import pytest
from tenacity import wait_none

from cachedimage.cache.keys import derive_key
from cachedimage.cache.store import CacheStore
from cachedimage.coordinator import CacheCoordinator
from cachedimage.exceptions import StorageProbeError
from cachedimage.types import (
    CacheKey,
    CoordinatorState,
    FetchProgress,
    FetchResult,
    FetchState,
    PausedHandle,
    RemoteResource,
)

URI = "https://x/a.png"


class CountingHandler:
    """Mock transport handler that counts requests and replays responses."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        response = self.responses[min(self.calls, len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response()
        return response


class FlakyStore(CacheStore):
    """Store whose probes always fail."""

    async def exists(self, key: CacheKey) -> bool:
        raise StorageProbeError("disk unavailable", context={"key": key})


class TestResolveHitAndMiss:
    """Test the basic hit and miss paths."""

    @pytest.mark.asyncio
    async def test_hit_does_not_fetch(self, cache_store: CacheStore, make_controller: Any) -> None:
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))
        dest = cache_store.resolve_path(derive_key(URI))
        dest.write_bytes(b"cached")

        path = await coordinator.resolve(RemoteResource(uri=URI))

        assert path == dest
        assert handler.calls == 0
        assert coordinator.state is CoordinatorState.RESOLVED
        assert coordinator.resolved_path == dest

    @pytest.mark.asyncio
    async def test_miss_fetches_once_and_stores(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))
        key = derive_key(URI)

        path = await coordinator.resolve(RemoteResource(uri=URI))

        assert handler.calls == 1
        assert path == cache_store.resolve_path(key)
        assert await cache_store.exists(key)
        assert path.read_bytes() == b"img"
        assert coordinator.session is None

    @pytest.mark.asyncio
    async def test_scenario_progress_then_second_resolve_hits(
        self, cache_store: CacheStore, make_controller: Any, stream_factory: Any
    ) -> None:
        """Test the full miss-then-hit scenario with progress events."""
        handler = CountingHandler(
            lambda: httpx.Response(
                200,
                headers={"Content-Length": "100"},
                stream=stream_factory([b"a" * 50, b"b" * 50]),
            )
        )
        events: list[FetchProgress] = []
        coordinator = CacheCoordinator(
            cache_store, make_controller(handler), on_progress=events.append
        )
        resource = RemoteResource(uri=URI)
        dest = cache_store.resolve_path(derive_key(URI))

        first = await coordinator.resolve(resource)

        assert first == dest
        assert events == [FetchProgress(50, 100), FetchProgress(100, 100)]
        assert await cache_store.exists(derive_key(URI))

        second = await coordinator.resolve(resource)

        assert second == dest
        assert handler.calls == 1
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_concurrent_resolves_are_serialized(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))
        resource = RemoteResource(uri=URI)

        first, second = await asyncio.gather(
            coordinator.resolve(resource), coordinator.resolve(resource)
        )

        assert first == second == cache_store.resolve_path(derive_key(URI))
        assert handler.calls == 1


class TestResolveFailure:
    """Test failure paths: null result plus purge."""

    @pytest.mark.asyncio
    async def test_non_success_status_purges(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(500, content=b"server error page"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))

        path = await coordinator.resolve(RemoteResource(uri=URI))

        assert path is None
        assert not await cache_store.exists(derive_key(URI))
        assert coordinator.state is CoordinatorState.FAILED

    @pytest.mark.asyncio
    async def test_network_error_returns_none(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.ConnectError("refused"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))

        path = await coordinator.resolve(RemoteResource(uri=URI))

        assert path is None
        assert handler.calls == 1
        assert not await cache_store.exists(derive_key(URI))

    @pytest.mark.asyncio
    async def test_truncated_transfer_purges_partial_blob(
        self, cache_store: CacheStore, make_controller: Any, stream_factory: Any
    ) -> None:
        handler = CountingHandler(
            lambda: httpx.Response(
                200,
                headers={"Content-Length": "100"},
                stream=stream_factory([b"a" * 40]),
            )
        )
        coordinator = CacheCoordinator(cache_store, make_controller(handler))

        assert await coordinator.resolve(RemoteResource(uri=URI)) is None
        assert not await cache_store.exists(derive_key(URI))
        assert list(cache_store.cache_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_probe_failure_is_treated_as_miss(
        self, temp_dir: Path, make_controller: Any
    ) -> None:
        store = FlakyStore(temp_dir / "cache")
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(store, make_controller(handler))

        path = await coordinator.resolve(RemoteResource(uri=URI))

        assert handler.calls == 1
        assert path == store.resolve_path(derive_key(URI))

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_escape(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        """Test that a failing progress consumer still yields None, not an exception."""
        handler = CountingHandler(httpx.Response(200, content=b"img"))

        def broken_consumer(progress: FetchProgress) -> None:
            raise ValueError("consumer bug")

        coordinator = CacheCoordinator(
            cache_store, make_controller(handler), on_progress=broken_consumer
        )

        assert await coordinator.resolve(RemoteResource(uri=URI)) is None
        assert not await cache_store.exists(derive_key(URI))
        assert list(cache_store.cache_dir.iterdir()) == []


class TestRetryPolicy:
    """Test that retries belong to the coordinator."""

    @pytest.mark.asyncio
    async def test_retries_transport_errors(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
            httpx.Response(200, content=b"img"),
        )
        coordinator = CacheCoordinator(cache_store, make_controller(handler), max_attempts=3)
        coordinator.retry_wait = wait_none()

        path = await coordinator.resolve(RemoteResource(uri=URI))

        assert handler.calls == 3
        assert path is not None

    @pytest.mark.asyncio
    async def test_non_success_status_is_not_retried(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(503, content=b"busy"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler), max_attempts=3)
        coordinator.retry_wait = wait_none()

        assert await coordinator.resolve(RemoteResource(uri=URI)) is None
        assert handler.calls == 1

    def test_rejects_zero_attempts(self, cache_store: CacheStore) -> None:
        with pytest.raises(ValueError):
            CacheCoordinator(cache_store, controller=None, max_attempts=0)  # type: ignore[arg-type]


class TestTeardown:
    """Test purge-on-teardown."""

    @pytest.mark.asyncio
    async def test_teardown_mid_fetch_purges_blob(
        self, cache_store: CacheStore, make_controller: Any, stream_factory: Any
    ) -> None:
        gate = asyncio.Event()
        first_chunk = asyncio.Event()
        handler = CountingHandler(
            lambda: httpx.Response(
                200,
                headers={"Content-Length": "100"},
                stream=stream_factory([b"a" * 50, b"b" * 50], gate=gate),
            )
        )
        coordinator = CacheCoordinator(
            cache_store, make_controller(handler), on_progress=lambda p: first_chunk.set()
        )
        key = derive_key(URI)

        resolve_task = asyncio.create_task(coordinator.resolve(RemoteResource(uri=URI)))
        await first_chunk.wait()
        session = coordinator.session
        assert session is not None
        assert session.partial_path.exists()
        assert not await cache_store.exists(key)

        await coordinator.teardown()

        assert session.state is FetchState.PAUSED
        assert await resolve_task is None
        assert coordinator.state is CoordinatorState.TORN_DOWN
        assert not await cache_store.exists(key)
        assert list(cache_store.cache_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_teardown_without_session_keeps_resolved_blob(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))

        path = await coordinator.resolve(RemoteResource(uri=URI))
        await coordinator.teardown()

        assert path is not None and path.exists()
        assert coordinator.state is CoordinatorState.TORN_DOWN

    @pytest.mark.asyncio
    async def test_resolve_after_teardown_starts_new_cycle(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))

        await coordinator.teardown()
        path = await coordinator.resolve(RemoteResource(uri=URI))

        assert path is not None
        assert coordinator.state is CoordinatorState.RESOLVED

    @pytest.mark.asyncio
    async def test_teardown_before_cycle_starts_cancels_it(
        self, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))

        task = asyncio.create_task(coordinator.resolve(RemoteResource(uri=URI)))
        await coordinator.teardown()

        assert await task is None
        assert handler.calls == 0
        assert coordinator.state is CoordinatorState.TORN_DOWN
        assert not await cache_store.exists(derive_key(URI))

    @pytest.mark.asyncio
    async def test_teardown_cancels_queued_cycles(
        self, cache_store: CacheStore, make_controller: Any, stream_factory: Any
    ) -> None:
        gate = asyncio.Event()
        first_chunk = asyncio.Event()
        handler = CountingHandler(
            lambda: httpx.Response(
                200,
                headers={"Content-Length": "100"},
                stream=stream_factory([b"a" * 50, b"b" * 50], gate=gate),
            )
        )
        coordinator = CacheCoordinator(
            cache_store, make_controller(handler), on_progress=lambda p: first_chunk.set()
        )

        active = asyncio.create_task(coordinator.resolve(RemoteResource(uri=URI)))
        queued = asyncio.create_task(coordinator.resolve(RemoteResource(uri="https://x/b.png")))
        await first_chunk.wait()
        await coordinator.teardown()

        assert await active is None
        assert await queued is None
        assert handler.calls == 1
        assert list(cache_store.cache_dir.iterdir()) == []


class _FinishedSession:
    """Session whose transfer already wrote a complete blob but has not returned."""

    def __init__(self, dest: Path) -> None:
        self.session_id = "fs_test"
        self.dest_path = dest
        self.state = FetchState.COMPLETED
        self.release = asyncio.Event()
        dest.write_bytes(b"complete image")

    async def wait(self) -> FetchResult:
        await self.release.wait()
        return FetchResult(status=200, final_path=self.dest_path, bytes_written=14)


class _RacingController:
    """Controller whose session completes the write before the caller observes it."""

    def __init__(self) -> None:
        self.session: _FinishedSession | None = None
        self.opened = asyncio.Event()
        self.paused = 0

    @asynccontextmanager
    async def open(self, remote_uri: str, dest_path: Path, on_progress: Any = None) -> AsyncIterator[_FinishedSession]:
        self.session = _FinishedSession(dest_path)
        self.opened.set()
        yield self.session

    async def pause(self, session: _FinishedSession) -> PausedHandle:
        self.paused += 1
        session.release.set()
        return PausedHandle(remote_uri=URI, dest_path=session.dest_path, bytes_written=14)


class TestTeardownRacingCompletion:
    """Test the teardown policy when the write already completed."""

    @pytest.mark.asyncio
    async def test_unconditional_purge_by_default(self, cache_store: CacheStore) -> None:
        controller = _RacingController()
        coordinator = CacheCoordinator(cache_store, controller)  # type: ignore[arg-type]

        task = asyncio.create_task(coordinator.resolve(RemoteResource(uri=URI)))
        await controller.opened.wait()
        await asyncio.sleep(0)
        await coordinator.teardown()

        assert controller.paused == 1
        assert await task is None
        assert not await cache_store.exists(derive_key(URI))

    @pytest.mark.asyncio
    async def test_completed_blob_kept_when_configured(self, cache_store: CacheStore) -> None:
        controller = _RacingController()
        coordinator = CacheCoordinator(
            cache_store, controller, purge_completed_on_teardown=False  # type: ignore[arg-type]
        )

        task = asyncio.create_task(coordinator.resolve(RemoteResource(uri=URI)))
        await controller.opened.wait()
        await asyncio.sleep(0)
        await coordinator.teardown()

        assert await task is None
        assert await cache_store.exists(derive_key(URI))


class TestSharedCacheDirectory:
    """Test consumers that resolve the same URI through separate coordinators."""

    @pytest.mark.asyncio
    async def test_transfer_in_progress_is_not_a_hit(
        self, cache_store: CacheStore, make_controller: Any, stream_factory: Any
    ) -> None:
        gate = asyncio.Event()
        first_chunk = asyncio.Event()
        handler = CountingHandler(
            lambda: httpx.Response(
                200,
                headers={"Content-Length": "100"},
                stream=stream_factory([b"a" * 50, b"b" * 50], gate=gate),
            ),
            lambda: httpx.Response(
                200,
                headers={"Content-Length": "100"},
                stream=stream_factory([b"a" * 50, b"b" * 50]),
            ),
        )
        controller = make_controller(handler)
        first = CacheCoordinator(cache_store, controller, on_progress=lambda p: first_chunk.set())
        second = CacheCoordinator(cache_store, controller)
        key = derive_key(URI)

        first_task = asyncio.create_task(first.resolve(RemoteResource(uri=URI)))
        await first_chunk.wait()
        assert not await cache_store.exists(key)

        path = await second.resolve(RemoteResource(uri=URI))

        assert handler.calls == 2
        assert path == cache_store.resolve_path(key)
        assert path.read_bytes() == b"a" * 50 + b"b" * 50

        gate.set()
        assert await first_task == path
        assert path.read_bytes() == b"a" * 50 + b"b" * 50
        assert [p.name for p in cache_store.cache_dir.iterdir()] == [key]


class TestBlankUri:
    """Test that a resource without a URI is never loaded."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("uri", ["", "   "])
    async def test_blank_uri_returns_none_without_fetching(
        self, uri: str, cache_store: CacheStore, make_controller: Any
    ) -> None:
        handler = CountingHandler(httpx.Response(200, content=b"img"))
        coordinator = CacheCoordinator(cache_store, make_controller(handler))

        assert await coordinator.resolve(RemoteResource(uri=uri)) is None
        assert handler.calls == 0
        assert coordinator.state is CoordinatorState.IDLE
        assert list(cache_store.cache_dir.iterdir()) == []
