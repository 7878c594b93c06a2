"""
Pytest configuration and fixtures for image cache tests.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Generator
from unittest.mock import patch

import httpx
import pytest

from cachedimage.cache.store import CacheStore
from cachedimage.config import Settings, clear_settings_cache
from cachedimage.retrieval.fetch import FetchController

Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]


class ChunkStream(httpx.AsyncByteStream):
    """Response body that yields fixed chunks, optionally holding before one.

    With ``gate`` set, the stream waits on it before yielding the chunk at
    index ``gate_before``, which leaves a transfer parked mid-body.
    """

    def __init__(
        self,
        chunks: list[bytes],
        gate: asyncio.Event | None = None,
        gate_before: int = 1,
    ) -> None:
        self.chunks = chunks
        self.gate = gate
        self.gate_before = gate_before

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self.chunks):
            if self.gate is not None and index == self.gate_before:
                await self.gate.wait()
            yield chunk

    async def aclose(self) -> None:
        pass


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "CACHE_DIR": ".test_cache",
        "LOG_LEVEL": "DEBUG",
        "REQUEST_TIMEOUT": "5",
        "USER_AGENT": "cachedimage-tests/1.0",
        "FETCH_MAX_ATTEMPTS": "2",
        "MAX_CONCURRENT_RESOLVES": "2",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with the cache under temp_dir."""
    with patch.dict(os.environ, {"CACHE_DIR": str(temp_dir / "cache")}):
        clear_settings_cache()
        from cachedimage.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture
def cache_store(temp_dir: Path) -> CacheStore:
    """Provide a store rooted at a fresh cache directory."""
    store = CacheStore(temp_dir / "cache")
    store.ensure_directory()
    return store


@pytest.fixture
def stream_factory() -> Callable[..., ChunkStream]:
    """Build response bodies made of fixed chunks."""
    return ChunkStream


@pytest.fixture
async def make_controller() -> Any:
    """Build FetchControllers whose HTTP client is served by a handler."""
    clients: list[httpx.AsyncClient] = []

    def factory(handler: Handler) -> FetchController:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return FetchController(client=client)

    yield factory

    for client in clients:
        await client.aclose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
