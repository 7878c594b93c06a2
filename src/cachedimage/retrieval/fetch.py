"""
Resumable image fetcher.

Streams a remote URI into a staging file with httpx, reporting progress
after every chunk, and renames it onto the destination once complete.
Transfers run as asyncio tasks so the caller gets a session handle back
immediately and can pause it at any point; a paused session yields a handle
that resumes with an HTTP Range request.
"""

from __future__ import annotations

import asyncio
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

import httpx

from cachedimage import __version__
from cachedimage.cache.store import staging_path
from cachedimage.config import Settings
from cachedimage.exceptions import FetchCancelledError, FetchError, StorageError
from cachedimage.logging import get_logger, log_context
from cachedimage.types import (
    SUCCESS_STATUSES,
    UNKNOWN_LENGTH,
    FetchProgress,
    FetchResult,
    FetchState,
    PausedHandle,
    generate_id,
)

logger = get_logger(__name__)

USER_AGENT = f"cachedimage/{__version__}"

# Request timeout
REQUEST_TIMEOUT = 30.0

_CONTENT_RANGE_RE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")

ProgressCallback = Callable[[FetchProgress], None]


def parse_content_range(header_value: str) -> tuple[int, int, int | None]:
    """Parse a ``Content-Range`` header value.

    Returns:
        ``(start, end, total)`` where ``total`` is None for ``*``.

    Raises:
        ValueError: If the header is malformed.
    """
    match = _CONTENT_RANGE_RE.match(header_value.strip())
    if match is None:
        raise ValueError(f"invalid Content-Range format: {header_value!r}")

    start = int(match.group(1))
    end = int(match.group(2))
    total = None if match.group(3) == "*" else int(match.group(3))

    if end < start:
        raise ValueError(f"invalid Content-Range bounds: {header_value!r}")
    if total is not None and total <= end:
        raise ValueError(f"invalid Content-Range total: {header_value!r}")

    return start, end, total


def build_request_headers(resume_offset: int = 0, etag: str | None = None) -> dict[str, str]:
    """Build transfer request headers.

    Images are already compressed, so identity encoding keeps the announced
    length equal to the bytes written to disk.
    """
    headers = {"Accept-Encoding": "identity"}
    if resume_offset > 0:
        headers["Range"] = f"bytes={resume_offset}-"
        if etag:
            headers["If-Range"] = etag
    return headers


class FetchSession:
    """One resumable transfer owned by a single caller.

    The progress subscription is dropped as soon as the transfer reports
    completion, and on pause.
    """

    def __init__(
        self,
        remote_uri: str,
        dest_path: Path,
        on_progress: ProgressCallback | None = None,
        resume_offset: int = 0,
        etag: str | None = None,
        partial_path: Path | None = None,
    ) -> None:
        self.session_id = generate_id("fs")
        self.remote_uri = remote_uri
        self.dest_path = dest_path
        self.partial_path = partial_path or staging_path(dest_path, self.session_id)
        self.resume_offset = resume_offset
        self.etag = etag
        self.state = FetchState.IDLE
        self.progress = FetchProgress(resume_offset, UNKNOWN_LENGTH)
        self.result: FetchResult | None = None
        self._on_progress = on_progress
        self._task: asyncio.Task[FetchResult] | None = None
        self._pause_requested = False

    @property
    def subscribed(self) -> bool:
        """Whether progress events are still delivered."""
        return self._on_progress is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def remove_subscription(self) -> None:
        self._on_progress = None

    def _report(self, progress: FetchProgress) -> None:
        self.progress = progress
        callback = self._on_progress
        if callback is not None:
            callback(progress)
        if progress.is_complete:
            self.remove_subscription()

    def paused_handle(self) -> PausedHandle:
        """Handle describing how far this transfer got."""
        return PausedHandle(
            remote_uri=self.remote_uri,
            dest_path=self.dest_path,
            bytes_written=self.progress.bytes_written,
            etag=self.etag,
            partial_path=self.partial_path,
        )

    async def wait(self) -> FetchResult:
        """Wait for the transfer to finish.

        Returns:
            FetchResult. A non-success status is returned, not raised.

        Raises:
            FetchError: On network or write failure.
            FetchCancelledError: If the session was paused before finishing.
        """
        if self._task is None:
            raise FetchError("Fetch session was never started", context={"url": self.remote_uri})
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._pause_requested:
                raise FetchCancelledError(
                    "Fetch was paused before completion",
                    context={
                        "url": self.remote_uri,
                        "bytes_written": self.progress.bytes_written,
                    },
                ) from None
            raise


class FetchController:
    """Starts, tracks and pauses resumable transfers.

    Features:
    - Streaming download with per-chunk progress
    - Pause returning a resumable handle
    - Resume via HTTP Range / If-Range
    - No internal retries; callers own retry policy
    """

    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT,
        chunk_size: int | None = None,
        user_agent: str = USER_AGENT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            timeout: Request timeout in seconds.
            chunk_size: Re-chunk size for streaming; None passes chunks through.
            user_agent: User-Agent header for requests.
            client: Pre-built HTTP client. The controller closes only clients it created.
        """
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> FetchController:
        return cls(
            timeout=settings.REQUEST_TIMEOUT,
            chunk_size=settings.DOWNLOAD_CHUNK_SIZE,
            user_agent=settings.USER_AGENT,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": self.user_agent},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this controller created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def start(
        self,
        remote_uri: str,
        dest_path: Path,
        on_progress: ProgressCallback | None = None,
        resume: PausedHandle | None = None,
    ) -> FetchSession:
        """Begin a transfer and return its session immediately.

        Must be called from a running event loop.

        Args:
            remote_uri: URI to fetch.
            dest_path: Local file the finished body is renamed onto.
            on_progress: Called with FetchProgress after every chunk.
            resume: Handle from an earlier pause of the same transfer.

        Raises:
            ValueError: If ``resume`` belongs to a different transfer.
        """
        dest_path = Path(dest_path)
        offset = 0
        etag = None
        partial_path = None
        if resume is not None:
            if resume.remote_uri != remote_uri or Path(resume.dest_path) != dest_path:
                raise ValueError("Resume handle does not match this transfer")
            partial_path = resume.partial_path
            on_disk = partial_path.stat().st_size if partial_path and partial_path.is_file() else 0
            if partial_path is not None and on_disk == resume.bytes_written:
                offset = resume.bytes_written
                etag = resume.etag
            else:
                logger.warning(
                    "Partial file does not match resume handle, restarting",
                    url=remote_uri,
                    expected=resume.bytes_written,
                    on_disk=on_disk,
                )

        session = FetchSession(remote_uri, dest_path, on_progress, offset, etag, partial_path)
        session._task = asyncio.get_running_loop().create_task(
            self._run(session), name=f"fetch:{session.session_id}"
        )
        session.state = FetchState.IN_FLIGHT
        return session

    @asynccontextmanager
    async def open(
        self,
        remote_uri: str,
        dest_path: Path,
        on_progress: ProgressCallback | None = None,
        resume: PausedHandle | None = None,
    ) -> AsyncIterator[FetchSession]:
        """Start a transfer scoped to an ``async with`` block.

        On exit the progress subscription is released and an unfinished
        transfer is paused, whichever way the block is left.
        """
        session = self.start(remote_uri, dest_path, on_progress=on_progress, resume=resume)
        try:
            yield session
        finally:
            session.remove_subscription()
            if not session.done:
                await self.pause(session)

    async def pause(self, session: FetchSession) -> PausedHandle:
        """Suspend a transfer and return a handle that can resume it.

        Calling this on a paused, completed or failed session only returns
        the handle.
        """
        session.remove_subscription()
        task = session._task
        if task is not None and not task.done():
            session._pause_requested = True
            task.cancel()
            await asyncio.wait({task})
            logger.info(
                "Paused transfer",
                url=session.remote_uri,
                bytes_written=session.progress.bytes_written,
            )
        if session.state in (FetchState.IDLE, FetchState.IN_FLIGHT):
            session.state = FetchState.PAUSED
        return session.paused_handle()

    async def discard_partial(self, handle: PausedHandle) -> None:
        """Delete the staging file of a transfer that will not be resumed.

        Raises:
            StorageError: If the file exists but cannot be removed.
        """
        if handle.partial_path is None:
            return
        try:
            handle.partial_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                "Failed to discard partial transfer",
                context={"path": str(handle.partial_path), "error": str(e)},
            ) from e
        logger.debug("Discarded partial transfer", path=str(handle.partial_path))

    async def _run(self, session: FetchSession) -> FetchResult:
        with log_context(session_id=session.session_id):
            try:
                return await self._transfer(session)
            except asyncio.CancelledError:
                session.state = FetchState.PAUSED
                raise
            except FetchError:
                session.state = FetchState.FAILED
                raise
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                session.state = FetchState.FAILED
                logger.warning("Transfer failed", url=session.remote_uri, error=str(e))
                raise FetchError(
                    "Transfer failed",
                    context={"url": session.remote_uri, "error": str(e)},
                ) from e
            except OSError as e:
                session.state = FetchState.FAILED
                logger.error(
                    "Failed to write transfer to disk",
                    path=str(session.dest_path),
                    partial_path=str(session.partial_path),
                )
                raise FetchError(
                    "Failed to write transfer to disk",
                    context={"url": session.remote_uri, "error": str(e)},
                ) from e
            except Exception:
                session.state = FetchState.FAILED
                raise
            finally:
                session.remove_subscription()

    def _write_offset(self, session: FetchSession, response: httpx.Response) -> int:
        """Decide where the body goes: appended at the resume offset, or from zero.

        Only called for success statuses. A full ``200`` body replaces the
        partial data.
        """
        if session.resume_offset == 0 or response.status_code == 200:
            return 0

        header = response.headers.get("content-range")
        if not header:
            raise FetchError(
                "Missing Content-Range header for resumed transfer",
                context={"url": session.remote_uri, "status_code": 206},
            )
        try:
            start, _, _ = parse_content_range(header)
        except ValueError as e:
            raise FetchError(
                f"Invalid Content-Range header: {header!r}",
                context={"url": session.remote_uri, "status_code": 206},
            ) from e
        if start != session.resume_offset:
            raise FetchError(
                "Content-Range start does not match resume offset",
                context={
                    "url": session.remote_uri,
                    "expected": session.resume_offset,
                    "actual": start,
                },
            )
        return start

    def _expected_length(self, session: FetchSession, response: httpx.Response, offset: int) -> int:
        header = response.headers.get("content-length")
        if header is None:
            return UNKNOWN_LENGTH
        try:
            length = int(header)
        except ValueError as e:
            raise FetchError(
                f"Invalid Content-Length header: {header!r}",
                context={"url": session.remote_uri, "status_code": response.status_code},
            ) from e
        if length < 0:
            raise FetchError(
                f"Invalid negative Content-Length header: {length}",
                context={"url": session.remote_uri, "status_code": response.status_code},
            )
        return offset + length

    async def _transfer(self, session: FetchSession) -> FetchResult:
        client = await self._get_client()
        headers = build_request_headers(session.resume_offset, session.etag)

        async with client.stream("GET", session.remote_uri, headers=headers) as response:
            status = response.status_code
            if status not in SUCCESS_STATUSES:
                # Body is discarded; any partial data stays resumable
                result = FetchResult(status=status, final_path=session.dest_path, bytes_written=0)
                session.result = result
                session.state = FetchState.FAILED
                logger.warning(
                    "Fetch finished with non-success status",
                    url=session.remote_uri,
                    status=status,
                )
                return result

            offset = self._write_offset(session, response)
            expected = self._expected_length(session, response, offset)
            session.etag = response.headers.get("etag") or session.etag

            if session.resume_offset and offset == 0:
                logger.info("Server ignored range request, restarting", url=session.remote_uri)

            session.partial_path.parent.mkdir(parents=True, exist_ok=True)
            written = offset
            with open(session.partial_path, "ab" if offset else "wb") as f:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    f.write(chunk)
                    written += len(chunk)
                    session._report(FetchProgress(written, expected))

        if expected != UNKNOWN_LENGTH and written < expected:
            raise FetchError(
                "Transfer ended before the announced length",
                context={"url": session.remote_uri, "expected": expected, "actual": written},
            )

        os.replace(session.partial_path, session.dest_path)
        if expected == UNKNOWN_LENGTH:
            session._report(FetchProgress(written, written))

        result = FetchResult(status=status, final_path=session.dest_path, bytes_written=written)
        session.result = result
        session.state = FetchState.COMPLETED
        logger.info("Fetched", url=session.remote_uri, status=status, bytes=written)
        return result
