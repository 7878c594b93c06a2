"""
CLI for the image cache.

Commands:
    cachedimage fetch URL... - Resolve URLs into the local cache
    cachedimage key URL - Show the cache key and path for a URL
    cachedimage purge URL... | --all - Delete cached blobs
    cachedimage config - Show current configuration
    cachedimage version - Print version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from cachedimage import __version__
from cachedimage.cache import CacheStore, derive_key
from cachedimage.config import Settings, clear_settings_cache, get_settings
from cachedimage.coordinator import CacheCoordinator
from cachedimage.exceptions import ConfigurationError
from cachedimage.logging import setup_logging
from cachedimage.retrieval import FetchController
from cachedimage.types import UNKNOWN_LENGTH, CacheKey, FetchProgress, RemoteResource

app = typer.Typer(
    name="cachedimage",
    help="Local cache for remote images",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError:
        return None


def _load_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'cachedimage config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, log_file=settings.LOG_FILE)
    return settings


def _open_store(cache_dir: Path | None, settings: Settings) -> CacheStore:
    store = CacheStore(cache_dir or settings.CACHE_DIR)
    try:
        store.ensure_directory()
    except ConfigurationError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return store


async def _fetch_all(
    urls: list[str],
    store: CacheStore,
    settings: Settings,
    progress: Progress,
) -> list[tuple[str, CacheKey, Path | None]]:
    """Resolve every URL through its own coordinator, bounded by settings."""
    controller = FetchController.from_settings(settings)
    semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_RESOLVES)

    async def fetch_one(url: str) -> tuple[str, CacheKey, Path | None]:
        task_id = progress.add_task(url, total=None)

        def on_progress(p: FetchProgress) -> None:
            total = None if p.bytes_expected == UNKNOWN_LENGTH else p.bytes_expected
            progress.update(task_id, completed=p.bytes_written, total=total)

        coordinator = CacheCoordinator.from_settings(
            settings, store, controller, on_progress=on_progress
        )
        async with semaphore:
            path = await coordinator.resolve(RemoteResource(uri=url))
        progress.update(task_id, visible=False)
        return url, derive_key(url), path

    try:
        return await asyncio.gather(*[fetch_one(url) for url in urls])
    finally:
        await controller.close()


@app.command()
def fetch(
    urls: Annotated[list[str], typer.Argument(help="Image URLs to cache")],
    cache_dir: Annotated[
        Optional[Path],
        typer.Option("--cache-dir", "-d", help="Cache directory (overrides CACHE_DIR)"),
    ] = None,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Hide progress bars"),
    ] = False,
) -> None:
    """Resolve URLs into the local cache.

    Cached URLs are served without network access; the rest are downloaded.
    Exits with status 1 if any URL could not be cached.
    """
    settings = _load_settings()
    store = _open_store(cache_dir, settings)

    with Progress(
        SpinnerColumn(),
        TextColumn("[cyan]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        console=error_console,
        disable=quiet,
    ) as progress:
        rows = asyncio.run(_fetch_all(urls, store, settings, progress))

    table = Table(title="Resolved", show_header=True)
    table.add_column("URL", style="cyan")
    table.add_column("Key", style="dim")
    table.add_column("Source")

    failed = 0
    for url, key, path in rows:
        if path is None:
            failed += 1
            table.add_row(url, key, "[yellow]remote[/yellow]")
        else:
            table.add_row(url, key, f"[green]{path}[/green]")

    console.print(table)

    if failed:
        error_console.print(f"[yellow]{failed} of {len(rows)} URL(s) fell back to remote.[/yellow]")
        raise typer.Exit(1)


@app.command()
def key(
    url: Annotated[str, typer.Argument(help="Image URL")],
    cache_dir: Annotated[
        Optional[Path],
        typer.Option("--cache-dir", "-d", help="Cache directory (overrides CACHE_DIR)"),
    ] = None,
) -> None:
    """Show the cache key and local path for a URL."""
    settings = _load_settings()
    store = CacheStore(cache_dir or settings.CACHE_DIR)
    cache_key = derive_key(url)
    entry = asyncio.run(store.entry(cache_key))

    console.print(f"[bold]Key:[/bold] {entry.key}")
    console.print(f"[bold]Path:[/bold] {entry.local_path}")
    status = "[green]cached[/green]" if entry.exists else "[dim]not cached[/dim]"
    console.print(f"[bold]Status:[/bold] {status}")


@app.command()
def purge(
    urls: Annotated[
        Optional[list[str]],
        typer.Argument(help="Image URLs whose blobs should be deleted"),
    ] = None,
    purge_all: Annotated[
        bool,
        typer.Option("--all", help="Delete every blob in the cache directory"),
    ] = False,
    cache_dir: Annotated[
        Optional[Path],
        typer.Option("--cache-dir", "-d", help="Cache directory (overrides CACHE_DIR)"),
    ] = None,
) -> None:
    """Delete cached blobs."""
    if not urls and not purge_all:
        error_console.print("[red]Error:[/red] Pass one or more URLs, or --all.")
        raise typer.Exit(1)

    settings = _load_settings()
    store = CacheStore(cache_dir or settings.CACHE_DIR)

    if purge_all:
        deleted = asyncio.run(store.purge_all())
        console.print(f"Deleted {deleted} blob(s) from {store.cache_dir}")
        return

    async def purge_urls(items: list[str]) -> int:
        deleted = 0
        for url in items:
            cache_key = derive_key(url)
            if await store.exists(cache_key):
                await store.delete(cache_key)
                deleted += 1
        return deleted

    deleted = asyncio.run(purge_urls(urls or []))
    console.print(f"Deleted {deleted} blob(s)")


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    console.print("[bold]Image Cache Configuration[/bold]")
    console.print()

    try:
        clear_settings_cache()
        settings = get_settings()
    except ValidationError as e:
        error_console.print("[red]Configuration is invalid:[/red]")
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            error_console.print(f"  - {field}: {error['msg']}")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for name, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(name, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"cachedimage version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
