"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from article_cache import __version__
from article_cache.core.session import CacheSession
from article_cache.exceptions import ArticleCacheError
from article_cache.models.config import CacheConfig
from article_cache.storage.config_manager import ConfigManager
from article_cache.utils.keys import database_key

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_migration_summary,
    print_reconcile_report,
    print_stats_table,
    print_status_table,
    print_summary_panel,
    print_validation_table,
)

console = Console()

logging.basicConfig(
    level="WARNING",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("article_cache")

app = typer.Typer(
    name="article-cache",
    help=(
        "Keep articles and their resources available offline. Use 'article-cache"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "article-cache"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_config(cli_options: dict | None = None) -> CacheConfig:
    try:
        return ConfigManager(CONFIG_FILE).load_config(cli_options)
    except ArticleCacheError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e


def _run_session(config: CacheConfig, work) -> None:
    """Runs `work(session)` inside a cache session and prints the summary."""

    async def _session_async():
        start_time = time.monotonic()
        async with CacheSession(config) as session:
            try:
                await work(session)
            except ArticleCacheError as e:
                console.print(format_error_with_suggestions(e))
                raise typer.Exit(code=1) from e
        return session.stats, time.monotonic() - start_time

    stats, duration = asyncio.run(_session_async())
    print_summary_panel(stats, duration)
    if stats.items_failed:
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Article offline cache"""
    if version:
        console.print(f"[bold]article-cache[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("article_cache").setLevel(log_level)

    if show_config:
        if not CONFIG_FILE.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]article-cache init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        config = _load_config()
        print_config(CONFIG_FILE, config.model_dump(exclude={"config_path"}))
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    cache_dir: Path = typer.Argument(  # noqa: B008
        ..., help="Directory that will hold the cached payloads and database."
    ),
    legacy_dir: Path | None = typer.Option(  # noqa: B008
        None, "--legacy-dir", help="Root of the legacy article store to migrate from."
    ),
    workers: int = typer.Option(8, "-w", "--workers", help="Concurrent downloads."),
    media_list: bool = typer.Option(
        False, "--media-list/--no-media-list", help="Also cache each article's images."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration."
    ),
):
    """Create the configuration file."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        "cache_dir": str(cache_dir.expanduser().resolve()),
        "legacy_dir": str(legacy_dir.expanduser().resolve()) if legacy_dir else "",
        "max_workers": workers,
        "include_media_list": media_list,
    }
    try:
        CacheConfig(**settings, config_path=str(CONFIG_DIR))
        ConfigManager(CONFIG_FILE).save_new_config(settings)
    except ValueError as e:
        console.print(f"[red]✗ Invalid settings: {e}[/red]")
        raise typer.Exit(code=1) from e
    except ArticleCacheError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e

    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to cache! Try: [cyan]article-cache cache <URL>[/cyan]")


@app.command(name="cache")
def cache_command(
    urls: list[str] = typer.Argument(..., help="Article URLs to keep offline."),  # noqa: B008
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Concurrent downloads (overrides config)."
    ),
    media_list: bool | None = typer.Option(
        None, "--media-list/--no-media-list", help="Also cache each article's images."
    ),
):
    """Cache articles for offline reading."""
    config = _load_config({"max_workers": workers, "include_media_list": media_list})

    async def _cache(session: CacheSession):
        for url in urls:
            session.manager.set_cached(url, True)

    _run_session(config, _cache)


@app.command(name="uncache")
def uncache_command(
    urls: list[str] = typer.Argument(..., help="Article URLs to remove."),  # noqa: B008
):
    """Remove articles from the offline cache."""
    config = _load_config()

    async def _uncache(session: CacheSession):
        for url in urls:
            session.manager.set_cached(url, False)

    _run_session(config, _uncache)


@app.command()
def toggle(url: str = typer.Argument(..., help="Article URL.")):
    """Flip the cached state of an article."""
    config = _load_config()

    async def _toggle(session: CacheSession):
        was_cached = await session.manager.is_cached(url)
        await session.manager.toggle_cache(url)
        console.print(
            f"[cyan]{'Removing' if was_cached else 'Caching'}[/cyan] [dim]{url}[/dim]"
        )

    _run_session(config, _toggle)


@app.command()
def status(
    urls: list[str] = typer.Argument(..., help="Article URLs to inspect."),  # noqa: B008
):
    """Show whether articles are available offline."""
    config = _load_config()

    async def _status():
        rows = []
        async with CacheSession(config) as session:
            for url in urls:
                key = database_key(url)
                items = await session.metadata_store.items_in_group(key) if key else []
                rows.append(
                    {
                        "url": url,
                        "cached": await session.manager.is_cached(url),
                        "items": len(items),
                        "downloaded": sum(1 for item in items if item.is_downloaded),
                    }
                )
        return rows

    print_status_table(asyncio.run(_status()))


@app.command()
def sync():
    """Repair the cache after a crash or failed operations."""
    config = _load_config()

    async def _sync(session: CacheSession):
        console.print("[cyan]Reconciling metadata with stored payloads...[/cyan]")
        report = await session.manager.reconcile()
        print_reconcile_report(report)

    _run_session(config, _sync)


@app.command()
def migrate(
    urls: list[str] | None = typer.Argument(  # noqa: B008
        None, help="Articles to migrate. All legacy articles when omitted."
    ),
):
    """Import articles saved by the legacy store without downloading them."""
    config = _load_config()
    if config.legacy_path is None:
        console.print(
            "[red]✗ No legacy directory configured.[/] Run [cyan]article-cache init"
            " --legacy-dir <DIR>[/cyan]."
        )
        raise typer.Exit(code=1)

    async def _migrate(session: CacheSession):
        if urls:
            for url in urls:
                await session.manager.register_for_migration(url)
            return
        summary = await session.migration_adapter.migrate_all()
        print_migration_summary(summary)

    _run_session(config, _migrate)


@app.command()
def stats():
    """Show statistics from the cache database."""
    config = _load_config()

    async def _get_stats():
        async with CacheSession(config) as session:
            return (
                await session.metadata_store.get_stats(),
                await session.content_store.total_size(),
            )

    try:
        stats_data, stored_bytes = asyncio.run(_get_stats())
    except Exception as e:
        console.print(f"[red]Error accessing cache: {e}[/red]")
        raise typer.Exit(code=1) from e
    if stats_data:
        print_stats_table(stats_data, stored_bytes)
    else:
        console.print("[yellow]Could not retrieve stats.[/yellow]")


@app.command()
def vacuum():
    """Optimize the cache database."""
    config = _load_config()

    async def _vacuum():
        console.print("[cyan]Optimizing cache database...[/cyan]")
        async with CacheSession(config) as session:
            return await session.metadata_store.vacuum()

    if asyncio.run(_vacuum()):
        console.print("[green]✓ Database optimized.[/green]")
    else:
        console.print("[red]✗ Optimization failed.[/red]")


@app.command()
def clear(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Bypass the confirmation prompt.",
    ),
):
    """Erase every cached article."""
    if not force and not typer.confirm(
        "Are you sure you want to erase all saved articles? "
        "This action cannot be undone."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    config = _load_config()

    async def _clear():
        console.print("[cyan]Erasing saved articles...[/cyan]")
        async with CacheSession(config) as session:
            return await session.manager.clear_cache()

    try:
        removed = asyncio.run(_clear())
    except ArticleCacheError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e
    console.print(f"[green]✓ Cache cleared ({removed} items removed).[/green]")


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config = ConfigManager(CONFIG_FILE).load_config()
        print_validation_table(config)
    except ArticleCacheError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e
