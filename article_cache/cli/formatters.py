"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from article_cache.core.migration import MigrationSummary
from article_cache.models.config import CacheConfig
from article_cache.models.stats import CacheStats, ReconcileReport
from article_cache.utils.formatting import format_duration, format_size, shorten_key


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Run `article-cache init <CACHE_DIR>` to create a configuration.",
            "• Run `article-cache validate` to see which setting is rejected.",
        ],
        "FetchFailure": [
            "• Check your internet connection.",
            "• The page API might be temporarily unavailable.",
            "• Raise `fetch_attempts` in the configuration to retry requests.",
        ],
        "StoreIOFailure": [
            "• Check that the cache directory exists and is writable.",
            "• Check the free space on the cache volume.",
            "• Run `article-cache sync` afterwards to repair the cache.",
        ],
        "MetadataCommitFailure": [
            "• The cache database could not be written.",
            "• Run `article-cache sync` to re-sync metadata with stored files.",
        ],
        "MigrationDataMissing": [
            "• Check `legacy_dir` in the configuration.",
            "• The legacy copy of this article may be incomplete.",
        ],
        "TimeoutError": [
            "• A request timed out, which may indicate network throttling.",
            "• Try raising `request_timeout` or reducing `--workers`.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    suggestion_text = Text("\n".join(suggestions))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(suggestion_text)

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration."""
    console = Console()
    content = ""
    for key, value in config_data.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def _enabled(flag: bool) -> str:
    return "✓ Enabled" if flag else "✗ Disabled"


def print_validation_table(config: CacheConfig):
    """Displays a summary of the current settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Cache Directory:", f"[green]{config.cache_path}[/green]")
    table.add_row("Database:", f"[dim]{config.database_path}[/dim]")
    table.add_row(
        "Legacy Directory:",
        str(config.legacy_path) if config.legacy_path else "[dim]none[/dim]",
    )
    table.add_row("Max Workers:", str(config.max_workers))
    table.add_row("Request Timeout:", format_duration(config.request_timeout))
    table.add_row("Fetch Attempts:", str(config.fetch_attempts))
    table.add_row("Media List:", _enabled(config.include_media_list))
    table.add_row("User Agent:", f"[dim]{config.user_agent}[/dim]")

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_stats_table(stats_data: dict[str, Any], stored_bytes: int):
    """Displays cache database statistics."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(justify="left")
    table.add_row("Cached Articles:", f"[green]{stats_data['total_groups']}[/green]")
    table.add_row("Items:", str(stats_data["total_items"]))
    table.add_row("Downloaded:", f"[green]{stats_data['downloaded_items']}[/green]")
    if stats_data["pending_delete_items"]:
        table.add_row(
            "Pending Delete:", f"[yellow]{stats_data['pending_delete_items']}[/yellow]"
        )
    if stats_data["migration_items"]:
        table.add_row(
            "Awaiting Migration:", f"[yellow]{stats_data['migration_items']}[/yellow]"
        )
    table.add_row("Stored Size:", f"[cyan]{format_size(stored_bytes)}[/cyan]")
    console.print(table)
    console.print()

    if shared_items := stats_data.get("shared_items"):
        shared = Table(title="Most Shared Items")
        shared.add_column("Rank", style="dim")
        shared.add_column("Item", style="cyan")
        shared.add_column("Articles", justify="right", style="green")
        for i, (key, count) in enumerate(shared_items, 1):
            shared.add_row(str(i), shorten_key(key), str(count))
        console.print(shared)
    else:
        console.print("[dim]No items are shared between articles yet.[/dim]")


def print_status_table(rows: list[dict[str, Any]]):
    """Displays the cached state of a list of articles."""
    console = Console()
    table = Table(box=box.ROUNDED)
    table.add_column("Article", style="cyan")
    table.add_column("Cached", justify="center")
    table.add_column("Items", justify="right")
    table.add_column("Downloaded", justify="right", style="green")
    for row in rows:
        table.add_row(
            shorten_key(row["url"]),
            "[green]✓[/green]" if row["cached"] else "[dim]✗[/dim]",
            str(row["items"]),
            str(row["downloaded"]),
        )
    console.print(table)


def print_reconcile_report(report: ReconcileReport):
    """Displays what a sync pass repaired."""
    console = Console()
    if not report.changed:
        console.print("[green]✓ Cache is consistent, nothing to repair.[/green]")
        return

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(justify="left")
    rows = [
        ("Missing Payloads:", report.missing_payloads),
        ("Payloads Adopted:", report.payloads_adopted),
        ("Deletes Retried:", report.pending_deletes_retried),
        ("Orphans Removed:", report.orphans_removed),
        ("Stray Files Removed:", report.stray_files_removed),
        ("Empty Groups Removed:", report.empty_groups_removed),
        ("Downloads Scheduled:", report.downloads_scheduled),
    ]
    for label, count in rows:
        if count:
            table.add_row(label, f"[yellow]{count}[/yellow]")
    console.print(
        Panel(table, title="[bold]Sync Report[/bold]", border_style="yellow")
    )


def print_migration_summary(summary: MigrationSummary):
    console = Console()
    console.print(
        f"[green]✓ Migrated {len(summary.migrated)} articles.[/green]"
        if summary.migrated
        else "[dim]No legacy articles were migrated.[/dim]"
    )
    if summary.missing:
        console.print(
            f"[yellow]⚠ {len(summary.missing)} articles had no usable legacy"
            " data.[/yellow]"
        )
    if summary.failed:
        console.print(f"[red]✗ {len(summary.failed)} articles failed.[/red]")
    if summary.skipped:
        console.print(
            f"[dim]{len(summary.skipped)} articles were uncached during"
            " migration.[/dim]"
        )


def print_summary_panel(stats: CacheStats, duration_s: float):
    """Displays the final summary of a cache session."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "✓ Downloaded:", f"[bold green]{stats.items_downloaded}[/bold green]"
    )
    if stats.items_migrated > 0:
        stats_table.add_row("✓ Migrated:", f"[green]{stats.items_migrated}[/green]")
    if stats.items_deleted > 0:
        stats_table.add_row("○ Deleted:", f"[yellow]{stats.items_deleted}[/yellow]")
    if stats.items_discarded > 0:
        stats_table.add_row(
            "○ Discarded:", f"[yellow]{stats.items_discarded}[/yellow]"
        )
    if stats.items_failed > 0:
        stats_table.add_row("✗ Failed:", f"[bold red]{stats.items_failed}[/bold red]")
    if stats.manifests_failed > 0:
        stats_table.add_row(
            "✗ Manifests Failed:", f"[red]{stats.manifests_failed}[/red]"
        )

    stats_table.add_row("", "")  # Spacer

    stats_table.add_row("Total Size:", f"[cyan]{format_size(stats.bytes_written)}[/cyan]")
    avg_speed = stats.bytes_written / duration_s if duration_s > 0 else 0
    stats_table.add_row(
        "Avg. Speed:", f"[magenta]{format_size(int(avg_speed))}/s[/magenta]"
    )
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    border_color = "red" if stats.items_failed else "green"
    console.print()
    console.print(
        Panel(
            stats_table,
            title="📚 [bold]Cache Updated[/bold]",
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()
