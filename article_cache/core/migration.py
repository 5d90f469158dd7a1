"""
Ingests content saved by the legacy article store into the cache without a
network round trip.

Legacy articles live in per-article folders. A converter turns a folder into
a single document; the adapter stores that document as the article's primary
cache item and only then lets the legacy folder be removed.
"""

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
from pathvalidate import sanitize_filename

from article_cache.exceptions import (
    ArticleCacheError,
    MigrationDataMissing,
    StoreIOFailure,
)
from article_cache.models.records import CacheItem
from article_cache.models.stats import CacheStats
from article_cache.storage.content_store import ContentStore
from article_cache.storage.metadata_store import MetadataStore
from article_cache.utils.keys import article_title, database_key

from .notifications import ChangeNotifier

log = logging.getLogger(__name__)

MOBILE_HTML_FILENAME = "mobile-html.html"
ARTICLE_URL_FILENAME = "article_url.txt"

Converter = Callable[[str, Path], Awaitable[str | bytes]]


@dataclass(frozen=True)
class LegacyContent:
    content: bytes
    content_type: str = "text/html"


@dataclass
class MigrationSummary:
    migrated: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


async def read_mobile_html(article_url: str, folder: Path) -> bytes:
    """Default converter: the folder already holds a rendered mobile-html document."""
    path = folder / MOBILE_HTML_FILENAME
    try:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except FileNotFoundError as e:
        raise MigrationDataMissing(
            f"No {MOBILE_HTML_FILENAME} in legacy folder for '{article_url}'."
        ) from e


class LegacyArticleStore:
    """
    Read access to the legacy on-disk article store.

    Layout: <root>/sites/<host>/articles/<sanitized title>/
    """

    def __init__(self, root_dir: Path, converter: Converter | None = None):
        self.root_dir = root_dir
        self.converter = converter or read_mobile_html

    def folder_for_article(self, article_url: str) -> Path | None:
        key = database_key(article_url)
        title = article_title(article_url)
        if not key or not title:
            return None
        host = key.split("/")[2]
        return (
            self.root_dir
            / "sites"
            / sanitize_filename(host)
            / "articles"
            / sanitize_filename(title)
        )

    def _article_urls_sync(self) -> list[str]:
        urls = []
        for folder in sorted(self.root_dir.glob("sites/*/articles/*")):
            if not folder.is_dir():
                continue
            url_file = folder / ARTICLE_URL_FILENAME
            if url_file.is_file():
                urls.append(url_file.read_text(encoding="utf-8").strip())
            else:
                host = folder.parent.parent.name
                urls.append(f"https://{host}/wiki/{folder.name}")
        return urls

    async def article_urls(self) -> list[str]:
        """Lists the URLs of every article still present in the legacy store."""
        return await asyncio.to_thread(self._article_urls_sync)

    async def load(self, article_url: str) -> LegacyContent:
        """
        Loads and converts the legacy content saved for an article.

        Raises:
            MigrationDataMissing: If the folder is absent or conversion fails.
        """
        folder = self.folder_for_article(article_url)
        if folder is None or not await asyncio.to_thread(folder.is_dir):
            raise MigrationDataMissing(f"No legacy data saved for '{article_url}'.")

        try:
            converted = await self.converter(article_url, folder)
        except MigrationDataMissing:
            raise
        except Exception as e:
            raise MigrationDataMissing(
                f"Legacy data for '{article_url}' could not be converted: {e}"
            ) from e

        content = converted.encode("utf-8") if isinstance(converted, str) else converted
        if not content:
            raise MigrationDataMissing(f"Legacy data for '{article_url}' is empty.")
        return LegacyContent(content=content)

    async def remove(self, article_url: str) -> None:
        """Deletes an article's legacy folder. Failures are logged, not raised."""
        folder = self.folder_for_article(article_url)
        if folder is None:
            return
        try:
            await asyncio.to_thread(shutil.rmtree, folder)
            log.debug(f"Removed legacy folder for '{article_url}'.")
        except FileNotFoundError:
            pass
        except OSError as e:
            log.error(f"Could not remove legacy folder for '{article_url}': {e}")


class MigrationAdapter:
    """Stores already-obtained content as cache items, bypassing the network."""

    def __init__(
        self,
        metadata_store: MetadataStore,
        content_store: ContentStore,
        notifier: ChangeNotifier,
        stats: CacheStats,
        legacy_store: LegacyArticleStore | None = None,
    ):
        self.metadata_store = metadata_store
        self.content_store = content_store
        self.notifier = notifier
        self.stats = stats
        self.legacy_store = legacy_store

    async def register(self, unit_key: str) -> CacheItem:
        """Records a unit's primary item as waiting for migrated content."""
        item = await self.metadata_store.cache_item_in_group(
            unit_key, unit_key, from_migration=True
        )
        await self.metadata_store.save()
        return item

    async def ingest(
        self, unit_key: str, content: str | bytes, content_type: str
    ) -> CacheItem | None:
        """
        Stores legacy content as the primary item of a unit.

        The item is marked as migration-sourced first; the flag is cleared and
        the item marked downloaded only after the payload is durably written.

        Returns:
            The stored item, or None if the unit was uncached while the
            content was being written.

        Raises:
            StoreIOFailure: The payload could not be written; the item keeps
            from_migration set.
            MetadataCommitFailure: The metadata could not be committed.
        """
        item = await self.register(unit_key)
        if item.is_downloaded and not item.from_migration:
            log.debug(f"'{unit_key}' is already cached, skipping migrated copy.")
            return item
        return await self._store(unit_key, content, content_type)

    async def _store(
        self, unit_key: str, content: str | bytes, content_type: str
    ) -> CacheItem | None:
        data = content.encode("utf-8") if isinstance(content, str) else content
        try:
            size = await self.content_store.write_bytes(unit_key, data, content_type)
        except StoreIOFailure as e:
            log.error(f"[red]✗ Failed to store migrated content:[/] {e}")
            raise

        item = await self.metadata_store.finalize_migration(unit_key)
        if item is None:
            self.stats.items_discarded += 1
            log.debug(f"'{unit_key}' was removed while migrating, discarding content.")
            try:
                await self.content_store.remove(unit_key)
            except StoreIOFailure as e:
                log.warning(f"Could not discard migrated content for '{unit_key}': {e}")
            return None

        await self.metadata_store.save()
        self.stats.items_migrated += 1
        self.stats.bytes_written += size
        self.notifier.post(unit_key, True)
        log.info(f"[green]✓ Migrated:[/] [dim]{unit_key}[/dim]")
        return item

    async def resume(self, item: CacheItem) -> bool:
        """
        Completes a pending migration for an item using the legacy store.

        The item is not claimed again, so an article uncached in the meantime
        stays uncached.

        Returns:
            True if the content was ingested. False if legacy data is missing or
            ingestion failed; the item stays marked for a later attempt.
        """
        if not item.from_migration:
            return False
        try:
            if self.legacy_store is None:
                raise MigrationDataMissing("No legacy article store is configured.")
            legacy = await self.legacy_store.load(item.key)
            if await self._store(item.key, legacy.content, legacy.content_type) is None:
                return False
            await self.legacy_store.remove(item.key)
            return True
        except MigrationDataMissing as e:
            log.warning(f"[yellow]⚠ Migration skipped:[/] {e}")
        except ArticleCacheError as e:
            log.error(f"[red]✗ Migration failed for '{item.key}':[/] {e}")
        return False

    async def migrate_article(self, article_url: str) -> CacheItem | None:
        """
        Migrates one article from the legacy store, then removes its folder.

        The legacy folder is only removed after ingestion succeeded.

        Returns:
            The stored item, or None if the article was uncached meanwhile.

        Raises:
            MigrationDataMissing: No legacy store is configured, or its data for
            the article is absent or corrupt.
        """
        if self.legacy_store is None:
            raise MigrationDataMissing("No legacy article store is configured.")
        unit_key = database_key(article_url)
        if not unit_key:
            raise MigrationDataMissing(f"'{article_url}' is not a valid article URL.")

        legacy = await self.legacy_store.load(article_url)
        item = await self.ingest(unit_key, legacy.content, legacy.content_type)
        if item is not None:
            await self.legacy_store.remove(article_url)
        return item

    async def migrate_all(self) -> MigrationSummary:
        """Migrates every article in the legacy store, continuing past failures."""
        summary = MigrationSummary()
        if self.legacy_store is None:
            return summary

        for article_url in await self.legacy_store.article_urls():
            try:
                if await self.migrate_article(article_url) is None:
                    summary.skipped.append(article_url)
                else:
                    summary.migrated.append(article_url)
            except MigrationDataMissing as e:
                log.warning(f"[yellow]⚠ {e}[/yellow]")
                summary.missing.append(article_url)
            except ArticleCacheError as e:
                log.error(f"[red]✗ Migration failed for '{article_url}':[/] {e}")
                summary.failed.append(article_url)
        return summary
