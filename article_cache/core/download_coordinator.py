"""
Drives the downloads and deletions of individual cache items and keeps the
metadata store in step with the content store.
"""

import asyncio
import logging
import os
from contextlib import suppress

from rich.markup import escape

from article_cache.exceptions import (
    FetchFailure,
    MetadataCommitFailure,
    StoreIOFailure,
)
from article_cache.models.records import CacheItem
from article_cache.models.stats import CacheStats
from article_cache.storage.content_store import ContentStore
from article_cache.storage.metadata_store import MetadataStore
from article_cache.utils.keys import (
    EndpointType,
    article_title,
    database_key,
    resolve_download_url,
    site_url,
)

from .migration import MigrationAdapter
from .notifications import ChangeNotifier

log = logging.getLogger(__name__)


class DownloadCoordinator:
    """
    Resolves the items of an article and moves their payloads in and out of
    the content store.
    """

    def __init__(
        self,
        fetcher,
        metadata_store: MetadataStore,
        content_store: ContentStore,
        migration_adapter: MigrationAdapter,
        notifier: ChangeNotifier,
        stats: CacheStats,
        max_workers: int = 8,
    ):
        """
        Args:
            fetcher: The fetch service; needs async fetch_manifest() and
                fetch_resource() like ArticleFetcher.
            max_workers: Maximum number of downloads running at once.
        """
        self.fetcher = fetcher
        self.metadata_store = metadata_store
        self.content_store = content_store
        self.migration_adapter = migration_adapter
        self.notifier = notifier
        self.stats = stats
        self.semaphore = asyncio.Semaphore(max_workers)
        self._in_flight: dict[str, asyncio.Task] = {}

    async def resolve_item_keys(
        self, unit_url: str, endpoint_type: EndpointType
    ) -> list[str]:
        """
        Determines the item keys an endpoint contributes to an article's group.

        The primary document is keyed by the article itself. Auxiliary
        endpoints are resolved through their manifest.

        Raises:
            FetchFailure: If the manifest could not be fetched.
        """
        if endpoint_type is EndpointType.MOBILE_HTML:
            key = database_key(unit_url)
            return [key] if key else []

        site = site_url(unit_url)
        title = article_title(unit_url)
        if not site or not title:
            log.debug(f"'{unit_url}' is not an article URL, no manifest to fetch.")
            return []

        try:
            urls = await self.fetcher.fetch_manifest(site, title, endpoint_type)
        except FetchFailure:
            self.stats.manifests_failed += 1
            raise
        self.stats.manifests_fetched += 1

        keys = [key for url in urls if (key := database_key(url))]
        return list(dict.fromkeys(keys))

    async def download(self, item: CacheItem) -> bool:
        """
        Fills an item's payload, de-duplicating concurrent requests for one key.

        Returns:
            True if the item is downloaded when this returns.
        """
        if task := self._in_flight.get(item.key):
            return await asyncio.shield(task)

        task = asyncio.create_task(self._download(item))
        self._in_flight[item.key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._in_flight.get(item.key) is task:
                del self._in_flight[item.key]

    async def _download(self, item: CacheItem) -> bool:
        # The caller's snapshot may predate a finished download or a delete
        item = await self.metadata_store.item(item.key)
        if item is None:
            return False
        if item.from_migration:
            return await self.migration_adapter.resume(item)
        if item.is_downloaded:
            return True
        if item.is_pending_delete:
            log.debug(f"Not downloading '{item.key}', a delete is pending.")
            return False

        url = resolve_download_url(item.key)
        async with self.semaphore:
            try:
                resource = await self.fetcher.fetch_resource(url)
            except FetchFailure as e:
                self.stats.items_failed += 1
                log.error(f"[red]  ✗ Download failed:[/] {escape(item.key)} ({e})")
                return False

            try:
                size = await self.content_store.write(
                    item.key, resource.temp_path, resource.content_type
                )
            except StoreIOFailure as e:
                self.stats.items_failed += 1
                log.error(f"[red]  ✗ Could not store:[/] {escape(item.key)} ({e})")
                return False
            finally:
                if resource.temp_path.exists():
                    with suppress(OSError):
                        os.remove(resource.temp_path)

        return await self._finalize(item.key, size)

    async def _finalize(self, key: str, size: int) -> bool:
        """Records a finished download unless the item was toggled off meanwhile."""
        if not await self.metadata_store.finalize_download(key):
            self.stats.items_discarded += 1
            log.debug(f"'{key}' was removed while downloading, discarding payload.")
            try:
                await self.content_store.remove(key)
            except StoreIOFailure as e:
                log.warning(f"Could not discard payload for '{key}': {e}")
            return False

        try:
            await self.metadata_store.save()
        except MetadataCommitFailure as e:
            log.error(f"[red]{e}[/red] State will be re-synced on the next pass.")

        self.stats.items_downloaded += 1
        self.stats.bytes_written += size
        self.notifier.post(key, True)
        log.info(f"  [green]✓ Cached:[/] [dim]{escape(key)}[/dim]")
        return True

    async def delete(self, item: CacheItem) -> bool:
        """
        Removes a released item's payload and, on success, its metadata record.

        Only items still pending delete or referenced by no group are removed;
        an item some group claimed again in the meantime is left untouched. A
        missing payload counts as success. On a genuine I/O failure the record
        is kept so a later pass can retry.

        Returns:
            True if the item is gone when this returns.
        """
        # A download started before the release would otherwise land after it
        if task := self._in_flight.get(item.key):
            await asyncio.wait([task])

        async with self.metadata_store.item_lock(item.key):
            releasable = await self.metadata_store.is_releasable(item.key)
            if releasable is None:
                return True
            if not releasable:
                log.debug(f"'{item.key}' was claimed again, keeping it.")
                return False

            try:
                await self.content_store.remove(item.key)
            except StoreIOFailure as e:
                self.stats.items_failed += 1
                log.error(f"[red]  ✗ Could not delete:[/] {escape(item.key)} ({e})")
                return False

            removed = await self.metadata_store.delete_released_item(item.key)
        if removed is None:
            return True
        await self.metadata_store.delete_empty_groups(sorted(removed.group_keys))
        try:
            await self.metadata_store.save()
        except MetadataCommitFailure as e:
            log.error(f"[red]{e}[/red] State will be re-synced on the next pass.")

        self.stats.items_deleted += 1
        self.notifier.post(item.key, False)
        log.debug(f"Deleted cached item '{item.key}'.")
        return True

    async def wait_in_flight(self) -> None:
        """Waits until every download started so far has finished."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
            self._in_flight = {
                key: task for key, task in self._in_flight.items() if not task.done()
            }
