"""
The public entry point of the cache: turns caching on and off for articles,
shares items between articles and reconciles metadata with stored payloads.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Coroutine
from typing import Any

from rich.markup import escape

from article_cache.exceptions import (
    FetchFailure,
    MetadataCommitFailure,
    MigrationDataMissing,
)
from article_cache.models.records import CacheItem
from article_cache.models.stats import ReconcileReport
from article_cache.storage.content_store import ContentStore
from article_cache.storage.metadata_store import MetadataStore
from article_cache.utils.keys import EndpointType, content_filename, database_key

from .download_coordinator import DownloadCoordinator
from .migration import MigrationAdapter
from .notifications import ChangeNotifier, Observer

log = logging.getLogger(__name__)


class CacheGroupManager:
    """
    Coordinates cache groups for articles.

    Toggles return immediately; completion is observed through change
    notifications. Toggles for the same article run one after another, so a
    toggle-off never interleaves with a toggle-on of that article. Toggles of
    different articles may overlap; items they share are released and claimed
    through the metadata store, which keeps the references consistent. Call
    the public methods from a single task context (e.g. the CLI's main
    coroutine).
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        content_store: ContentStore,
        coordinator: DownloadCoordinator,
        migration_adapter: MigrationAdapter,
        notifier: ChangeNotifier,
        auxiliary_endpoints: list[EndpointType] | None = None,
    ):
        self.metadata_store = metadata_store
        self.content_store = content_store
        self.coordinator = coordinator
        self.migration_adapter = migration_adapter
        self.notifier = notifier
        self.auxiliary_endpoints = (
            [EndpointType.MOBILE_HTML_OFFLINE_RESOURCES]
            if auxiliary_endpoints is None
            else auxiliary_endpoints
        )
        self._unit_tails: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    # Observers

    def add_observer(self, observer: Observer) -> None:
        self.notifier.add_observer(observer)

    def remove_observer(self, observer: Observer) -> None:
        self.notifier.remove_observer(observer)

    # Background work

    async def _guarded(self, coro: Coroutine[Any, Any, Any], description: str) -> Any:
        try:
            return await coro
        except Exception as e:
            log.error(
                f"[red]✗ {description} failed: {e}[/red]",
                exc_info=log.getEffectiveLevel() == logging.DEBUG,
            )
            return None

    def _spawn(self, coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(coro, description))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Waits for every pending toggle, download and delete to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.coordinator.wait_in_flight()

    async def _save(self) -> bool:
        try:
            await self.metadata_store.save()
            return True
        except MetadataCommitFailure as e:
            log.error(f"[red]{e}[/red] State will be re-synced on the next pass.")
            return False

    # Public API

    async def is_cached(self, unit_url: str) -> bool:
        """
        True if the article's group exists and its primary document is
        downloaded. Auxiliary resources may still be missing.
        """
        group_key = database_key(unit_url)
        if not group_key:
            return False
        group = await self.metadata_store.group(group_key)
        if group is None or group_key not in group:
            return False
        item = await self.metadata_store.item(group_key)
        return bool(item and item.is_downloaded and not item.is_pending_delete)

    def set_cached(self, unit_url: str, enabled: bool) -> asyncio.Task | None:
        """
        Turns caching on or off for an article.

        Returns:
            The scheduled toggle task, or None if the URL has no cache key. The
            task finishes once metadata is updated (and, when turning caching
            off, payloads are deleted); downloads continue in the background.
        """
        group_key = database_key(unit_url)
        if not group_key:
            log.error(f"[red]Invalid or unsupported URL: {escape(unit_url)}[/red]")
            return None

        previous = self._unit_tails.get(group_key)
        action = "Caching" if enabled else "Uncaching"
        task = self._spawn(
            self._run_toggle(group_key, unit_url, enabled, previous),
            f"{action} '{unit_url}'",
        )
        self._unit_tails[group_key] = task

        def _forget_tail(done: asyncio.Task) -> None:
            if self._unit_tails.get(group_key) is done:
                del self._unit_tails[group_key]

        task.add_done_callback(_forget_tail)
        return task

    async def toggle_cache(self, unit_url: str) -> asyncio.Task | None:
        """Flips the cached state of an article."""
        group_key = database_key(unit_url)
        if group_key and (previous := self._unit_tails.get(group_key)):
            await asyncio.wait([previous])
        return self.set_cached(unit_url, not await self.is_cached(unit_url))

    async def _run_toggle(
        self,
        group_key: str,
        unit_url: str,
        enabled: bool,
        previous: asyncio.Task | None,
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        if enabled:
            await self._cache_unit(group_key, unit_url)
        else:
            await self._uncache_unit(group_key)

    async def _cache_unit(self, group_key: str, unit_url: str) -> None:
        log.info(f"[bold cyan]▶ Caching:[/] {escape(unit_url)}")
        primary = await self.metadata_store.cache_item_in_group(group_key, group_key)
        await self._save()
        self._spawn(self.coordinator.download(primary), f"Download of '{group_key}'")

        for endpoint_type in self.auxiliary_endpoints:
            try:
                keys = await self.coordinator.resolve_item_keys(unit_url, endpoint_type)
            except FetchFailure as e:
                log.warning(
                    f"[yellow]⚠ Could not fetch {endpoint_type.value} for"
                    f" {escape(unit_url)}:[/yellow] {e}"
                )
                continue

            items = [
                await self.metadata_store.cache_item_in_group(group_key, key)
                for key in keys
            ]
            await self._save()
            log.debug(f"{len(items)} {endpoint_type.value} items for '{group_key}'.")
            for item in items:
                self._spawn(self.coordinator.download(item), f"Download of '{item.key}'")

    async def _uncache_unit(self, group_key: str) -> None:
        released = await self.metadata_store.release_group(group_key)
        if released is None:
            log.debug(f"'{group_key}' is not cached, nothing to remove.")
            return
        log.info(f"[bold yellow]▶ Removing:[/] {escape(group_key)}")
        await self._save()

        await asyncio.gather(*(self.coordinator.delete(item) for item in released))

    async def register_for_migration(self, article_url: str) -> asyncio.Task | None:
        """
        Records an article as cached from legacy content and schedules the
        migration. The article is never fetched from the network.
        """
        unit_key = database_key(article_url)
        if not unit_key:
            log.error(f"[red]Invalid or unsupported URL: {escape(article_url)}[/red]")
            return None
        item = await self.migration_adapter.register(unit_key)
        return self._spawn(
            self.coordinator.download(item), f"Migration of '{unit_key}'"
        )

    async def cache_from_migration(
        self, article_url: str, content: str | bytes, content_type: str = "text/html"
    ) -> CacheItem | None:
        """
        Stores already-converted legacy content as an article's cached document.

        Raises:
            MigrationDataMissing: If the URL is not a valid article URL.
            StoreIOFailure: If the content could not be written.
        """
        unit_key = database_key(article_url)
        if not unit_key:
            raise MigrationDataMissing(f"'{article_url}' is not a valid article URL.")
        return await self.migration_adapter.ingest(unit_key, content, content_type)

    async def reconcile(self) -> ReconcileReport:
        """
        Re-syncs metadata and payload files after a crash or failed operations.

        Downloaded items whose payload is gone are reset and fetched again,
        payloads written before a crash are adopted, pending and orphaned
        deletes are retried, stray files and empty groups are removed.
        """
        report = ReconcileReport()
        await self.content_store.cleanup_temp_files()
        items = await self.metadata_store.all_items()
        stored = await self.content_store.stored_filenames()
        known = {content_filename(item.key) for item in items}

        to_delete: list[CacheItem] = []
        to_download: list[CacheItem] = []
        for item in items:
            if item.is_orphaned or item.is_pending_delete:
                if item.is_orphaned:
                    report.orphans_removed += 1
                else:
                    report.pending_deletes_retried += 1
                to_delete.append(item)
                continue

            has_payload = content_filename(item.key) in stored
            if item.is_downloaded and not has_payload:
                await self.metadata_store.mark_not_downloaded(item.key)
                report.missing_payloads += 1
                self.notifier.post(item.key, False)
                item = dataclasses.replace(item, is_downloaded=False)
            elif not item.is_downloaded and has_payload and not item.from_migration:
                if await self.metadata_store.finalize_download(item.key):
                    report.payloads_adopted += 1
                    self.notifier.post(item.key, True)
                    continue

            if not item.is_downloaded and not item.from_migration:
                to_download.append(item)

        for filename in sorted(stored - known):
            await self.content_store.remove_filename(filename)
            report.stray_files_removed += 1
        # Known keys get their sidecar rewritten by the next download
        for filename in sorted(await self.content_store.orphaned_sidecars() - known):
            await self.content_store.remove_filename(filename)
            report.stray_files_removed += 1

        report.empty_groups_removed = len(
            await self.metadata_store.delete_empty_groups()
        )
        await self._save()

        await asyncio.gather(*(self.coordinator.delete(item) for item in to_delete))
        for item in to_download:
            self._spawn(self.coordinator.download(item), f"Download of '{item.key}'")
            report.downloads_scheduled += 1
        return report

    async def clear_cache(self) -> int:
        """
        Erases every cached article: all records and all payloads.

        Returns:
            The number of items removed.
        """
        await self.wait_idle()
        items = await self.metadata_store.all_items()
        await self.metadata_store.clear()
        await self._save()
        await self.content_store.clear()
        for item in items:
            if item.is_downloaded:
                self.notifier.post(item.key, False)
        log.info(f"Cleared {len(items)} cached items.")
        return len(items)
