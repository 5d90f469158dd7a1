"""
Wires the cache components together for one run of the application.
"""

import logging

from article_cache.api.client import ArticleFetcher
from article_cache.models.config import CacheConfig
from article_cache.models.stats import CacheStats
from article_cache.storage.content_store import ContentStore
from article_cache.storage.metadata_store import MetadataStore

from .cache_manager import CacheGroupManager
from .download_coordinator import DownloadCoordinator
from .migration import Converter, LegacyArticleStore, MigrationAdapter
from .notifications import ChangeNotifier

log = logging.getLogger(__name__)


class CacheSession:
    """
    Owns the stores, the fetcher and the manager built from a configuration.

    Use as an async context manager; on exit it waits for background work and
    releases the HTTP session and the database connection.
    """

    def __init__(
        self,
        config: CacheConfig,
        fetcher=None,
        converter: Converter | None = None,
    ):
        self.config = config
        self.stats = CacheStats()
        self.notifier = ChangeNotifier()
        self.content_store = ContentStore(config.cache_path)
        self.metadata_store = MetadataStore(config.database_path)
        self.fetcher = fetcher or ArticleFetcher(
            temp_dir=self.content_store.tmp_dir,
            user_agent=config.user_agent,
            timeout=config.request_timeout,
            max_workers=config.max_workers,
            max_attempts=config.fetch_attempts,
        )

        legacy_store = (
            LegacyArticleStore(config.legacy_path, converter)
            if config.legacy_path
            else None
        )
        self.migration_adapter = MigrationAdapter(
            self.metadata_store,
            self.content_store,
            self.notifier,
            self.stats,
            legacy_store=legacy_store,
        )
        self.coordinator = DownloadCoordinator(
            self.fetcher,
            self.metadata_store,
            self.content_store,
            self.migration_adapter,
            self.notifier,
            self.stats,
            max_workers=config.max_workers,
        )
        self.manager = CacheGroupManager(
            self.metadata_store,
            self.content_store,
            self.coordinator,
            self.migration_adapter,
            self.notifier,
            auxiliary_endpoints=config.auxiliary_endpoints,
        )

    async def __aenter__(self) -> "CacheSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close(wait=exc_type is None)

    async def close(self, wait: bool = True) -> None:
        """Waits for pending work (unless told not to) and frees resources."""
        try:
            if wait:
                await self.manager.wait_idle()
        finally:
            close = getattr(self.fetcher, "close", None)
            if close is not None:
                await close()
            self.metadata_store.close()
            log.debug("Cache session closed.")
