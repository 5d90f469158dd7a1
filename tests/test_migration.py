"""Tests for ingesting legacy article content."""

import pytest

from article_cache.core.migration import (
    ARTICLE_URL_FILENAME,
    MOBILE_HTML_FILENAME,
    LegacyArticleStore,
)
from article_cache.exceptions import MigrationDataMissing, StoreIOFailure

ARTICLE = "https://en.wikipedia.org/wiki/Legacy_Article"
OTHER = "https://en.wikipedia.org/wiki/Other_Article"
LEGACY_KEY = "legacy-doc-1"
LEGACY_HTML = "<html><body>legacy</body></html>"


def _save_legacy_article(session, url: str, html: str | None = LEGACY_HTML):
    folder = session.migration_adapter.legacy_store.folder_for_article(url)
    folder.mkdir(parents=True)
    if html is not None:
        (folder / MOBILE_HTML_FILENAME).write_text(html, encoding="utf-8")
    return folder


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_clears_flag_only_after_write(self, session, monkeypatch):
        seen = {}
        original_write = session.content_store.write_bytes

        async def spying_write(key, data, content_type=None):
            seen["before_write"] = await session.metadata_store.item(key)
            return await original_write(key, data, content_type)

        monkeypatch.setattr(session.content_store, "write_bytes", spying_write)

        item = await session.migration_adapter.ingest(
            LEGACY_KEY, "<html>...</html>", "text/html"
        )

        assert seen["before_write"].from_migration is True
        assert seen["before_write"].is_downloaded is False
        assert item.from_migration is False
        assert item.is_downloaded is True
        payload = await session.content_store.read(LEGACY_KEY)
        assert payload.data == b"<html>...</html>"
        assert payload.content_type == "text/html"

    @pytest.mark.asyncio
    async def test_failed_write_keeps_migration_flag(self, session, monkeypatch):
        async def failing_write(key, data, content_type=None):
            raise StoreIOFailure("disk full")

        monkeypatch.setattr(session.content_store, "write_bytes", failing_write)

        with pytest.raises(StoreIOFailure):
            await session.migration_adapter.ingest(LEGACY_KEY, "<html/>", "text/html")

        item = await session.metadata_store.item(LEGACY_KEY)
        assert item.from_migration is True
        assert item.is_downloaded is False

    @pytest.mark.asyncio
    async def test_content_discarded_when_uncached_during_write(
        self, session, monkeypatch
    ):
        changes = []
        session.notifier.add_observer(changes.append)
        original_write = session.content_store.write_bytes

        async def write_then_release(key, data, content_type=None):
            size = await original_write(key, data, content_type)
            await session.metadata_store.release_group(key)
            return size

        monkeypatch.setattr(session.content_store, "write_bytes", write_then_release)

        item = await session.migration_adapter.ingest(
            LEGACY_KEY, LEGACY_HTML, "text/html"
        )

        assert item is None
        assert not await session.content_store.exists(LEGACY_KEY)
        assert session.stats.items_migrated == 0
        assert session.stats.items_discarded == 1
        assert changes == []

    @pytest.mark.asyncio
    async def test_already_cached_article_is_not_overwritten(self, session):
        await session.manager.set_cached(ARTICLE, True)
        await session.manager.wait_idle()
        before = await session.content_store.read(ARTICLE)

        await session.manager.cache_from_migration(ARTICLE, LEGACY_HTML)

        assert (await session.content_store.read(ARTICLE)).data == before.data
        assert session.stats.items_migrated == 0

    @pytest.mark.asyncio
    async def test_cache_from_migration_notifies(self, session, fetcher):
        changes = []
        session.manager.add_observer(changes.append)

        await session.manager.cache_from_migration(ARTICLE, LEGACY_HTML)

        assert await session.manager.is_cached(ARTICLE)
        assert [(c.item_key, c.is_downloaded) for c in changes] == [(ARTICLE, True)]
        assert fetcher.fetched_urls == []

    @pytest.mark.asyncio
    async def test_cache_from_migration_rejects_invalid_url(self, session):
        with pytest.raises(MigrationDataMissing):
            await session.manager.cache_from_migration("not a url", LEGACY_HTML)


class TestLegacyMigration:
    @pytest.mark.asyncio
    async def test_migrate_article_removes_legacy_folder(self, session, fetcher):
        folder = _save_legacy_article(session, ARTICLE)

        item = await session.migration_adapter.migrate_article(ARTICLE)

        assert item.is_downloaded
        assert not folder.exists()
        assert (await session.content_store.read(ARTICLE)).data == LEGACY_HTML.encode()
        assert fetcher.fetched_urls == []

    @pytest.mark.asyncio
    async def test_registered_article_resumes_from_legacy_store(self, session, fetcher):
        folder = _save_legacy_article(session, ARTICLE)

        await session.manager.register_for_migration(ARTICLE)
        await session.manager.wait_idle()

        assert await session.manager.is_cached(ARTICLE)
        assert not (await session.metadata_store.item(ARTICLE)).from_migration
        assert not folder.exists()
        assert fetcher.fetched_urls == []

    @pytest.mark.asyncio
    async def test_resume_does_not_recache_uncached_article(self, session, fetcher):
        folder = _save_legacy_article(session, ARTICLE)
        item = await session.migration_adapter.register(ARTICLE)
        await session.manager.set_cached(ARTICLE, False)

        assert await session.migration_adapter.resume(item) is False

        assert await session.metadata_store.item(ARTICLE) is None
        assert await session.metadata_store.group(ARTICLE) is None
        assert not await session.content_store.exists(ARTICLE)
        assert folder.exists()
        assert fetcher.fetched_urls == []

    @pytest.mark.asyncio
    async def test_missing_legacy_data_leaves_item_marked(self, session, fetcher):
        await session.manager.register_for_migration(ARTICLE)
        await session.manager.wait_idle()

        item = await session.metadata_store.item(ARTICLE)
        assert item.from_migration is True
        assert item.is_downloaded is False
        assert fetcher.fetched_urls == []

    @pytest.mark.asyncio
    async def test_failed_ingest_keeps_legacy_folder(self, session, monkeypatch):
        folder = _save_legacy_article(session, ARTICLE)

        async def failing_write(key, data, content_type=None):
            raise StoreIOFailure("disk full")

        monkeypatch.setattr(session.content_store, "write_bytes", failing_write)

        with pytest.raises(StoreIOFailure):
            await session.migration_adapter.migrate_article(ARTICLE)
        assert folder.exists()

    @pytest.mark.asyncio
    async def test_migrate_all_continues_past_missing_data(self, session):
        _save_legacy_article(session, ARTICLE)
        _save_legacy_article(session, OTHER, html=None)

        summary = await session.migration_adapter.migrate_all()

        assert summary.migrated == [ARTICLE]
        assert summary.missing == [OTHER]
        assert summary.failed == []
        assert await session.manager.is_cached(ARTICLE)
        assert not await session.manager.is_cached(OTHER)


class TestLegacyArticleStore:
    @pytest.mark.asyncio
    async def test_article_urls_prefer_recorded_url(self, tmp_path):
        store = LegacyArticleStore(tmp_path)
        folder = store.folder_for_article(ARTICLE)
        folder.mkdir(parents=True)
        (folder / ARTICLE_URL_FILENAME).write_text(ARTICLE + "\n", encoding="utf-8")
        store.folder_for_article(OTHER).mkdir(parents=True)

        assert await store.article_urls() == [ARTICLE, OTHER]

    @pytest.mark.asyncio
    async def test_converter_failure_is_missing_data(self, tmp_path):
        async def broken_converter(article_url, folder):
            raise ValueError("unexpected mobileview layout")

        store = LegacyArticleStore(tmp_path, converter=broken_converter)
        folder = store.folder_for_article(ARTICLE)
        folder.mkdir(parents=True)

        with pytest.raises(MigrationDataMissing, match="could not be converted"):
            await store.load(ARTICLE)
        assert folder.exists()

    @pytest.mark.asyncio
    async def test_custom_converter_output_is_used(self, tmp_path):
        async def converter(article_url, folder):
            return f"<html>{article_url}</html>"

        store = LegacyArticleStore(tmp_path, converter=converter)
        store.folder_for_article(ARTICLE).mkdir(parents=True)

        legacy = await store.load(ARTICLE)

        assert legacy.content == f"<html>{ARTICLE}</html>".encode()

    @pytest.mark.asyncio
    async def test_remove_missing_folder_is_quiet(self, tmp_path):
        await LegacyArticleStore(tmp_path).remove(ARTICLE)
