"""Tests for the download coordinator: downloads, deletes and their races."""

import asyncio

import pytest

from article_cache.exceptions import FetchFailure
from article_cache.utils.keys import EndpointType, mobile_html_url

ARTICLE = "https://en.wikipedia.org/wiki/Dog"
RESOURCE = "https://en.wikipedia.org/api/rest_v1/data/css/mobile/site"


async def _wait_for_fetch(fetcher, count: int = 1):
    while len(fetcher.fetched_urls) < count:
        await asyncio.sleep(0)


class TestResolveItemKeys:
    @pytest.mark.asyncio
    async def test_primary_document_is_keyed_by_article(self, session):
        keys = await session.coordinator.resolve_item_keys(
            "http://en.wikipedia.org/wiki/Dog#top", EndpointType.MOBILE_HTML
        )
        assert keys == [ARTICLE]

    @pytest.mark.asyncio
    async def test_manifest_urls_become_unique_keys(self, session, fetcher):
        fetcher.manifests[("Dog", EndpointType.MOBILE_HTML_OFFLINE_RESOURCES)] = [
            "//en.wikipedia.org/api/rest_v1/data/css/mobile/site",
            RESOURCE,
        ]

        keys = await session.coordinator.resolve_item_keys(
            ARTICLE, EndpointType.MOBILE_HTML_OFFLINE_RESOURCES
        )

        assert keys == [RESOURCE]
        assert session.stats.manifests_fetched == 1

    @pytest.mark.asyncio
    async def test_manifest_failure_is_counted_and_raised(self, session, fetcher):
        fetcher.failing_manifests.add("Dog")

        with pytest.raises(FetchFailure):
            await session.coordinator.resolve_item_keys(
                ARTICLE, EndpointType.MOBILE_HTML_OFFLINE_RESOURCES
            )
        assert session.stats.manifests_failed == 1


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_stores_payload_and_notifies(self, session, fetcher):
        changes = []
        session.notifier.add_observer(changes.append)
        fetcher.payloads[mobile_html_url(ARTICLE)] = b"<html>dog</html>"
        item = await session.metadata_store.cache_item_in_group(ARTICLE, ARTICLE)

        assert await session.coordinator.download(item) is True

        assert fetcher.fetched_urls == [mobile_html_url(ARTICLE)]
        assert (await session.content_store.read(ARTICLE)).data == b"<html>dog</html>"
        assert (await session.metadata_store.item(ARTICLE)).is_downloaded
        assert [(c.item_key, c.is_downloaded) for c in changes] == [(ARTICLE, True)]
        assert session.stats.items_downloaded == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_leaves_item_undownloaded(self, session, fetcher):
        fetcher.failing_urls.add(RESOURCE)
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)

        assert await session.coordinator.download(item) is False

        assert not (await session.metadata_store.item(RESOURCE)).is_downloaded
        assert not await session.content_store.exists(RESOURCE)
        assert session.stats.items_failed == 1

    @pytest.mark.asyncio
    async def test_concurrent_downloads_of_one_key_fetch_once(self, session, fetcher):
        fetcher.gate = asyncio.Event()
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)

        first = asyncio.create_task(session.coordinator.download(item))
        second = asyncio.create_task(session.coordinator.download(item))
        await _wait_for_fetch(fetcher)
        fetcher.gate.set()

        assert await asyncio.gather(first, second) == [True, True]
        assert fetcher.fetched_urls == [RESOURCE]

    @pytest.mark.asyncio
    async def test_downloaded_item_is_not_fetched_again(self, session, fetcher):
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)
        await session.coordinator.download(item)

        item = await session.metadata_store.item(RESOURCE)
        assert await session.coordinator.download(item) is True
        assert fetcher.fetched_urls == [RESOURCE]

    @pytest.mark.asyncio
    async def test_migration_items_never_reach_the_network(self, session, fetcher):
        item = await session.metadata_store.cache_item_in_group(
            ARTICLE, ARTICLE, from_migration=True
        )

        assert await session.coordinator.download(item) is False

        assert fetcher.fetched_urls == []
        stored = await session.metadata_store.item(ARTICLE)
        assert stored.from_migration is True
        assert stored.is_downloaded is False

    @pytest.mark.asyncio
    async def test_payload_discarded_when_deleted_mid_download(self, session, fetcher):
        changes = []
        session.notifier.add_observer(changes.append)
        fetcher.gate = asyncio.Event()
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)

        task = asyncio.create_task(session.coordinator.download(item))
        await _wait_for_fetch(fetcher)
        await session.metadata_store.mark_pending_delete(RESOURCE)
        fetcher.gate.set()

        assert await task is False
        assert not await session.content_store.exists(RESOURCE)
        assert not (await session.metadata_store.item(RESOURCE)).is_downloaded
        assert session.stats.items_discarded == 1
        assert changes == []


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_payload_record_and_empty_group(self, session):
        changes = []
        session.notifier.add_observer(changes.append)
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)
        await session.coordinator.download(item)
        item = await session.metadata_store.mark_pending_delete(RESOURCE)

        assert await session.coordinator.delete(item) is True

        assert not await session.content_store.exists(RESOURCE)
        assert await session.metadata_store.item(RESOURCE) is None
        assert await session.metadata_store.group(ARTICLE) is None
        assert [(c.item_key, c.is_downloaded) for c in changes] == [
            (RESOURCE, True),
            (RESOURCE, False),
        ]

    @pytest.mark.asyncio
    async def test_delete_without_payload_succeeds(self, session):
        await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)
        item = await session.metadata_store.mark_pending_delete(RESOURCE)

        assert await session.coordinator.delete(item) is True
        assert await session.metadata_store.item(RESOURCE) is None

    @pytest.mark.asyncio
    async def test_item_claimed_after_release_is_kept(self, session):
        other = "https://en.wikipedia.org/wiki/Cat"
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)
        await session.coordinator.download(item)
        [released] = await session.metadata_store.release_group(ARTICLE)
        await session.metadata_store.cache_item_in_group(other, RESOURCE)

        assert await session.coordinator.delete(released) is False

        kept = await session.metadata_store.item(RESOURCE)
        assert kept.is_downloaded
        assert not kept.is_pending_delete
        assert kept.group_keys == frozenset({other})
        assert await session.content_store.exists(RESOURCE)

    @pytest.mark.asyncio
    async def test_claim_waits_for_running_delete(self, session, monkeypatch):
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)
        await session.coordinator.download(item)
        [released] = await session.metadata_store.release_group(ARTICLE)
        removing = asyncio.Event()
        resume = asyncio.Event()
        original_remove = session.content_store.remove

        async def slow_remove(key):
            removing.set()
            await resume.wait()
            return await original_remove(key)

        monkeypatch.setattr(session.content_store, "remove", slow_remove)
        delete = asyncio.create_task(session.coordinator.delete(released))
        await removing.wait()
        claim = asyncio.create_task(
            session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)
        )
        await asyncio.sleep(0)
        assert not claim.done()
        resume.set()

        assert await delete is True
        fresh = await claim
        assert fresh.is_downloaded is False
        assert fresh.is_pending_delete is False
        assert fresh.group_keys == frozenset({ARTICLE})

    @pytest.mark.asyncio
    async def test_delete_waits_for_download_started_before_release(
        self, session, fetcher
    ):
        fetcher.gate = asyncio.Event()
        item = await session.metadata_store.cache_item_in_group(ARTICLE, RESOURCE)
        download = asyncio.create_task(session.coordinator.download(item))
        await _wait_for_fetch(fetcher)
        [released] = await session.metadata_store.release_group(ARTICLE)

        delete = asyncio.create_task(session.coordinator.delete(released))
        fetcher.gate.set()

        assert await download is False
        assert await delete is True
        assert await session.metadata_store.item(RESOURCE) is None
        assert not await session.content_store.exists(RESOURCE)
