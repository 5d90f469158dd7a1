"""Tests for the page REST API client, against a local aiohttp server."""

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from article_cache.api.client import (
    ArticleFetcher,
    parse_media_list,
    parse_offline_resources,
)
from article_cache.exceptions import FetchFailure
from article_cache.utils.keys import EndpointType

OFFLINE_RESOURCES = [
    "//en.wikipedia.org/api/rest_v1/data/css/mobile/site",
    "https://meta.wikimedia.org/api/rest_v1/data/javascript/mobile/pcs",
]

MEDIA_LIST = {
    "items": [
        {
            "title": "File:Dog.jpg",
            "srcset": [
                {"src": "//upload.wikimedia.org/dog-320.jpg", "scale": "1x"},
                {"src": "//upload.wikimedia.org/dog-640.jpg", "scale": "2x"},
            ],
            "original": {"source": "https://upload.wikimedia.org/dog.jpg"},
        },
        {"title": "File:Map.svg", "srcset": [{"src": "//upload.wikimedia.org/dog-320.jpg"}]},
    ]
}


class TestManifestParsers:
    def test_offline_resources_made_absolute(self):
        assert parse_offline_resources(OFFLINE_RESOURCES) == [
            "https://en.wikipedia.org/api/rest_v1/data/css/mobile/site",
            "https://meta.wikimedia.org/api/rest_v1/data/javascript/mobile/pcs",
        ]

    def test_offline_resources_rejects_objects(self):
        with pytest.raises(ValueError):
            parse_offline_resources({"items": []})

    def test_media_list_collects_sources_once(self):
        assert parse_media_list(MEDIA_LIST) == [
            "https://upload.wikimedia.org/dog-320.jpg",
            "https://upload.wikimedia.org/dog-640.jpg",
            "https://upload.wikimedia.org/dog.jpg",
        ]

    def test_media_list_without_items(self):
        assert parse_media_list({}) == []


@pytest_asyncio.fixture
async def server():
    """Serve fake manifests and resources on localhost."""

    async def offline_resources(request):
        if request.match_info["title"] == "Broken":
            return web.json_response({"unexpected": True})
        return web.json_response(OFFLINE_RESOURCES)

    async def media_list(request):
        return web.json_response(MEDIA_LIST)

    async def page(request):
        return web.Response(body=b"<html>dog</html>", content_type="text/html")

    async def failure(request):
        return web.Response(status=503)

    app = web.Application()
    app.router.add_get(
        "/api/rest_v1/page/mobile-html-offline-resources/{title}", offline_resources
    )
    app.router.add_get("/api/rest_v1/page/media-list/{title}", media_list)
    app.router.add_get("/api/rest_v1/page/mobile-html/{title}", page)
    app.router.add_get("/unavailable", failure)

    server = test_utils.TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def fetcher(tmp_path):
    fetcher = ArticleFetcher(temp_dir=tmp_path, timeout=10, max_workers=2)
    yield fetcher
    await fetcher.close()


def _site(server) -> str:
    return str(server.make_url("/")).rstrip("/")


class TestArticleFetcher:
    @pytest.mark.asyncio
    async def test_fetch_offline_resources_manifest(self, server, fetcher):
        urls = await fetcher.fetch_manifest(
            _site(server), "Dog", EndpointType.MOBILE_HTML_OFFLINE_RESOURCES
        )

        assert urls[0] == "https://en.wikipedia.org/api/rest_v1/data/css/mobile/site"
        assert len(urls) == 2

    @pytest.mark.asyncio
    async def test_fetch_media_list_manifest(self, server, fetcher):
        urls = await fetcher.fetch_manifest(_site(server), "Dog", EndpointType.MEDIA_LIST)

        assert "https://upload.wikimedia.org/dog.jpg" in urls

    @pytest.mark.asyncio
    async def test_unreadable_manifest_is_a_fetch_failure(self, server, fetcher):
        with pytest.raises(FetchFailure):
            await fetcher.fetch_manifest(
                _site(server), "Broken", EndpointType.MOBILE_HTML_OFFLINE_RESOURCES
            )

    @pytest.mark.asyncio
    async def test_endpoint_without_manifest(self, fetcher):
        with pytest.raises(FetchFailure):
            await fetcher.fetch_manifest(
                "https://en.wikipedia.org", "Dog", EndpointType.MOBILE_HTML
            )

    @pytest.mark.asyncio
    async def test_fetch_resource_streams_to_temp_file(self, server, fetcher, tmp_path):
        resource = await fetcher.fetch_resource(
            f"{_site(server)}/api/rest_v1/page/mobile-html/Dog"
        )

        assert resource.temp_path.parent == tmp_path
        assert resource.temp_path.read_bytes() == b"<html>dog</html>"
        assert resource.size == len(b"<html>dog</html>")
        assert resource.content_type.startswith("text/html")

    @pytest.mark.asyncio
    async def test_http_error_leaves_no_temp_file(self, server, fetcher, tmp_path):
        with pytest.raises(FetchFailure):
            await fetcher.fetch_resource(f"{_site(server)}/unavailable")

        assert list(tmp_path.glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_retries_when_configured(self, server, tmp_path):
        fetcher = ArticleFetcher(
            temp_dir=tmp_path, timeout=10, max_attempts=2, base_delay=0
        )
        try:
            with pytest.raises(FetchFailure, match="failed"):
                await fetcher.fetch_resource(f"{_site(server)}/unavailable")
        finally:
            await fetcher.close()
