"""
Async client for the page REST API: fetches resource manifests for an article
and downloads individual resources into temporary files.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles
import aiohttp

from article_cache.exceptions import FetchFailure
from article_cache.models.config import DEFAULT_USER_AGENT
from article_cache.utils.keys import EndpointType, rest_endpoint_url

log = logging.getLogger(__name__)

CHUNK_SIZE = 131072  # 128 KB


@dataclass(frozen=True)
class FetchedResource:
    """A downloaded resource waiting in a temporary file to be stored."""

    temp_path: Path
    content_type: str
    size: int


def _absolute_url(url: str) -> str:
    return f"https:{url}" if url.startswith("//") else url


def parse_offline_resources(payload: Any) -> list[str]:
    """Extracts resource URLs from a mobile-html-offline-resources response."""
    if not isinstance(payload, list):
        raise ValueError("Offline resources response is not a list.")
    return [_absolute_url(url) for url in payload if isinstance(url, str) and url]


def parse_media_list(payload: Any) -> list[str]:
    """
    Extracts image URLs from a media-list response.

    Each item contributes every entry of its srcset plus its original source,
    when present.
    """
    if not isinstance(payload, dict):
        raise ValueError("Media list response is not an object.")
    urls: list[str] = []
    for item in payload.get("items", []):
        for source in item.get("srcset", []):
            if src := source.get("src"):
                urls.append(_absolute_url(src))
        if original := item.get("original", {}).get("source"):
            urls.append(_absolute_url(original))
    return list(dict.fromkeys(urls))


MANIFEST_PARSERS = {
    EndpointType.MOBILE_HTML_OFFLINE_RESOURCES: parse_offline_resources,
    EndpointType.MEDIA_LIST: parse_media_list,
}


class ArticleFetcher:
    """
    Async fetch service for article manifests and resources.

    Features:
    - Connection pooling tuned to the number of concurrent downloads
    - Streaming downloads written straight to disk
    - Optional retries with exponential backoff (off by default)
    """

    def __init__(
        self,
        temp_dir: Path,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 60.0,
        max_workers: int = 8,
        max_attempts: int = 1,
        base_delay: float = 1.5,
    ):
        """
        Initializes the fetcher.

        Args:
            temp_dir: Directory that receives downloads before they are stored.
            user_agent: User-Agent header sent with every request.
            timeout: Total timeout in seconds for a single request.
            max_workers: The number of concurrent workers, used to size the pool.
            max_attempts: Attempts per request before giving up.
            base_delay: Initial backoff delay between attempts, in seconds.
        """
        self.temp_dir = temp_dir
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def _initialize_session(self) -> aiohttp.ClientSession:
        """Ensures an active aiohttp session is available."""
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit=self.max_workers * 2,
                    limit_per_host=self.max_workers,
                    ttl_dns_cache=300,
                    enable_cleanup_closed=True,
                )
                self._session = aiohttp.ClientSession(
                    connector=connector,
                    headers={
                        "User-Agent": self.user_agent,
                        "Accept-Encoding": "gzip, deflate, br",
                    },
                    timeout=aiohttp.ClientTimeout(
                        total=self.timeout, sock_connect=15
                    ),
                )
                log.debug(f"Created fetch session with limit_per_host={self.max_workers}")
            return self._session

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            log.debug("Fetch session closed.")

    async def _with_retries(self, description: str, operation):
        last_exception: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                log.debug(
                    f"{description} attempt {attempt}/{self.max_attempts} failed: {e}"
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
        raise FetchFailure(f"{description} failed: {last_exception}") from last_exception

    async def fetch_manifest(
        self, site_url: str, title: str, endpoint_type: EndpointType
    ) -> list[str]:
        """
        Fetches the list of resource URLs an article depends on.

        Args:
            site_url: Scheme and host of the wiki, e.g. 'https://en.wikipedia.org'.
            title: The page title as it appears in article URLs.
            endpoint_type: Which manifest to fetch.

        Returns:
            Absolute resource URLs, in manifest order.

        Raises:
            FetchFailure: On network errors or an unreadable manifest.
        """
        parser = MANIFEST_PARSERS.get(endpoint_type)
        if parser is None:
            raise FetchFailure(f"Endpoint '{endpoint_type.value}' has no manifest.")

        url = rest_endpoint_url(site_url, endpoint_type, title)
        session = await self._initialize_session()

        async def _get_json() -> Any:
            start_time = time.monotonic()
            async with session.get(url) as r:
                r.raise_for_status()
                payload = await r.json(content_type=None)
                duration_ms = (time.monotonic() - start_time) * 1000
                log.debug(f"Fetched manifest {url} in {duration_ms:.0f} ms")
                return payload

        payload = await self._with_retries(f"Manifest fetch for '{title}'", _get_json)
        try:
            return parser(payload)
        except (ValueError, AttributeError, TypeError) as e:
            raise FetchFailure(f"Unreadable manifest from {url}: {e}") from e

    async def fetch_resource(self, url: str) -> FetchedResource:
        """
        Downloads a resource into a temporary file.

        The caller owns the returned temp file and is expected to move it into
        the content store or delete it.

        Raises:
            FetchFailure: On network errors or a local write failure.
        """
        session = await self._initialize_session()
        temp_path = self.temp_dir / f"{uuid.uuid4().hex}.tmp"

        async def _download() -> FetchedResource:
            async with session.get(url, allow_redirects=True) as response:
                response.raise_for_status()
                content_type = response.headers.get(
                    "Content-Type", "application/octet-stream"
                )
                size = 0
                async with aiofiles.open(temp_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        await f.write(chunk)
                        size += len(chunk)
                return FetchedResource(
                    temp_path=temp_path, content_type=content_type, size=size
                )

        try:
            return await self._with_retries(f"Download of '{url}'", _download)
        except (OSError, FetchFailure) as e:
            if temp_path.exists():
                try:
                    os.remove(temp_path)
                except OSError:
                    log.debug(f"Could not remove partial download '{temp_path.name}'")
            if isinstance(e, FetchFailure):
                raise
            raise FetchFailure(f"Could not write download of '{url}': {e}") from e
