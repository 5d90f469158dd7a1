"""Shared fixtures: a configuration rooted in tmp_path and a fake fetch service."""

import pytest
import pytest_asyncio
from fakes import FakeFetcher

from article_cache.core.session import CacheSession
from article_cache.models.config import CacheConfig


@pytest.fixture
def config(tmp_path):
    """Create a configuration with cache and legacy directories under tmp_path."""
    return CacheConfig(
        cache_dir=str(tmp_path / "cache"),
        legacy_dir=str(tmp_path / "legacy"),
        max_workers=4,
        config_path=str(tmp_path),
    )


@pytest.fixture
def fetcher(config):
    return FakeFetcher(config.cache_path / "tmp")


@pytest_asyncio.fixture
async def session(config, fetcher):
    """A fully wired cache session backed by the fake fetcher."""
    session = CacheSession(config, fetcher=fetcher)
    yield session
    await session.close()
