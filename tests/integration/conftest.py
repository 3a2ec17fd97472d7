"""Integration test configuration and fixtures."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from sitesync.persistence.client import SitemapApiClient
from tests.fixtures.sitemap_backend import API_URL, FakeSitemapServer


@pytest.fixture
def sitemap_server(sample_tree: dict[str, Any]) -> FakeSitemapServer:
    """Backend seeded with the sample tree under target ``site-1``."""
    return FakeSitemapServer("site-1", sample_tree)


@pytest.fixture
def api_client(sitemap_server: FakeSitemapServer) -> SitemapApiClient:
    """Real client wired to the in-memory backend."""
    return SitemapApiClient(API_URL, transport=httpx.MockTransport(sitemap_server.handle))
