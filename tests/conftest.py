"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from sitesync.graph.models import GraphState, SaveResponse
from sitesync.graph.transform import to_graph


class FakeClock:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def clean_sitesync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep SITESYNC_* variables from the host out of the tests."""
    for var in (
        "SITESYNC_API_URL",
        "SITESYNC_DEBOUNCE_SECONDS",
        "SITESYNC_MAX_RETRIES",
        "SITESYNC_HISTORY_LIMIT",
        "SITESYNC_REQUEST_TIMEOUT",
        "SITESYNC_CONFIG",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_tree() -> dict[str, Any]:
    """home -> [about -> [team], contact]."""
    return {
        "id": "home",
        "slug": "home",
        "title": "Home",
        "contentItemId": "content-home",
        "children": [
            {
                "id": "about",
                "slug": "about",
                "title": "About",
                "children": [
                    {"id": "team", "slug": "team", "title": "Team", "contentItemId": "content-team"},
                ],
            },
            {"id": "contact", "slug": "contact", "title": "Contact"},
        ],
    }


@pytest.fixture
def sample_graph(sample_tree: dict[str, Any]) -> GraphState:
    return to_graph(sample_tree)


@pytest.fixture
def backend() -> AsyncMock:
    """Backend whose saves succeed unless told otherwise."""
    mock = AsyncMock()
    mock.save.return_value = SaveResponse(success=True)
    return mock
