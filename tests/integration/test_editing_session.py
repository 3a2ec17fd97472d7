"""End-to-end editing sessions against the in-memory sitemap backend."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from sitesync.config import SyncConfig
from sitesync.graph.errors import ErrorCode, NodeNotFoundError
from sitesync.graph.models import SaveStatus
from sitesync.store import SitemapStore
from tests.fixtures.sitemap_backend import (
    connect_error,
    rejected_batch,
    server_error,
    stale_reference,
    transaction_conflict,
)

if TYPE_CHECKING:
    from sitesync.persistence.client import SitemapApiClient
    from tests.conftest import FakeClock
    from tests.fixtures.sitemap_backend import FakeSitemapServer

pytestmark = pytest.mark.integration


def _local_paths(store: SitemapStore) -> dict[str, str]:
    return {n.id: n.data.full_path for n in store.nodes}


async def _open(
    api_client: SitemapApiClient, clock: FakeClock, config: SyncConfig | None = None
) -> SitemapStore:
    store = SitemapStore(api_client, config, sleep=clock.sleep)
    await store.load("site-1")
    return store


@pytest.mark.asyncio()
async def test_edits_reach_backend(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    """Local graph and persisted tree agree after a mixed editing session."""
    store = await _open(api_client, clock)

    store.add_node("home", "Products", node_id="products")
    store.add_node("products", "Widgets", node_id="widgets")
    store.update_node("about", label="About us", slug="about-us")
    store.move_node("contact", "products")
    store.delete_nodes(["team"])
    await store.wait_until_saved()

    assert store.save_status == SaveStatus.IDLE
    assert not store.has_unsaved_changes
    assert sitemap_server.paths() == _local_paths(store)
    assert sitemap_server.rows["about"]["title"] == "About us"

    reloaded = await api_client.load("site-1")
    assert {n.id: n.data.full_path for n in reloaded.nodes} == _local_paths(store)
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_subtree_delete_is_accepted(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    """Children are deleted before their parent within one batch."""
    store = await _open(api_client, clock)

    store.delete_nodes(["about"])
    await store.wait_until_saved()

    assert store.error_state is None
    assert set(sitemap_server.rows) == {"home", "contact"}
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_undo_redo_round_trip(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    store = await _open(api_client, clock)

    store.add_node("home", "Blog", node_id="blog")
    await store.wait_until_saved()
    assert "blog" in sitemap_server.rows

    store.undo()
    await store.wait_until_saved()
    assert "blog" not in sitemap_server.rows

    store.redo()
    await store.wait_until_saved()
    assert sitemap_server.paths()["blog"] == "home/blog"
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_large_session_is_split_into_batches(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    store = await _open(api_client, clock, SyncConfig(max_batch_size=2))

    for i in range(5):
        store.add_node("home", f"Page {i}", node_id=f"page-{i}")
    await store.wait_until_saved()

    assert [len(ops) for ops in sitemap_server.save_requests] == [2, 2, 1]
    assert sitemap_server.paths() == _local_paths(store)
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_recovers_from_transient_outage(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    """Two failed attempts are retried with backoff, then the save lands."""
    store = await _open(api_client, clock)
    sitemap_server.fail_with(connect_error, server_error)

    store.add_node("home", "Blog", node_id="blog")
    await store.wait_until_saved()

    assert clock.delays[:3] == [1.0, 2.0, 4.0]
    assert store.save_status == SaveStatus.IDLE
    assert store.error_state is None
    assert "blog" in sitemap_server.rows
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_manual_retry_after_outage(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    store = await _open(api_client, clock)
    sitemap_server.fail_with(*[connect_error] * 4)

    store.add_node("home", "Blog", node_id="blog")
    await store.wait_until_saved()

    error = store.error_state
    assert store.save_status == SaveStatus.ERROR
    assert error is not None
    assert error.code == ErrorCode.NETWORK_ERROR
    assert error.retry is not None
    assert "blog" not in sitemap_server.rows

    # Edits made while offline join the queue
    store.update_node("about", label="About us")
    await error.retry()
    await store.wait_until_saved()

    assert store.save_status == SaveStatus.IDLE
    assert "blog" in sitemap_server.rows
    assert sitemap_server.rows["about"]["title"] == "About us"
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_backend_conflict_is_not_retried(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    """A slug taken by another editor surfaces as a non-retryable error."""
    store = await _open(api_client, clock)
    sitemap_server.insert("their-news", "news", "home", title="News")

    store.add_node("home", "News", node_id="news")
    await store.wait_until_saved()

    error = store.error_state
    assert error is not None
    assert error.code == ErrorCode.DUPLICATE_SLUG
    assert error.retry is None
    assert len(sitemap_server.save_requests) == 1

    discarded = store.discard_pending()
    assert [op.node_id for op in discarded] == ["news"]
    assert store.save_status == SaveStatus.IDLE
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_stale_reference_is_not_retried(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    """A missing-record answer surfaces at once instead of backing off."""
    store = await _open(api_client, clock)
    sitemap_server.fail_with(stale_reference)

    store.update_node("about", label="About us")
    await store.wait_until_saved()

    error = store.error_state
    assert error is not None
    assert error.code == ErrorCode.NODE_NOT_FOUND
    assert error.retry is None
    assert error.detail == "Node not found - it may have been deleted"
    assert len(store.pending_operations) == 1
    assert sitemap_server.requests.count("POST /api/save") == 1
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_batch_marked_non_retryable_is_not_retried(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    store = await _open(api_client, clock)
    sitemap_server.fail_with(rejected_batch)

    store.add_node("home", "Blog", node_id="blog")
    await store.wait_until_saved()

    error = store.error_state
    assert error is not None
    assert error.code == ErrorCode.SAVE_ERROR
    assert error.retry is None
    assert store.save_status == SaveStatus.ERROR
    assert "blog" not in sitemap_server.rows
    assert sitemap_server.requests.count("POST /api/save") == 1
    await api_client.aclose()


@pytest.mark.asyncio()
async def test_transaction_conflict_waits_for_manual_retry(
    api_client: SitemapApiClient, sitemap_server: FakeSitemapServer, clock: FakeClock
) -> None:
    store = await _open(api_client, clock)
    sitemap_server.fail_with(transaction_conflict)

    store.add_node("home", "Blog", node_id="blog")
    await store.wait_until_saved()

    error = store.error_state
    assert error is not None
    assert error.code == ErrorCode.TRANSACTION_CONFLICT
    assert error.message == "Another user is making changes. Please retry."
    assert error.retry is not None
    assert "blog" not in sitemap_server.rows

    await error.retry()
    await store.wait_until_saved()

    assert store.save_status == SaveStatus.IDLE
    assert "blog" in sitemap_server.rows
    await api_client.aclose()

@pytest.mark.asyncio()
async def test_load_unknown_target(api_client: SitemapApiClient, clock: FakeClock) -> None:
    store = SitemapStore(api_client, sleep=clock.sleep)

    with pytest.raises(NodeNotFoundError, match="Sitemap not found"):
        await store.load("other-site")

    assert store.target_id is None
    await api_client.aclose()
