"""HTTP access to the sitemap backend.

Two endpoints are consumed:

    POST /save                  {targetId, operations} -> {success, results?, error?}
    GET  /sitemap/{target_id}   -> {nodes, edges} or a raw tree

Transport failures become ``NetworkError``; non-2xx responses and
``success: false`` bodies are rebuilt into typed errors from the error wire
format.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from sitesync.config import DEFAULT_API_URL, DEFAULT_REQUEST_TIMEOUT
from sitesync.graph.errors import NetworkError, SaveError, error_from_wire
from sitesync.graph.models import GraphState, SaveRequest, SaveResponse
from sitesync.graph.transform import derive_fields, to_graph
from sitesync.observability.logging import get_logger

if TYPE_CHECKING:
    from sitesync.config import SyncConfig
    from sitesync.graph.models import Operation

log = get_logger(__name__)


@runtime_checkable
class SaveBackend(Protocol):
    """What the persistence layer needs from a backend."""

    async def save(self, target_id: str, operations: Sequence[Operation]) -> SaveResponse:
        """Persist one batch; raise a SitemapError on failure."""
        ...

    async def load(self, target_id: str) -> GraphState:
        """Fetch the current sitemap of *target_id* as a graph."""
        ...


class SitemapApiClient:
    """Async client for the sitemap REST API.

    Args:
        base_url: API root; endpoints are resolved relative to it.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> SitemapApiClient:
        return cls(config.api_url, config.request_timeout, transport=transport)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> SitemapApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def save(self, target_id: str, operations: Sequence[Operation]) -> SaveResponse:
        """Send one batch of operations.

        Returns:
            The parsed success response.

        Raises:
            NetworkError: If the backend is unreachable or times out.
            SitemapError: The typed error for a failure response.
        """
        request = SaveRequest(target_id=target_id, operations=list(operations))
        response = await self._request("POST", "/save", json=request.to_wire())
        body = self._json_body(response)

        if response.is_error or not body.get("success", False):
            error = error_from_wire(body, response.status_code if response.is_error else None)
            log.warning(
                "save_rejected",
                target_id=target_id,
                status_code=response.status_code,
                code=str(error.code),
                error=error.message,
            )
            raise error

        try:
            return SaveResponse.model_validate(body)
        except ValidationError as e:
            raise SaveError(detail=f"Malformed save response: {e.error_count()} error(s)") from e

    async def load(self, target_id: str) -> GraphState:
        """Fetch a sitemap and return it as a graph.

        Graph-shaped bodies (``nodes``/``edges``) are used as-is apart from
        recomputing derived fields; anything else is treated as a tree.

        Raises:
            NetworkError: If the backend is unreachable or times out.
            SitemapError: The typed error for a failure response.
        """
        response = await self._request("GET", f"/sitemap/{target_id}")
        body = self._json_body(response)
        if response.is_error:
            raise error_from_wire(body, response.status_code)
        if set(body) == {"error"}:
            raise SaveError(detail=str(body["error"]))

        if "nodes" in body and "edges" in body:
            try:
                state = GraphState.model_validate({"nodes": body["nodes"], "edges": body["edges"]})
            except ValidationError as e:
                raise SaveError(detail=f"Malformed sitemap response: {e.error_count()} error(s)") from e
            state = GraphState(nodes=derive_fields(state.nodes, state.edges), edges=state.edges)
        else:
            tree = body.get("tree", body.get("data", body))
            state = to_graph(tree)

        log.info("sitemap_loaded", target_id=target_id, nodes=len(state.nodes), edges=len(state.edges))
        return state

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            log.error("api_timeout", base_url=self._base_url, url=url, timeout=self._timeout)
            raise NetworkError(detail=f"Request to {url} timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            log.error("api_connect_error", base_url=self._base_url, url=url, error=str(e))
            raise NetworkError(detail=f"Cannot reach sitemap API at {self._base_url}: {e}") from e

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        """Decoded JSON object body; non-JSON bodies become an error payload."""
        try:
            body = response.json()
        except ValueError:
            return {"error": response.text[:200] or f"HTTP {response.status_code}"}
        if isinstance(body, dict):
            return body
        if isinstance(body, list):
            return {"tree": body}
        return {"error": f"Unexpected response body of type {type(body).__name__}"}
