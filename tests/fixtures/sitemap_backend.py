"""In-memory sitemap backend for end-to-end tests.

Served through ``httpx.MockTransport`` so the store, the persistence
manager and the real HTTP client run together without a network.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Callable
from typing import Any

import httpx

API_URL = "http://cms.test/api"

Responder = Callable[[httpx.Request], httpx.Response]


class RejectedOperation(Exception):
    """A save operation the backend refuses, tagged with its constraint code."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def connect_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def server_error(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, json={"error": "Failed to save sitemap changes"})


def transaction_conflict(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        409, json={"error": "Transaction conflict - please retry", "retryable": True}
    )


def stale_reference(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        404, json={"error": "Node not found - it may have been deleted", "code": "P2025"}
    )


def rejected_batch(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        400, json={"success": False, "error": "Invalid batch", "retryable": False}
    )


class FakeSitemapServer:
    """In-memory sitemap backend with the constraints of the real one.

    Saves are atomic: a rejected operation leaves every row untouched.
    Deleting a node that still has children and referencing a node that
    does not exist (yet) are both rejected, so batch ordering matters.
    """

    def __init__(self, target_id: str, tree: dict[str, Any]) -> None:
        self.target_id = target_id
        self.rows: dict[str, dict[str, Any]] = {}
        self.save_requests: list[list[dict[str, Any]]] = []
        self.requests: list[str] = []
        self._failures: list[Responder] = []
        self._add_tree(tree, None)

    def _add_tree(self, entry: dict[str, Any], parent_id: str | None) -> None:
        self.insert(
            entry["id"],
            entry["slug"],
            parent_id,
            title=entry.get("title"),
            content_item_id=entry.get("contentItemId"),
        )
        for child in entry.get("children", []):
            self._add_tree(child, entry["id"])

    def insert(
        self,
        node_id: str,
        slug: str,
        parent_id: str | None,
        *,
        title: str | None = None,
        content_item_id: str | None = None,
    ) -> None:
        """Add a row directly, as another editor would."""
        self.rows[node_id] = {
            "id": node_id,
            "slug": slug,
            "title": title,
            "parentId": parent_id,
            "contentItemId": content_item_id,
            "components": [],
            "metadata": {},
        }

    def fail_with(self, *responders: Responder) -> None:
        """Answer the next requests with *responders*, one each."""
        self._failures.extend(responders)

    def paths(self) -> dict[str, str]:
        """Full path of every row, keyed by node ID."""

        def path(node_id: str) -> str:
            row = self.rows[node_id]
            parent = row["parentId"]
            return f"{path(parent)}/{row['slug']}" if parent else row["slug"]

        return {node_id: path(node_id) for node_id in self.rows}

    # -- HTTP --------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(f"{request.method} {request.url.path}")
        if self._failures:
            return self._failures.pop(0)(request)

        path = request.url.path
        if request.method == "GET" and path == f"/api/sitemap/{self.target_id}":
            return httpx.Response(200, json={"tree": self._tree()})
        if request.method == "GET" and path.startswith("/api/sitemap/"):
            return httpx.Response(
                404, json={"error": "Sitemap not found", "code": "NODE_NOT_FOUND"}
            )
        if request.method == "POST" and path == "/api/save":
            return self._save(json.loads(request.content))
        return httpx.Response(404, json={"error": f"No route for {request.method} {path}"})

    def _save(self, payload: dict[str, Any]) -> httpx.Response:
        if payload.get("targetId") != self.target_id:
            return httpx.Response(404, json={"error": "Unknown target", "code": "P2025"})

        operations: list[dict[str, Any]] = payload["operations"]
        self.save_requests.append(operations)
        rows = copy.deepcopy(self.rows)
        try:
            for op in operations:
                self._apply(rows, op)
        except RejectedOperation as e:
            return httpx.Response(
                e.status_code,
                json={"error": str(e), "code": e.code},
            )

        self.rows = rows
        results = [
            {"operationType": op["type"], "nodeId": op["nodeId"], "success": True}
            for op in operations
        ]
        return httpx.Response(200, json={"success": True, "results": results})

    def _apply(self, rows: dict[str, dict[str, Any]], op: dict[str, Any]) -> None:
        node_id = op["nodeId"]
        kind = op["type"]

        if kind == "CREATE":
            data = op["data"]
            if node_id in rows:
                raise RejectedOperation(409, "P2002", f"Node {node_id} already exists")
            self._require_parent(rows, data.get("parentId"))
            self._require_free_slug(rows, data["slug"], data.get("parentId"), node_id)
            rows[node_id] = {
                "id": node_id,
                "slug": data["slug"],
                "title": data.get("title"),
                "parentId": data.get("parentId"),
                "contentItemId": (
                    f"content-{node_id}" if data.get("contentTypeCategory") == "page" else None
                ),
                "components": data.get("components", []),
                "metadata": data.get("metadata", {}),
            }
            return

        if node_id not in rows:
            raise RejectedOperation(404, "P2025", f"Node {node_id} not found")
        row = rows[node_id]

        if kind == "DELETE":
            if any(r["parentId"] == node_id for r in rows.values()):
                raise RejectedOperation(400, "P2003", f"Node {node_id} has children")
            del rows[node_id]
        elif kind == "MOVE":
            parent_id = op.get("newParentId")
            self._require_parent(rows, parent_id)
            self._require_free_slug(rows, row["slug"], parent_id, node_id)
            row["parentId"] = parent_id
        elif kind == "UPDATE":
            data = op["data"]
            if "slug" in data:
                self._require_free_slug(rows, data["slug"], row["parentId"], node_id)
                row["slug"] = data["slug"]
            for key in ("title", "components", "metadata"):
                if key in data:
                    row[key] = data[key]

    @staticmethod
    def _require_parent(rows: dict[str, dict[str, Any]], parent_id: str | None) -> None:
        if parent_id is not None and parent_id not in rows:
            raise RejectedOperation(404, "P2025", f"Parent {parent_id} not found")

    @staticmethod
    def _require_free_slug(
        rows: dict[str, dict[str, Any]], slug: str, parent_id: str | None, node_id: str
    ) -> None:
        for other in rows.values():
            if (
                other["id"] != node_id
                and other["parentId"] == parent_id
                and other["slug"].lower() == slug.lower()
            ):
                raise RejectedOperation(409, "P2002", f'Slug "{slug}" is already taken')

    def _tree(self) -> list[dict[str, Any]]:
        def build(row: dict[str, Any]) -> dict[str, Any]:
            children = [r for r in self.rows.values() if r["parentId"] == row["id"]]
            return {**row, "children": [build(c) for c in children]}

        return [build(r) for r in self.rows.values() if r["parentId"] is None]
