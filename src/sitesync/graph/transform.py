"""Tree↔graph transforms and graph diffing.

``to_graph`` flattens the persisted tree into editor nodes and edges.
``from_graph`` compares two graph states and produces the ordered list of
operations that brings the server from the previous state to the current
one. Both are pure functions.

Batch ordering contract: DELETE, then MOVE, then UPDATE, then CREATE.
Within DELETEs children go before their parents; within CREATEs parents go
before their children.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from sitesync.graph.models import (
    DIFFED_DATA_FIELDS,
    OPERATION_ORDER,
    Classification,
    CreateData,
    CreateOperation,
    DeleteOperation,
    GraphEdge,
    GraphNode,
    GraphState,
    MoveOperation,
    NodeData,
    Operation,
    OperationType,
    TreeNode,
    UpdateDelta,
    UpdateOperation,
)
from sitesync.graph.slugs import generate_slug
from sitesync.observability.logging import get_logger

log = get_logger(__name__)

TreeInput = TreeNode | Mapping[str, Any] | Sequence[TreeNode | Mapping[str, Any]]


# -------------------------------------------------------------------------
# Tree → graph
# -------------------------------------------------------------------------


def to_graph(tree: TreeInput) -> GraphState:
    """Flatten a tree (or a list of independent roots) into a graph.

    Pre-order traversal. A node missing ``id`` or ``slug`` (or failing
    validation, or repeating an ID already seen) is skipped with a warning;
    its children are still visited and become roots. Persisted
    ``full_path`` values are ignored and recomputed from the traversal.

    Args:
        tree: A TreeNode, a decoded tree dict, or a list of either.

    Returns:
        Graph state with derived fields filled in.
    """
    roots: Sequence[Any]
    if isinstance(tree, TreeNode | Mapping):
        roots = [tree]
    else:
        roots = list(tree)

    nodes: list[GraphNode] = []
    edges: list[GraphEdge] = []
    seen: set[str] = set()

    def visit(raw: Any, parent_id: str | None) -> None:
        entry = _coerce_tree_node(raw)
        children: Iterable[Any] = _raw_children(raw)
        if entry is None or entry.id in seen:
            if entry is not None:
                log.warning("tree_node_skipped", reason="duplicate id", node_id=entry.id)
            for child in children:
                visit(child, None)
            return

        seen.add(entry.id)
        nodes.append(_graph_node_from_tree(entry))
        if parent_id is not None:
            edges.append(GraphEdge.link(parent_id, entry.id))
        for child in children:
            visit(child, entry.id)

    for root in roots:
        visit(root, None)

    return GraphState(nodes=derive_fields(nodes, edges), edges=edges)


def _raw_children(raw: Any) -> list[Any]:
    if isinstance(raw, TreeNode):
        return list(raw.children)
    if isinstance(raw, Mapping):
        children = raw.get("children") or []
        return list(children) if isinstance(children, list) else []
    return []


def _coerce_tree_node(raw: Any) -> TreeNode | None:
    """Validate one tree node without its children, or None if malformed."""
    if isinstance(raw, TreeNode):
        entry = raw
    elif isinstance(raw, Mapping):
        shallow = {k: v for k, v in raw.items() if k != "children"}
        try:
            entry = TreeNode.model_validate(shallow)
        except ValidationError as e:
            log.warning(
                "tree_node_skipped",
                reason="invalid fields",
                node_id=shallow.get("id"),
                errors=e.error_count(),
            )
            return None
    else:
        log.warning("tree_node_skipped", reason="not a mapping", value_type=type(raw).__name__)
        return None

    if not entry.id or not entry.slug:
        log.warning("tree_node_skipped", reason="missing id or slug", node_id=entry.id or None)
        return None
    return entry


def _graph_node_from_tree(entry: TreeNode) -> GraphNode:
    has_content = entry.content_item_id is not None
    return GraphNode(
        id=entry.id,
        classification=Classification.PAGE if has_content else Classification.FOLDER,
        data=NodeData(
            label=entry.title or entry.slug,
            slug=entry.slug,
            ordered_components=list(entry.components),
            metadata=dict(entry.metadata),
            has_content=has_content,
        ),
    )


# -------------------------------------------------------------------------
# Structure helpers
# -------------------------------------------------------------------------


def parent_map(edges: Iterable[GraphEdge]) -> dict[str, str]:
    """Map each child ID to its parent ID."""
    return {e.target: e.source for e in edges}


def children_map(edges: Iterable[GraphEdge]) -> dict[str, list[str]]:
    """Map each parent ID to its child IDs, in edge order."""
    result: dict[str, list[str]] = {}
    for e in edges:
        result.setdefault(e.source, []).append(e.target)
    return result


def ancestors(node_id: str, parents: Mapping[str, str]) -> list[str]:
    """Ancestors of *node_id*, nearest first. Stops on a cycle."""
    chain: list[str] = []
    seen = {node_id}
    current = parents.get(node_id)
    while current is not None and current not in seen:
        chain.append(current)
        seen.add(current)
        current = parents.get(current)
    return chain


def descendants(node_id: str, children: Mapping[str, list[str]]) -> list[str]:
    """Descendants of *node_id* in pre-order."""
    result: list[str] = []
    stack = list(reversed(children.get(node_id, [])))
    seen = {node_id}
    while stack:
        child = stack.pop()
        if child in seen:
            continue
        seen.add(child)
        result.append(child)
        stack.extend(reversed(children.get(child, [])))
    return result


def derive_fields(nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> list[GraphNode]:
    """Recompute ``full_path`` and ``child_count`` from the structure.

    A node's path is its parent's computed path joined with its own slug;
    edges to unknown nodes are ignored. Nodes whose derived fields are
    already correct are returned as-is.
    """
    known = {n.id: n for n in nodes}
    parents = {child: parent for child, parent in parent_map(edges).items() if parent in known}
    counts: dict[str, int] = {}
    for child, parent in parents.items():
        if child in known:
            counts[parent] = counts.get(parent, 0) + 1

    paths: dict[str, str] = {}

    def path_of(node_id: str) -> str:
        if node_id in paths:
            return paths[node_id]
        chain = [node_id, *ancestors(node_id, parents)]
        # Resolve from the topmost ancestor down
        prefix = ""
        for nid in reversed(chain):
            if nid in paths:
                prefix = paths[nid]
                continue
            slug = known[nid].data.slug
            prefix = f"{prefix}/{slug}" if prefix else slug
            paths[nid] = prefix
        return paths[node_id]

    result: list[GraphNode] = []
    for node in nodes:
        full_path = path_of(node.id)
        child_count = counts.get(node.id, 0)
        if node.data.full_path == full_path and node.data.child_count == child_count:
            result.append(node)
            continue
        data = node.data.model_copy(update={"full_path": full_path, "child_count": child_count})
        result.append(node.model_copy(update={"data": data}))
    return result


# -------------------------------------------------------------------------
# Graph diff → operations
# -------------------------------------------------------------------------


def from_graph(
    current_nodes: Sequence[GraphNode],
    current_edges: Sequence[GraphEdge],
    previous_nodes: Sequence[GraphNode] | None = None,
    previous_edges: Sequence[GraphEdge] | None = None,
) -> list[Operation]:
    """Compute the operations that turn the previous graph into the current one.

    Nodes are matched by ID. Data payloads are compared by value and UPDATE
    operations carry only the fields that changed. Parent changes are only
    detected when *previous_edges* is given.

    Args:
        current_nodes: Nodes as they are now.
        current_edges: Edges as they are now.
        previous_nodes: Last known-saved nodes; None means nothing is saved yet.
        previous_edges: Last known-saved edges.

    Returns:
        Operations in batch execution order (DELETE, MOVE, UPDATE, CREATE).
    """
    current = {n.id: n for n in current_nodes}
    previous = {n.id: n for n in previous_nodes or []}
    current_parents = parent_map(current_edges)
    previous_parents = parent_map(previous_edges or [])

    operations: list[Operation] = [
        DeleteOperation(node_id=node_id) for node_id in previous if node_id not in current
    ]

    for node_id, node in current.items():
        parent_id = current_parents.get(node_id)
        before = previous.get(node_id)

        if before is None:
            operations.append(_create_operation(node, parent_id))
            continue

        if previous_edges is not None and parent_id != previous_parents.get(node_id):
            operations.append(MoveOperation(node_id=node_id, new_parent_id=parent_id))

        delta = _data_delta(node, before)
        if delta:
            operations.append(UpdateOperation(node_id=node_id, data=UpdateDelta(**delta)))

    return sort_operations(operations, current_parents, previous_parents)


def _create_operation(node: GraphNode, parent_id: str | None) -> CreateOperation:
    return CreateOperation(
        node_id=node.id,
        data=CreateData(
            parent_id=parent_id,
            slug=node.data.slug or generate_slug(node.data.label),
            title=node.data.label or "Untitled",
            classification=node.classification,
            components=list(node.data.ordered_components),
            metadata=dict(node.data.metadata),
        ),
    )


def _data_delta(current: GraphNode, previous: GraphNode) -> dict[str, Any]:
    """Changed payload fields, keyed by UpdateDelta field name."""
    delta: dict[str, Any] = {}
    for field, wire_name in DIFFED_DATA_FIELDS.items():
        value = getattr(current.data, field)
        if value != getattr(previous.data, field):
            delta[wire_name] = copy.copy(value)
    if current.classification != previous.classification:
        delta["classification"] = current.classification
    return delta


def sort_operations(
    operations: Sequence[Operation],
    current_parents: Mapping[str, str] | None = None,
    previous_parents: Mapping[str, str] | None = None,
) -> list[Operation]:
    """Order operations for execution.

    Type precedence first (DELETE, MOVE, UPDATE, CREATE); then deepest
    DELETE first and shallowest CREATE first, so that no operation refers
    to a node removed earlier or created later in the same batch. The sort
    is stable, so generation order is kept otherwise.
    """
    current_parents = current_parents or {}
    previous_parents = previous_parents or {}
    created = {op.node_id for op in operations if op.type == OperationType.CREATE}

    def key(op: Operation) -> tuple[int, int]:
        rank = OPERATION_ORDER[OperationType(op.type)]
        if op.type == OperationType.DELETE:
            return rank, -len(ancestors(op.node_id, previous_parents))
        if op.type == OperationType.CREATE:
            depth = sum(1 for a in ancestors(op.node_id, current_parents) if a in created)
            return rank, depth
        return rank, 0

    return sorted(operations, key=key)


def defer_moves_to_new_parents(
    operations: Sequence[Operation],
) -> tuple[list[Operation], list[MoveOperation]]:
    """Split off MOVEs whose new parent is created in the same batch.

    Such a MOVE would run before the CREATE it depends on, so it has to wait
    until the batch carrying that CREATE has been saved.

    Returns:
        ``(ready, deferred)``; *ready* keeps the input order.
    """
    created = {op.node_id for op in operations if op.type == OperationType.CREATE}
    ready: list[Operation] = []
    deferred: list[MoveOperation] = []
    for op in operations:
        if isinstance(op, MoveOperation) and op.new_parent_id in created:
            deferred.append(op)
        else:
            ready.append(op)
    return ready, deferred
