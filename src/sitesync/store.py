"""Sitemap store: the coordinator of one editing session.

The store owns the live graph, the selection, the save status and the diff
baseline (the last state handed to persistence). Every edit follows the same
steps:

1. validate, then apply the change to a new node/edge list
2. recompute derived fields and diff against the baseline
3. make the new state the baseline
4. push a history snapshot
5. queue the resulting operations for saving

Validation happens before anything is touched, so a rejected edit leaves the
state exactly as it was. Callers only ever receive copies of the graph.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar
from uuid import uuid4

from sitesync.config import SyncConfig
from sitesync.graph.errors import (
    USER_MESSAGES,
    CircularReferenceError,
    DuplicateSlugError,
    ErrorCode,
    NodeNotFoundError,
    OrphanedNodeError,
    SitemapError,
)
from sitesync.graph.history import HistoryManager, HistorySnapshot
from sitesync.graph.models import (
    Classification,
    GraphEdge,
    GraphNode,
    GraphState,
    MoveOperation,
    NodeData,
    Operation,
    OperationType,
    SaveResponse,
    SaveStatus,
)
from sitesync.graph.slugs import RESERVED_SLUGS, generate_slug, unique_sibling_slug, validate_slug
from sitesync.graph.transform import (
    TreeInput,
    children_map,
    defer_moves_to_new_parents,
    derive_fields,
    descendants,
    from_graph,
    parent_map,
    to_graph,
)
from sitesync.observability.logging import get_logger
from sitesync.persistence.client import SaveBackend, SitemapApiClient
from sitesync.persistence.manager import PersistenceManager, SleepFn

log = get_logger(__name__)

T = TypeVar("T")

Listener = Callable[[], None]


@dataclass(frozen=True)
class ErrorState:
    """Last save error as shown to the user.

    Attributes:
        message: User-facing message for the error code.
        code: Error code of the failure.
        retry: Resumes sending; None when retrying cannot help.
        detail: The error's own wording, e.g. the server's message.
    """

    message: str
    code: ErrorCode | None = None
    retry: Callable[[], Awaitable[None]] | None = None
    detail: str = ""


# -- Raw editor events -----------------------------------------------------


@dataclass(frozen=True)
class NodePositionChange:
    id: str
    position: tuple[float, float]


@dataclass(frozen=True)
class NodeSelectChange:
    id: str
    selected: bool


@dataclass(frozen=True)
class NodeRemoveChange:
    id: str


@dataclass(frozen=True)
class EdgeRemoveChange:
    id: str


NodeChange = NodePositionChange | NodeSelectChange | NodeRemoveChange


class SitemapStore:
    """Live graph state of one target, kept in sync with the backend.

    Args:
        backend: Backend used for loading and saving.
        config: Session settings.
        sleep: Delay coroutine passed to the persistence manager.
        persistence: Pre-built persistence manager (defaults to a new one
            over *backend*).
    """

    def __init__(
        self,
        backend: SaveBackend,
        config: SyncConfig | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
        persistence: PersistenceManager | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or SyncConfig()
        self._persistence = persistence or PersistenceManager(backend, self._config, sleep=sleep)
        self._history = HistoryManager(self._config.history_limit)
        self._owns_backend = False

        self._target_id: str | None = None
        self._nodes: list[GraphNode] = []
        self._edges: list[GraphEdge] = []
        self._baseline = GraphState()
        self._selection: set[str] = set()
        self._save_status = SaveStatus.IDLE
        self._error_state: ErrorState | None = None
        self._deferred_moves: list[MoveOperation] = []
        self._listeners: list[Listener] = []

    @classmethod
    def from_config(cls, config: SyncConfig, **kwargs: Any) -> SitemapStore:
        """Create a store with its own HTTP client, closed by ``aclose()``."""
        store = cls(SitemapApiClient.from_config(config), config, **kwargs)
        store._owns_backend = True
        return store

    # -- Loading -----------------------------------------------------------

    async def load(self, target_id: str) -> None:
        """Fetch *target_id* from the backend and start a session on it."""
        state = await self._backend.load(target_id)
        self.hydrate(target_id, state)

    def hydrate(self, target_id: str, state: GraphState | TreeInput) -> None:
        """Start a session on already-fetched data.

        Seeds the live state, the diff baseline and a single history entry,
        and (re)binds persistence to *target_id*.

        Args:
            target_id: Target (website) being edited.
            state: A graph state, or a tree to convert with ``to_graph``.
        """
        graph = state if isinstance(state, GraphState) else to_graph(state)
        nodes = derive_fields(graph.nodes, graph.edges)
        edges = list(graph.edges)

        self._target_id = target_id
        self._nodes = nodes
        self._edges = edges
        self._baseline = GraphState.of(nodes, edges)
        self._history.initialize(nodes, edges)
        self._selection = set()
        self._deferred_moves = []
        self._save_status = SaveStatus.IDLE
        self._error_state = None
        self._persistence.initialize(
            target_id,
            on_status_change=self._on_status_change,
            on_error=self._on_error,
            on_save_complete=self._on_save_complete,
        )
        log.info("session_started", target_id=target_id, nodes=len(nodes), edges=len(edges))
        self._notify()

    # -- Read access -------------------------------------------------------

    @property
    def target_id(self) -> str | None:
        return self._target_id

    @property
    def nodes(self) -> list[GraphNode]:
        """Copy of the current nodes."""
        return copy.deepcopy(self._nodes)

    @property
    def edges(self) -> list[GraphEdge]:
        """Copy of the current edges."""
        return copy.deepcopy(self._edges)

    @property
    def state(self) -> GraphState:
        return GraphState.of(self._nodes, self._edges)

    def get_node(self, node_id: str) -> GraphNode | None:
        node = self._index().get(node_id)
        return copy.deepcopy(node) if node is not None else None

    def parent_of(self, node_id: str) -> str | None:
        return parent_map(self._edges).get(node_id)

    @property
    def selected_ids(self) -> frozenset[str]:
        return frozenset(self._selection)

    @property
    def save_status(self) -> SaveStatus:
        return self._save_status

    @property
    def error_state(self) -> ErrorState | None:
        return self._error_state

    @property
    def can_undo(self) -> bool:
        return self._history.can_undo

    @property
    def can_redo(self) -> bool:
        return self._history.can_redo

    @property
    def has_unsaved_changes(self) -> bool:
        """True while any operation is queued, in flight or deferred."""
        if self._target_id is None:
            return False
        return self._persistence.pending_count > 0 or bool(self._deferred_moves)

    @property
    def pending_operations(self) -> list[Operation]:
        """Copy of the operations waiting to be sent (in-flight batch excluded)."""
        if self._target_id is None:
            return []
        return self._persistence.pending_operations

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* after every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- Structural edits --------------------------------------------------

    def add_node(
        self,
        parent_id: str | None = None,
        label: str = "Untitled",
        *,
        slug: str | None = None,
        classification: Classification = Classification.PAGE,
        components: Sequence[Any] | None = None,
        metadata: dict[str, Any] | None = None,
        position: tuple[float, float] | None = None,
        node_id: str | None = None,
    ) -> str:
        """Add a node under *parent_id* (None adds a root).

        Without an explicit *slug* one is generated from *label*, suffixed
        until it is free among the siblings.

        Returns:
            ID of the new node.

        Raises:
            NodeNotFoundError: If the parent does not exist.
            InvalidSlugError: If an explicit slug breaks the slug rules.
            DuplicateSlugError: If an explicit slug is taken by a sibling.
        """
        self._require_session()
        index = self._index()
        if parent_id is not None and parent_id not in index:
            raise NodeNotFoundError(parent_id, "parent of new node")
        node_id = node_id or str(uuid4())
        if node_id in index:
            raise ValueError(f"Node {node_id!r} already exists")

        siblings = self._sibling_slugs(parent_id)
        if slug is None:
            slug = unique_sibling_slug(generate_slug(label), siblings | RESERVED_SLUGS)
        else:
            validate_slug(slug)
            self._check_slug_free(slug, parent_id, siblings)

        node = GraphNode(
            id=node_id,
            classification=classification,
            data=NodeData(
                label=label,
                slug=slug,
                ordered_components=list(components or []),
                metadata=dict(metadata or {}),
            ),
            position=position,
        )
        edges = list(self._edges)
        if parent_id is not None:
            edges.append(GraphEdge.link(parent_id, node_id))
        self._commit([*self._nodes, node], edges, action="add_node")
        return node_id

    def update_node(
        self,
        node_id: str,
        *,
        label: str | None = None,
        slug: str | None = None,
        classification: Classification | None = None,
        components: Sequence[Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[Operation]:
        """Change a node's payload. Fields left as None are unchanged.

        Returns:
            The operations produced (empty if nothing changed).

        Raises:
            NodeNotFoundError: If the node does not exist.
            InvalidSlugError: If the new slug breaks the slug rules.
            DuplicateSlugError: If the new slug is taken by a sibling.
        """
        self._require_session()
        node = self._get(node_id, "update")
        updates: dict[str, Any] = {}
        if label is not None:
            updates["label"] = label
        if slug is not None and slug != node.data.slug:
            validate_slug(slug)
            parent_id = self.parent_of(node_id)
            self._check_slug_free(slug, parent_id, self._sibling_slugs(parent_id, exclude=node_id))
            updates["slug"] = slug
        if components is not None:
            updates["ordered_components"] = list(components)
        if metadata is not None:
            updates["metadata"] = dict(metadata)

        changed = node.model_copy(update={"data": node.data.model_copy(update=updates)})
        if classification is not None:
            changed = changed.model_copy(update={"classification": classification})
        if changed == node:
            return []

        nodes = [changed if n.id == node_id else n for n in self._nodes]
        return self._commit(nodes, self._edges, action="update_node")

    def delete_nodes(self, node_ids: Iterable[str], *, cascade: bool = True) -> list[Operation]:
        """Delete nodes and every edge that references them.

        Args:
            node_ids: Nodes to delete.
            cascade: Also delete all descendants. Without it, deleting a node
                whose children are not deleted as well is refused.

        Raises:
            NodeNotFoundError: If any ID is unknown.
            OrphanedNodeError: If ``cascade`` is off and children would remain.
        """
        self._require_session()
        requested = list(dict.fromkeys(node_ids))
        if not requested:
            return []
        index = self._index()
        for node_id in requested:
            if node_id not in index:
                raise NodeNotFoundError(node_id, "delete")

        children = children_map(self._edges)
        doomed = set(requested)
        if cascade:
            for node_id in requested:
                doomed.update(descendants(node_id, children))
        else:
            for node_id in requested:
                orphans = [c for c in children.get(node_id, []) if c not in doomed]
                if orphans:
                    raise OrphanedNodeError(node_id, orphans)

        nodes = [n for n in self._nodes if n.id not in doomed]
        edges = [e for e in self._edges if e.source not in doomed and e.target not in doomed]
        self._selection -= doomed
        return self._commit(nodes, edges, action="delete_nodes")

    def move_node(self, node_id: str, new_parent_id: str | None) -> list[Operation]:
        """Re-parent *node_id* under *new_parent_id* (None moves it to the root).

        Raises:
            NodeNotFoundError: If either node does not exist.
            CircularReferenceError: If the new parent is the node or one of its descendants.
            DuplicateSlugError: If the node's slug is taken under the new parent.
        """
        self._require_session()
        node = self._get(node_id, "move")
        if new_parent_id is not None:
            self._get(new_parent_id, "move target")
            if new_parent_id == node_id or new_parent_id in descendants(
                node_id, children_map(self._edges)
            ):
                raise CircularReferenceError(node_id, new_parent_id)

        if self.parent_of(node_id) == new_parent_id:
            return []
        self._check_slug_free(
            node.data.slug, new_parent_id, self._sibling_slugs(new_parent_id, exclude=node_id)
        )

        edges = [e for e in self._edges if e.target != node_id]
        if new_parent_id is not None:
            edges.append(GraphEdge.link(new_parent_id, node_id))
        return self._commit(self._nodes, edges, action="move_node")

    def connect(self, source: str, target: str) -> list[Operation]:
        """Connect *source* → *target*: *target* moves under *source*."""
        return self.move_node(target, source)

    # -- Raw editor events -------------------------------------------------

    def apply_node_changes(self, changes: Sequence[NodeChange]) -> list[Operation]:
        """Apply position, selection and removal events from the editor.

        Selection changes touch neither history nor persistence. Position
        changes are recorded in history but produce no operations. Removals
        delete the node with its subtree.
        """
        self._require_session()
        index = self._index()
        positions: dict[str, tuple[float, float]] = {}
        removed: list[str] = []
        selection_changed = False

        for change in changes:
            if change.id not in index:
                log.debug("node_change_ignored", node_id=change.id, change=type(change).__name__)
                continue
            if isinstance(change, NodeSelectChange):
                if change.selected:
                    self._selection.add(change.id)
                else:
                    self._selection.discard(change.id)
                selection_changed = True
            elif isinstance(change, NodePositionChange):
                positions[change.id] = change.position
            elif isinstance(change, NodeRemoveChange):
                removed.append(change.id)

        operations: list[Operation] = []
        if positions:
            nodes = [
                n.model_copy(update={"position": positions[n.id]}) if n.id in positions else n
                for n in self._nodes
            ]
            operations += self._commit(nodes, self._edges, action="move_position")
        if removed:
            operations += self.delete_nodes(removed)
        if selection_changed and not (positions or removed):
            self._notify()
        return operations

    def apply_edge_changes(self, changes: Sequence[EdgeRemoveChange]) -> list[Operation]:
        """Apply edge removals; each detached child becomes a root.

        Raises:
            DuplicateSlugError: If a detached child's slug is taken at the root.
        """
        self._require_session()
        doomed = {c.id for c in changes}
        detached = [e.target for e in self._edges if e.id in doomed]
        if not detached:
            return []

        root_slugs = self._sibling_slugs(None)
        index = self._index()
        for node_id in detached:
            slug = index[node_id].data.slug
            self._check_slug_free(slug, None, root_slugs)
            root_slugs.add(slug.lower())

        edges = [e for e in self._edges if e.id not in doomed]
        return self._commit(self._nodes, edges, action="remove_edges")

    # -- Selection ---------------------------------------------------------

    def select(self, node_ids: Iterable[str], *, additive: bool = False) -> None:
        """Select nodes; unknown IDs are ignored."""
        known = self._index()
        chosen = {n for n in node_ids if n in known}
        self._selection = (self._selection | chosen) if additive else chosen
        self._notify()

    def clear_selection(self) -> None:
        if self._selection:
            self._selection = set()
            self._notify()

    # -- History -----------------------------------------------------------

    def undo(self) -> bool:
        """Restore the previous history entry. Returns False at the oldest entry."""
        snapshot = self._history.undo()
        if snapshot is None:
            return False
        self._restore(snapshot, action="undo")
        return True

    def redo(self) -> bool:
        """Restore the next history entry. Returns False at the newest entry."""
        snapshot = self._history.redo()
        if snapshot is None:
            return False
        self._restore(snapshot, action="redo")
        return True

    def _restore(self, snapshot: HistorySnapshot, *, action: str) -> None:
        """Make *snapshot* the live state without pushing history.

        With ``persist_history_restores`` the restored state is diffed and
        queued like any edit; otherwise only local state changes and the
        baseline stays put, so the next edit's diff carries the difference.
        """
        restored = snapshot.to_state()
        if self._config.persist_history_restores:
            self._commit(restored.nodes, restored.edges, action=action, record_history=False)
            return
        self._nodes = derive_fields(restored.nodes, restored.edges)
        self._edges = restored.edges
        self._selection &= {n.id for n in self._nodes}
        log.debug("history_restored_locally", action=action, nodes=len(self._nodes))
        self._notify()

    # -- Optimistic updates ------------------------------------------------

    async def optimistic_update(
        self,
        action: Callable[[], Awaitable[T]],
        *,
        apply: Callable[[SitemapStore], object] | None = None,
        rollback: Callable[[BaseException], object] | None = None,
    ) -> T:
        """Apply an edit right away and run *action* to confirm it.

        If *action* raises, the graph returns to its state from before
        *apply* (as a new, persisted edit), *rollback* is called with the
        error, and the error is re-raised.

        Args:
            action: Async confirmation step.
            apply: Local edit shown before *action* completes.
            rollback: Extra cleanup on failure.

        Returns:
            Whatever *action* returns.
        """
        self._require_session()
        before = GraphState.of(self._nodes, self._edges)
        selection = set(self._selection)
        if apply is not None:
            apply(self)

        try:
            return await action()
        except Exception as e:
            log.warning("optimistic_update_rolled_back", target_id=self._target_id, error=str(e))
            self._selection = selection & before.node_ids()
            self._commit(before.nodes, before.edges, action="rollback")
            if rollback is not None:
                rollback(e)
            raise

    # -- Saving ------------------------------------------------------------

    async def save_now(self) -> None:
        self._require_session()
        await self._persistence.save_now()

    async def retry(self) -> None:
        """Resume sending after a save error."""
        self._require_session()
        self._error_state = None
        await self._persistence.retry()

    async def wait_until_saved(self) -> None:
        """Wait until persistence has nothing left running."""
        self._require_session()
        await self._persistence.wait_until_settled()

    def discard_pending(self) -> list[Operation]:
        """Drop unsaved operations. The local graph keeps the edits.

        Returns:
            The discarded operations, deferred moves included.
        """
        self._require_session()
        discarded = [*self._persistence.discard_pending(), *self._deferred_moves]
        self._deferred_moves = []
        self._error_state = None
        self._notify()
        return discarded

    async def aclose(self) -> None:
        """End the session: cancel persistence and close an owned client."""
        self._persistence.dispose()
        if self._owns_backend and isinstance(self._backend, SitemapApiClient):
            await self._backend.aclose()
        self._listeners = []

    # -- Persistence callbacks ---------------------------------------------

    def _on_status_change(self, status: SaveStatus) -> None:
        self._save_status = status
        if status != SaveStatus.ERROR:
            self._error_state = None
        self._notify()

    def _on_error(self, error: SitemapError) -> None:
        self._error_state = ErrorState(
            message=USER_MESSAGES[error.code],
            code=error.code,
            retry=self.retry if error.retryable else None,
            detail=error.message,
        )
        self._notify()

    def _on_save_complete(self, batch: list[Operation], response: SaveResponse) -> None:
        created = {op.node_id for op in batch if op.type == OperationType.CREATE}
        if not created or not self._deferred_moves:
            return

        parents = parent_map(self._edges)
        index = self._index()
        ready: list[Operation] = []
        waiting: list[MoveOperation] = []
        for move in self._deferred_moves:
            if move.new_parent_id not in created:
                waiting.append(move)
            elif move.node_id in index and parents.get(move.node_id) == move.new_parent_id:
                ready.append(move)
            else:
                log.debug("deferred_move_dropped", node_id=move.node_id, parent_id=move.new_parent_id)
        self._deferred_moves = waiting
        if ready:
            log.debug("deferred_moves_released", count=len(ready))
            self._persistence.add_operations(ready)

    # -- Internals ---------------------------------------------------------

    def _commit(
        self,
        nodes: Sequence[GraphNode],
        edges: Sequence[GraphEdge],
        *,
        action: str,
        record_history: bool = True,
    ) -> list[Operation]:
        nodes = derive_fields(nodes, edges)
        edges = list(edges)
        operations = from_graph(nodes, edges, self._baseline.nodes, self._baseline.edges)
        ready, deferred = defer_moves_to_new_parents(operations)

        self._nodes = nodes
        self._edges = edges
        self._selection &= {n.id for n in nodes}
        self._baseline = GraphState.of(nodes, edges)
        if record_history:
            self._history.push_state(nodes, edges)
        self._deferred_moves.extend(deferred)
        if ready:
            self._persistence.add_operations(ready)

        log.debug(
            "operations_computed",
            action=action,
            operations=[str(op.type) for op in operations],
            deferred=len(deferred),
        )
        self._notify()
        return operations

    def _require_session(self) -> None:
        if self._target_id is None:
            raise RuntimeError("No sitemap loaded; call load() or hydrate() first")

    def _index(self) -> dict[str, GraphNode]:
        return {n.id: n for n in self._nodes}

    def _get(self, node_id: str, context: str) -> GraphNode:
        node = self._index().get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id, context)
        return node

    def _sibling_slugs(self, parent_id: str | None, *, exclude: str | None = None) -> set[str]:
        parents = parent_map(self._edges)
        return {
            n.data.slug.lower()
            for n in self._nodes
            if parents.get(n.id) == parent_id and n.id != exclude
        }

    def _check_slug_free(self, slug: str, parent_id: str | None, sibling_slugs: set[str]) -> None:
        if slug.lower() in sibling_slugs:
            parent = self._index().get(parent_id) if parent_id is not None else None
            raise DuplicateSlugError(slug, parent.data.full_path if parent is not None else "")

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()
