"""Bounded undo/redo history over graph snapshots.

The history is independent of persistence: it only records what the user
saw. Only direct edits push entries; walking the stack with ``undo`` and
``redo`` never does.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sitesync.graph.models import GraphEdge, GraphNode, GraphState
from sitesync.observability.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_HISTORY = 50


@dataclass(frozen=True)
class HistorySnapshot:
    """Immutable deep copy of the graph at one point in time."""

    nodes: tuple[GraphNode, ...]
    edges: tuple[GraphEdge, ...]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def capture(cls, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> HistorySnapshot:
        return cls(nodes=tuple(copy.deepcopy(list(nodes))), edges=tuple(copy.deepcopy(list(edges))))

    def to_state(self) -> GraphState:
        """Fresh, independently mutable copy of the snapshot's graph."""
        return GraphState.of(self.nodes, self.edges)


class HistoryManager:
    """Index-addressed stack of snapshots with a movable pointer.

    Pushing after an undo discards the redo branch. Once the stack holds
    more than ``max_size`` entries the oldest is evicted.

    Attributes:
        max_size: Maximum number of stored snapshots.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_HISTORY) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self.max_size = max_size
        self._entries: list[HistorySnapshot] = []
        self._index = -1

    def initialize(self, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> None:
        """Reset to a single entry holding the given graph."""
        self._entries = [HistorySnapshot.capture(nodes, edges)]
        self._index = 0

    def push_state(self, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> None:
        """Record a new state after a user edit."""
        del self._entries[self._index + 1 :]
        self._entries.append(HistorySnapshot.capture(nodes, edges))
        self._index += 1

        if len(self._entries) > self.max_size:
            evicted = len(self._entries) - self.max_size
            del self._entries[:evicted]
            self._index -= evicted

    def undo(self) -> HistorySnapshot | None:
        """Step back one entry; None at the oldest entry."""
        if not self.can_undo:
            return None
        self._index -= 1
        log.debug("history_undo", index=self._index, size=len(self._entries))
        return self._entries[self._index]

    def redo(self) -> HistorySnapshot | None:
        """Step forward one entry; None at the newest entry."""
        if not self.can_redo:
            return None
        self._index += 1
        log.debug("history_redo", index=self._index, size=len(self._entries))
        return self._entries[self._index]

    @property
    def can_undo(self) -> bool:
        return self._index > 0

    @property
    def can_redo(self) -> bool:
        return 0 <= self._index < len(self._entries) - 1

    @property
    def current(self) -> HistorySnapshot | None:
        """Snapshot at the pointer, or None before initialization."""
        if self._index < 0:
            return None
        return self._entries[self._index]

    @property
    def index(self) -> int:
        return self._index

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries = []
        self._index = -1
