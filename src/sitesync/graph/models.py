"""Pydantic models for the sitemap graph and its wire formats.

The editor works on a flat graph (nodes plus parent→child edges); the
backend persists a tree. Operations describe client intent that the server
has not yet confirmed.

Wire payloads use camelCase keys (``nodeId``, ``parentId``,
``newParentId``); Python code uses snake_case attribute names.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models exchanged with the backend."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Classification(StrEnum):
    """Node classification."""

    PAGE = "page"
    FOLDER = "folder"


class SaveStatus(StrEnum):
    """Save status of a coordinator, observed by the status indicator."""

    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class OperationType(StrEnum):
    """Operation tags, listed in batch execution order."""

    DELETE = "DELETE"
    MOVE = "MOVE"
    UPDATE = "UPDATE"
    CREATE = "CREATE"


# -- Graph -----------------------------------------------------------------


class NodeData(WireModel):
    """Editable payload of a graph node.

    ``full_path`` and ``child_count`` are derived from the graph structure
    and recomputed after every change; they never take part in diffing.
    """

    model_config = ConfigDict(frozen=True)

    label: str = "Untitled"
    slug: str = ""
    full_path: str = ""
    ordered_components: list[Any] = Field(default_factory=list)
    child_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    has_content: bool = False


DIFFED_DATA_FIELDS: dict[str, str] = {
    "label": "title",
    "slug": "slug",
    "ordered_components": "components",
    "metadata": "metadata",
}
"""NodeData fields compared by value for UPDATE operations, mapped to their UpdateDelta names."""


class GraphNode(WireModel):
    """A sitemap entry in the editable graph.

    Attributes:
        id: Stable identifier, unique per snapshot.
        classification: Page (has content) or folder.
        data: Editable payload.
        position: Canvas position assigned by the layout/editor, never diffed.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    classification: Classification = Classification.PAGE
    data: NodeData = Field(default_factory=NodeData)
    position: tuple[float, float] | None = None


def edge_id(source: str, target: str) -> str:
    """Edge identifier for a parent→child relation."""
    return f"{source}-{target}"


class GraphEdge(WireModel):
    """Parent→child relation. Each node has at most one incoming edge."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    source: str
    target: str

    @classmethod
    def link(cls, source: str, target: str) -> GraphEdge:
        """Create the edge between *source* and *target*."""
        return cls(id=edge_id(source, target), source=source, target=target)


class GraphState(WireModel):
    """A value snapshot of the graph."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    @classmethod
    def of(cls, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> GraphState:
        """Deep-copy *nodes* and *edges* into a new state."""
        return cls(nodes=copy.deepcopy(list(nodes)), edges=copy.deepcopy(list(edges)))

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}


# -- Tree ------------------------------------------------------------------


class TreeNode(WireModel):
    """A persisted site-structure entry as returned by the backend.

    ``full_path`` is accepted for compatibility but never trusted.
    """

    id: str = ""
    slug: str = ""
    title: str | None = None
    parent_id: str | None = None
    content_item_id: str | None = None
    full_path: str | None = None
    position: int = 0
    components: list[Any] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    children: list[TreeNode] = Field(default_factory=list)


# -- Operations ------------------------------------------------------------


class CreateData(WireModel):
    """Fields of a node being created."""

    model_config = ConfigDict(frozen=True)

    parent_id: str | None = None
    slug: str
    title: str = "Untitled"
    classification: Classification = Field(
        default=Classification.PAGE, alias="contentTypeCategory"
    )
    components: list[Any] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateDelta(WireModel):
    """Changed fields of an existing node. Unset fields are unchanged."""

    model_config = ConfigDict(frozen=True)

    title: str | None = None
    slug: str | None = None
    classification: Classification | None = Field(default=None, alias="contentTypeCategory")
    components: list[Any] | None = None
    metadata: dict[str, Any] | None = None

    def changed_fields(self) -> set[str]:
        return set(self.model_fields_set)


class CreateOperation(WireModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["CREATE"] = "CREATE"
    node_id: str
    data: CreateData

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UpdateOperation(WireModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["UPDATE"] = "UPDATE"
    node_id: str
    data: UpdateDelta

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "nodeId": self.node_id,
            "data": self.data.model_dump(mode="json", by_alias=True, exclude_unset=True),
        }


class DeleteOperation(WireModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["DELETE"] = "DELETE"
    node_id: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MoveOperation(WireModel):
    """Re-parent a node. ``new_parent_id=None`` moves it to the root."""

    model_config = ConfigDict(frozen=True)

    type: Literal["MOVE"] = "MOVE"
    node_id: str
    new_parent_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


Operation = Annotated[
    CreateOperation | UpdateOperation | DeleteOperation | MoveOperation,
    Field(discriminator="type"),
]

OPERATION_ORDER: dict[OperationType, int] = {t: i for i, t in enumerate(OperationType)}


class OperationResult(WireModel):
    """Per-operation outcome reported by the backend."""

    operation_type: OperationType | None = None
    node_id: str | None = None
    success: bool = True
    error: str | None = None


class SaveRequest(WireModel):
    target_id: str
    operations: list[Operation]

    def to_wire(self) -> dict[str, Any]:
        return {
            "targetId": self.target_id,
            "operations": [op.to_wire() for op in self.operations],
        }


class SaveResponse(WireModel):
    success: bool = False
    results: list[OperationResult] | None = None
    error: str | None = None
    code: str | None = None
    retryable: bool | None = None


OPERATIONS_ADAPTER: TypeAdapter[list[Operation]] = TypeAdapter(list[Operation])
"""Validates a decoded list of wire operations."""
