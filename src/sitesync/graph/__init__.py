"""Graph package - the editable sitemap graph.

Models, tree/graph transforms, slug rules, undo/redo history and the
domain error taxonomy. Everything here is synchronous and free of I/O.
"""

from sitesync.graph.errors import (
    CircularReferenceError,
    DuplicateSlugError,
    ErrorCode,
    InvalidSlugError,
    NetworkError,
    NodeNotFoundError,
    OrphanedNodeError,
    SaveError,
    SitemapError,
    TransactionConflictError,
    error_from_wire,
    map_backend_error,
    serialize_error,
)
from sitesync.graph.history import HistoryManager, HistorySnapshot
from sitesync.graph.models import (
    Classification,
    CreateOperation,
    DeleteOperation,
    GraphEdge,
    GraphNode,
    GraphState,
    MoveOperation,
    NodeData,
    Operation,
    OperationType,
    SaveStatus,
    TreeNode,
    UpdateOperation,
)
from sitesync.graph.slugs import generate_slug, validate_slug
from sitesync.graph.transform import derive_fields, from_graph, to_graph

__all__ = [
    "CircularReferenceError",
    "Classification",
    "CreateOperation",
    "DeleteOperation",
    "DuplicateSlugError",
    "ErrorCode",
    "GraphEdge",
    "GraphNode",
    "GraphState",
    "HistoryManager",
    "HistorySnapshot",
    "InvalidSlugError",
    "MoveOperation",
    "NetworkError",
    "NodeData",
    "NodeNotFoundError",
    "Operation",
    "OperationType",
    "OrphanedNodeError",
    "SaveError",
    "SaveStatus",
    "SitemapError",
    "TransactionConflictError",
    "TreeNode",
    "UpdateOperation",
    "derive_fields",
    "error_from_wire",
    "from_graph",
    "generate_slug",
    "map_backend_error",
    "serialize_error",
    "to_graph",
    "validate_slug",
]
