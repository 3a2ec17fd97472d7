"""Sitemap error types and their wire serialization.

Every domain error carries a stable ``code`` that survives the trip to and
from the backend. The codes on the retryable allow-list tell the UI that a
manual retry may succeed; only transport and generic save failures are
retried automatically by the persistence layer.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar


class ErrorCode(StrEnum):
    """Stable error codes shared with the backend."""

    DUPLICATE_SLUG = "DUPLICATE_SLUG"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    INVALID_SLUG = "INVALID_SLUG"
    ORPHANED_NODE = "ORPHANED_NODE"
    CIRCULAR_REFERENCE = "CIRCULAR_REFERENCE"
    NETWORK_ERROR = "NETWORK_ERROR"
    SAVE_ERROR = "SAVE_ERROR"
    TRANSACTION_CONFLICT = "TRANSACTION_CONFLICT"


RETRYABLE_CODES: frozenset[ErrorCode] = frozenset(
    {ErrorCode.NETWORK_ERROR, ErrorCode.SAVE_ERROR, ErrorCode.TRANSACTION_CONFLICT}
)
"""Codes reported as ``retryable`` on the wire."""

AUTO_RETRY_CODES: frozenset[ErrorCode] = frozenset(
    {ErrorCode.NETWORK_ERROR, ErrorCode.SAVE_ERROR}
)
"""Codes the persistence layer retries with backoff. Conflicts always surface."""

USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.DUPLICATE_SLUG: "A page with this URL already exists",
    ErrorCode.INVALID_SLUG: "Invalid URL format. Use only letters, numbers, and hyphens",
    ErrorCode.ORPHANED_NODE: "Cannot perform this operation - would create orphaned nodes",
    ErrorCode.CIRCULAR_REFERENCE: "This change would create a circular reference",
    ErrorCode.NODE_NOT_FOUND: "The item was not found - it may have been deleted",
    ErrorCode.NETWORK_ERROR: "Connection lost. Your changes will be saved when reconnected.",
    ErrorCode.SAVE_ERROR: "Failed to save changes. Click to retry.",
    ErrorCode.TRANSACTION_CONFLICT: "Another user is making changes. Please retry.",
}


class SitemapError(Exception):
    """Base class for sitemap domain errors.

    Subclasses set ``code`` and build their message in ``__post_init__``.
    A non-empty ``detail`` always replaces the default message, which is how
    errors rebuilt from a server response keep the server's wording.
    """

    code: ClassVar[ErrorCode]

    # Set when the server states retryability explicitly; None defers to ``code``.
    retry_hint: bool | None = None

    @property
    def message(self) -> str:
        """Human-readable message."""
        return str(self)

    @property
    def retryable(self) -> bool:
        """Whether a manual retry may succeed."""
        if self.retry_hint is not None:
            return self.retry_hint
        return self.code in RETRYABLE_CODES

    @property
    def auto_retry(self) -> bool:
        """Whether the persistence layer should retry with backoff.

        A server that marks the failure non-retryable is never retried.
        """
        if self.retry_hint is False:
            return False
        return self.code in AUTO_RETRY_CODES

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the error wire format."""
        return {"error": self.message, "code": str(self.code), "retryable": self.retryable}


@dataclass
class DuplicateSlugError(SitemapError):
    """Raised when a slug collides with a sibling's slug.

    Attributes:
        slug: The colliding slug.
        parent_path: Full path of the parent, empty at root level.
    """

    code: ClassVar[ErrorCode] = ErrorCode.DUPLICATE_SLUG

    slug: str = ""
    parent_path: str = ""
    detail: str = ""

    def __post_init__(self) -> None:
        path = f"{self.parent_path}/{self.slug}" if self.parent_path else self.slug
        super().__init__(self.detail or f'A page with the URL "{path}" already exists')


@dataclass
class NodeNotFoundError(SitemapError):
    """Raised when an operation references a node that does not exist.

    Attributes:
        node_id: The stale reference.
        context: Where the reference occurred.
    """

    code: ClassVar[ErrorCode] = ErrorCode.NODE_NOT_FOUND

    node_id: str = ""
    context: str = ""
    detail: str = ""

    def __post_init__(self) -> None:
        msg = f"The item was not found ({self.node_id}) - it may have been deleted"
        if self.context:
            msg += f" [{self.context}]"
        super().__init__(self.detail or msg)


@dataclass
class InvalidSlugError(SitemapError):
    """Raised when a slug violates the slug grammar.

    Attributes:
        slug: The rejected slug.
        violations: Individual rule violations, most important first.
    """

    code: ClassVar[ErrorCode] = ErrorCode.INVALID_SLUG

    slug: str = ""
    violations: list[str] = field(default_factory=list)
    detail: str = ""

    def __post_init__(self) -> None:
        msg = f'Invalid URL format "{self.slug}". Use only letters, numbers, and hyphens'
        if self.violations:
            msg += f" ({self.violations[0]})"
        super().__init__(self.detail or msg)


@dataclass
class OrphanedNodeError(SitemapError):
    """Raised when an operation would disconnect a subtree.

    Attributes:
        node_id: The node whose children would be left behind.
        orphans: IDs of the children that would lose their parent.
    """

    code: ClassVar[ErrorCode] = ErrorCode.ORPHANED_NODE

    node_id: str = ""
    orphans: list[str] = field(default_factory=list)
    detail: str = ""

    def __post_init__(self) -> None:
        msg = "Cannot perform this operation - would create orphaned nodes"
        if self.orphans:
            msg += f" ({', '.join(self.orphans[:5])})"
        super().__init__(self.detail or msg)


@dataclass
class CircularReferenceError(SitemapError):
    """Raised when a move would make a node its own ancestor.

    Attributes:
        node_id: The node being moved.
        target_id: The requested new parent.
    """

    code: ClassVar[ErrorCode] = ErrorCode.CIRCULAR_REFERENCE

    node_id: str = ""
    target_id: str = ""
    detail: str = ""

    def __post_init__(self) -> None:
        super().__init__(
            self.detail
            or f"This change would create a circular reference ({self.node_id} -> {self.target_id})"
        )


@dataclass
class NetworkError(SitemapError):
    """Raised when the backend cannot be reached."""

    code: ClassVar[ErrorCode] = ErrorCode.NETWORK_ERROR

    detail: str = ""

    def __post_init__(self) -> None:
        super().__init__(self.detail or USER_MESSAGES[ErrorCode.NETWORK_ERROR])


@dataclass
class SaveError(SitemapError):
    """Generic persistence failure.

    Attributes:
        status_code: HTTP status of the failed response, if any.
    """

    code: ClassVar[ErrorCode] = ErrorCode.SAVE_ERROR

    detail: str = ""
    status_code: int | None = None

    def __post_init__(self) -> None:
        super().__init__(self.detail or USER_MESSAGES[ErrorCode.SAVE_ERROR])


@dataclass
class TransactionConflictError(SitemapError):
    """Raised when the backend detects a concurrent mutation."""

    code: ClassVar[ErrorCode] = ErrorCode.TRANSACTION_CONFLICT

    detail: str = ""

    def __post_init__(self) -> None:
        super().__init__(self.detail or USER_MESSAGES[ErrorCode.TRANSACTION_CONFLICT])


_FACTORIES: dict[ErrorCode, Callable[[str], SitemapError]] = {
    ErrorCode.DUPLICATE_SLUG: lambda msg: DuplicateSlugError(detail=msg),
    ErrorCode.NODE_NOT_FOUND: lambda msg: NodeNotFoundError(detail=msg),
    ErrorCode.INVALID_SLUG: lambda msg: InvalidSlugError(detail=msg),
    ErrorCode.ORPHANED_NODE: lambda msg: OrphanedNodeError(detail=msg),
    ErrorCode.CIRCULAR_REFERENCE: lambda msg: CircularReferenceError(detail=msg),
    ErrorCode.NETWORK_ERROR: lambda msg: NetworkError(detail=msg),
    ErrorCode.SAVE_ERROR: lambda msg: SaveError(detail=msg),
    ErrorCode.TRANSACTION_CONFLICT: lambda msg: TransactionConflictError(detail=msg),
}

# Backend constraint-violation codes
_BACKEND_CODES: dict[str, ErrorCode] = {
    "P2002": ErrorCode.DUPLICATE_SLUG,
    "P2025": ErrorCode.NODE_NOT_FOUND,
    "P2003": ErrorCode.ORPHANED_NODE,
    "P2034": ErrorCode.TRANSACTION_CONFLICT,
}


def serialize_error(exc: BaseException) -> dict[str, Any]:
    """Serialize any exception to the error wire format.

    Non-domain errors carry only a message, never a code.
    """
    if isinstance(exc, SitemapError):
        return exc.to_wire()
    return {"error": str(exc) or "An error occurred"}


def error_from_wire(
    payload: Mapping[str, Any] | None,
    status_code: int | None = None,
) -> SitemapError:
    """Rebuild a typed error from a response body.

    Codes are looked up as domain codes first, then as backend constraint
    codes (``P2002`` and friends). A body without a usable code is a conflict
    on 409 and a generic save failure otherwise. An explicit ``retryable``
    flag in the body overrides the default for the code.

    Args:
        payload: Decoded response body (``{"error", "code"?, "retryable"?}``).
        status_code: HTTP status, used when the body has no known code.

    Returns:
        The matching SitemapError subclass; SaveError if nothing matches.
    """
    payload = payload or {}
    message = str(payload.get("error") or "")
    code = payload.get("code")

    error: SitemapError
    if isinstance(code, str) and code in ErrorCode.__members__:
        error = _FACTORIES[ErrorCode(code)](message)
    elif isinstance(code, str) and code in _BACKEND_CODES:
        error = map_backend_error(code, message)
    elif status_code == 409:
        error = TransactionConflictError(detail=message)
    else:
        error = SaveError(detail=message, status_code=status_code)

    retryable = payload.get("retryable")
    if isinstance(retryable, bool):
        error.retry_hint = retryable
    return error


def map_backend_error(code: str | None, message: str = "") -> SitemapError:
    """Map a backend constraint code (e.g. ``P2002``) to a domain error."""
    mapped = _BACKEND_CODES.get(code or "")
    if mapped is None:
        return SaveError(detail=message)
    return _FACTORIES[mapped](message)
