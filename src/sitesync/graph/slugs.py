"""Slug generation and validation."""

from __future__ import annotations

import re
from collections.abc import Iterable

from sitesync.graph.errors import InvalidSlugError

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
MAX_SLUG_LENGTH = 255
FALLBACK_SLUG = "untitled"
RESERVED_SLUGS = frozenset(
    {"api", "admin", "static", "_next", "public", "favicon.ico", "robots.txt", "sitemap.xml"}
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def generate_slug(label: str | None) -> str:
    """Derive a slug from a display label.

    Lowercases, collapses every run of non-alphanumeric characters into one
    hyphen and trims hyphens at both ends. Falls back to ``"untitled"``.

    Example:
        >>> generate_slug("My New Page!!")
        'my-new-page'
    """
    if not label:
        return FALLBACK_SLUG
    slug = _NON_ALNUM.sub("-", label.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-") or FALLBACK_SLUG


def slug_violations(slug: str) -> list[str]:
    """List the slug grammar rules *slug* breaks (empty if valid)."""
    if not slug:
        return ["cannot be empty"]

    violations: list[str] = []
    if slug != slug.lower():
        violations.append("contains uppercase letters")
    invalid = sorted({c for c in slug.lower() if not SLUG_PATTERN.match(c)})
    if invalid:
        violations.append(f"contains invalid character(s) {', '.join(repr(c) for c in invalid)}")
    if len(slug) > MAX_SLUG_LENGTH:
        violations.append(f"exceeds maximum length of {MAX_SLUG_LENGTH} characters")
    if slug.lower() in RESERVED_SLUGS:
        violations.append("is a reserved system slug")
    return violations


def validate_slug(slug: str) -> str:
    """Return *slug* unchanged if valid.

    Raises:
        InvalidSlugError: If the slug breaks any grammar rule.
    """
    violations = slug_violations(slug)
    if violations:
        raise InvalidSlugError(slug, violations)
    return slug


def slug_with_suffix(slug: str, suffix: int) -> str:
    """Append a numeric suffix (``about`` → ``about-2``)."""
    if suffix <= 0:
        return slug
    tail = f"-{suffix}"
    return slug[: MAX_SLUG_LENGTH - len(tail)] + tail


def unique_sibling_slug(slug: str, sibling_slugs: Iterable[str]) -> str:
    """Return *slug*, suffixed as needed so no sibling already uses it."""
    taken = {s.lower() for s in sibling_slugs}
    candidate = slug
    suffix = 1
    while candidate.lower() in taken:
        suffix += 1
        candidate = slug_with_suffix(slug, suffix)
    return candidate
