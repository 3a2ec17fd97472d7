"""Persistence package - sending operations to the sitemap backend."""

from sitesync.persistence.client import SaveBackend, SitemapApiClient
from sitesync.persistence.manager import PersistenceCallbacks, PersistenceManager

__all__ = [
    "PersistenceCallbacks",
    "PersistenceManager",
    "SaveBackend",
    "SitemapApiClient",
]
