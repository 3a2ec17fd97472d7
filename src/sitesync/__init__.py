"""sitesync - keep an editable sitemap graph in sync with its persisted tree."""

__version__ = "0.1.0"
