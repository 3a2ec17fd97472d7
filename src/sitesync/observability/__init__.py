"""Logging setup shared by the CLI and the sync engine."""

from sitesync.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_logs_dir,
    target_context,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "get_logs_dir",
    "target_context",
]
