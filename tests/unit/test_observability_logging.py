"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest

from sitesync.observability import (
    close_file_logging,
    configure_logging,
    get_logger,
    target_context,
)
from sitesync.observability.logging import get_logs_dir

if TYPE_CHECKING:
    from pathlib import Path


def test_configure_logging_sets_level_warning() -> None:
    """Default verbosity (0) sets WARNING level."""
    configure_logging(verbosity=0)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.WARNING


def test_configure_logging_verbose_sets_debug_root() -> None:
    """verbosity=1 opens the root logger; the console handler filters."""
    configure_logging(verbosity=1)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG


def test_get_logger_returns_bound_logger() -> None:
    """get_logger returns a structlog logger with expected methods."""
    logger = get_logger(__name__)

    assert hasattr(logger, "info")
    assert hasattr(logger, "debug")
    assert hasattr(logger, "error")
    assert hasattr(logger, "warning")


def test_get_logger_auto_configures() -> None:
    """get_logger configures logging if not already done."""
    import sitesync.observability.logging as log_module

    log_module._configured = False

    logger = get_logger("test")

    assert log_module._configured is True
    assert logger is not None


def test_configure_logging_suppresses_transport_loggers() -> None:
    """Request-level transport logging stays quiet even at DEBUG."""
    configure_logging(verbosity=2)

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_configure_logging_with_file_logging(tmp_path: Path) -> None:
    """File logging creates the logs directory."""
    logs_dir = tmp_path / "logs"
    configure_logging(verbosity=0, log_to_file=True, logs_dir=logs_dir)

    assert logs_dir.exists()
    assert get_logs_dir() == logs_dir
    close_file_logging()


def test_configure_logging_requires_logs_dir_for_file_logging() -> None:
    """log_to_file=True without logs_dir raises ValueError."""
    with pytest.raises(ValueError, match="logs_dir is required"):
        configure_logging(verbosity=0, log_to_file=True, logs_dir=None)


def test_configure_logging_reconfiguration_closes_handler(tmp_path: Path) -> None:
    """Reconfiguring logging closes previous file handler."""
    import sitesync.observability.logging as log_module

    configure_logging(verbosity=0, log_to_file=True, logs_dir=tmp_path)
    first_handler = log_module._file_handler
    assert first_handler is not None

    configure_logging(verbosity=0, log_to_file=True, logs_dir=tmp_path)
    second_handler = log_module._file_handler

    # Stream is None after close
    assert first_handler.stream is None or first_handler.stream.closed
    assert second_handler is not None
    close_file_logging()


def test_close_file_logging_clears_handler(tmp_path: Path) -> None:
    """close_file_logging closes handler and clears reference."""
    import sitesync.observability.logging as log_module

    configure_logging(verbosity=0, log_to_file=True, logs_dir=tmp_path)
    assert log_module._file_handler is not None

    close_file_logging()

    assert log_module._file_handler is None


def test_jsonl_file_handler_writes_structlog_context(tmp_path: Path) -> None:
    """Keyword context from structlog calls is written as top-level JSON keys."""
    configure_logging(verbosity=2, log_to_file=True, logs_dir=tmp_path)

    logger = get_logger("test.context")
    logger.info("save_batch_sent", target_id="site-1", operations=3)

    close_file_logging()

    log_file = tmp_path / "debug.jsonl"
    assert log_file.exists()

    found = False
    with log_file.open() as f:
        for line in f:
            entry = json.loads(line)
            if entry.get("message") == "save_batch_sent":
                found = True
                assert entry["target_id"] == "site-1"
                assert entry["operations"] == 3
                assert entry["level"] == "INFO"
                break

    assert found, "Log entry with structlog context not found in JSONL"


def _read_entries(log_file: Path) -> list[dict[str, object]]:
    with log_file.open() as f:
        return [json.loads(line) for line in f]


def test_target_context_tags_events(tmp_path: Path) -> None:
    """Events inside target_context carry the bound target_id."""
    configure_logging(verbosity=0, log_to_file=True, logs_dir=tmp_path)
    logger = get_logger("test.target")

    with target_context("site-7"):
        logger.info("inside_block")
    logger.info("outside_block")

    close_file_logging()

    entries = {e["message"]: e for e in _read_entries(tmp_path / "debug.jsonl")}
    assert entries["inside_block"]["target_id"] == "site-7"
    assert "target_id" not in entries["outside_block"]


def test_jsonl_handler_writes_plain_stdlib_records(tmp_path: Path) -> None:
    """Records from non-structlog loggers still land in the debug log."""
    configure_logging(verbosity=0, log_to_file=True, logs_dir=tmp_path)

    logging.getLogger("third.party").warning("disk %s is full", "/var")
    close_file_logging()

    entry = _read_entries(tmp_path / "debug.jsonl")[-1]
    assert entry["message"] == "disk /var is full"
    assert entry["level"] == "WARNING"
    assert entry["logger"] == "third.party"
