"""Structured logging for sitesync.

Everything goes through structlog and ends up on the stdlib root logger, where
two sinks may be attached:

- a Rich console handler on stderr, its level driven by ``-v``;
- a JSONL debug log (``debug.jsonl``) that records every event, enabled by
  ``--log-dir``.

Sync events carry the website they belong to as ``target_id``. Use
:func:`target_context` to bind it once for a block of work instead of passing
it to every call.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from collections.abc import Iterator

    from structlog.typing import Processor

DEBUG_LOG_NAME = "debug.jsonl"

# Console threshold per -v count; anything above the last entry is DEBUG.
_CONSOLE_LEVELS = {0: logging.WARNING, 1: logging.INFO}

# Per-request chatter from the HTTP stack.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")

# structlog fields already represented by the JSONL envelope.
_ENVELOPE_KEYS = ("level", "timestamp")

_configured = False
_file_handler: JSONLFileHandler | None = None
_logs_dir: Path | None = None


class JSONLFileHandler(logging.FileHandler):
    """Appends one JSON object per record.

    structlog hands its event dict over as ``record.msg``; its ``event`` key
    becomes ``message`` and the remaining keys are written alongside it.
    Records from plain stdlib loggers only get their formatted message.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = json.dumps(self.entry(record), default=str)
            if self.stream is None:
                self.stream = self._open()
            self.stream.write(line + "\n")
            self.flush()
        except Exception:
            self.handleError(record)

    @staticmethod
    def entry(record: logging.LogRecord) -> dict[str, Any]:
        """Build the JSON object for one record."""
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        if not isinstance(record.msg, dict):
            entry["message"] = record.getMessage()
            return entry

        fields = {k: v for k, v in record.msg.items() if k not in _ENVELOPE_KEYS}
        entry["message"] = fields.pop("event", "")
        entry.update(fields)
        return entry


def _console_handler(verbosity: int) -> RichHandler:
    return RichHandler(
        console=Console(stderr=True),
        level=_CONSOLE_LEVELS.get(verbosity, logging.DEBUG),
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 2,
        markup=True,
    )


def _open_debug_log(logs_dir: Path) -> JSONLFileHandler:
    logs_dir.mkdir(parents=True, exist_ok=True)
    handler = JSONLFileHandler(logs_dir / DEBUG_LOG_NAME, mode="a", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    logs_dir: Path | None = None,
) -> None:
    """Route structlog output to the console and, optionally, a JSONL file.

    Safe to call more than once; a previously opened debug log is closed first.

    Args:
        verbosity: Console detail. 0 shows warnings, 1 adds info, 2+ adds debug.
        log_to_file: Also write every event to ``logs_dir/debug.jsonl``.
        logs_dir: Directory for the debug log. Created if missing.

    Raises:
        ValueError: If ``log_to_file`` is set without a ``logs_dir``.
    """
    global _configured, _file_handler, _logs_dir

    if log_to_file and logs_dir is None:
        raise ValueError("logs_dir is required when log_to_file=True")

    close_file_logging()
    _logs_dir = None

    handlers: list[logging.Handler] = [_console_handler(verbosity)]
    if log_to_file and logs_dir is not None:
        _file_handler = _open_debug_log(logs_dir)
        _logs_dir = logs_dir
        handlers.append(_file_handler)

    # The root stays open whenever some sink wants debug records; each
    # handler applies its own threshold.
    root_level = logging.DEBUG if verbosity > 0 or log_to_file else logging.WARNING
    logging.basicConfig(level=root_level, format="%(message)s", handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def target_context(target_id: str) -> Iterator[None]:
    """Tag every event logged inside the block with ``target_id``.

    The binding lives in a context variable, so tasks started inside the
    block (including ``asyncio.run``) inherit it.
    """
    with structlog.contextvars.bound_contextvars(target_id=target_id):
        yield


def get_logs_dir() -> Path | None:
    """Directory of the active debug log, or None when file logging is off."""
    return _logs_dir


def close_file_logging() -> None:
    """Flush and close the debug log, if one is open."""
    global _file_handler
    if _file_handler is not None:
        _file_handler.close()
        _file_handler = None
