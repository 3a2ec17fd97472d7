"""Sync engine configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any

from ruamel.yaml import YAML

# Default configuration values
DEFAULT_API_URL = "http://localhost:3000/api"
DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 2.0
DEFAULT_RETRY_MAX_DELAY = 6.0
DEFAULT_SAVED_DISPLAY_SECONDS = 2.0
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_MAX_BATCH_SIZE = 50

# Environment variable → (field name, converter)
_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "SITESYNC_API_URL": ("api_url", str),
    "SITESYNC_DEBOUNCE_SECONDS": ("debounce_seconds", float),
    "SITESYNC_MAX_RETRIES": ("max_retries", int),
    "SITESYNC_HISTORY_LIMIT": ("history_limit", int),
    "SITESYNC_REQUEST_TIMEOUT": ("request_timeout", float),
}


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""

    def __init__(self, path: Path | None, reason: str) -> None:
        self.path = path
        self.reason = reason
        where = f" at {path}" if path is not None else ""
        super().__init__(f"Failed to load sync config{where}: {reason}")


@dataclass(frozen=True)
class SyncConfig:
    """Settings for one editing session.

    Attributes:
        api_url: Base URL of the sitemap API (``/save`` and ``/sitemap/{target_id}``).
        debounce_seconds: Quiet period before pending operations are sent.
        max_retries: Automatic retries after a failed save.
        retry_base_delay: First retry delay; doubles per attempt.
        retry_max_delay: Upper bound for the retry delay.
        saved_display_seconds: How long ``saved`` shows before returning to ``idle``.
        history_limit: Maximum undo/redo entries.
        request_timeout: Per-request HTTP timeout.
        max_batch_size: Operations per save request; larger queues are split.
        persist_history_restores: Whether undo/redo enqueue a save of the restored state.
    """

    api_url: str = DEFAULT_API_URL
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY
    saved_display_seconds: float = DEFAULT_SAVED_DISPLAY_SECONDS
    history_limit: int = DEFAULT_HISTORY_LIMIT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    persist_history_restores: bool = True

    def __post_init__(self) -> None:
        problems: list[str] = []
        for name in (
            "debounce_seconds",
            "retry_base_delay",
            "retry_max_delay",
            "saved_display_seconds",
        ):
            if getattr(self, name) < 0:
                problems.append(f"{name} must not be negative")
        if self.max_retries < 0:
            problems.append("max_retries must not be negative")
        if self.history_limit < 1:
            problems.append("history_limit must be at least 1")
        if self.max_batch_size < 1:
            problems.append("max_batch_size must be at least 1")
        if self.request_timeout <= 0:
            problems.append("request_timeout must be positive")
        if problems:
            raise ConfigError(None, "; ".join(problems))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create config from dictionary. Unknown keys are ignored.

        Args:
            data: Dictionary containing config fields; may be nested under ``sync``.

        Returns:
            SyncConfig instance.
        """
        section = data.get("sync", data)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in dict(section).items() if k in known})

    def with_env_overrides(self, environ: dict[str, str] | None = None) -> SyncConfig:
        """Apply ``SITESYNC_*`` environment variables on top of this config."""
        environ = dict(os.environ) if environ is None else environ
        updates: dict[str, Any] = {}
        for var, (name, convert) in _ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                updates[name] = convert(raw)
            except ValueError as e:
                raise ConfigError(None, f"{var}={raw!r} is not a valid {convert.__name__}") from e
        return replace(self, **updates) if updates else self


def load_config(path: Path | None = None) -> SyncConfig:
    """Load sync configuration.

    Reads *path* (YAML) when given, then applies environment overrides.

    Args:
        path: Optional YAML config file.

    Returns:
        SyncConfig instance.

    Raises:
        ConfigError: If the file is missing, empty, malformed or invalid.
    """
    if path is None:
        return SyncConfig().with_env_overrides()

    if not path.exists():
        raise ConfigError(path, "File not found")

    yaml = YAML(typ="safe")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            raise ConfigError(path, "Empty file")
        if not isinstance(data, dict):
            raise ConfigError(path, "Top level must be a mapping")

        return SyncConfig.from_dict(data).with_env_overrides()
    except ConfigError as e:
        if e.path is None:
            raise ConfigError(path, e.reason) from e
        raise
    except Exception as e:
        raise ConfigError(path, str(e)) from e
