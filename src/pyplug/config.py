"""Client configuration for pyplug."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any

from pyplug._constants import (
    API_BASE_URL,
    ARCHIVE_BASE_URL,
    AUDIT_CAPACITY,
    DEFAULT_CACHE_TTL,
    DEFAULT_ERROR_CONTEXT_TTL,
    DEFAULT_EVENT_LOG_TTL,
    DEFAULT_LOCK_TTL,
    DEFAULT_STATE_SNAPSHOT_TTL,
    GLOBAL_EVENT_CAPACITY,
    RESOURCE_EVENT_CAPACITY,
    USER_AGENT,
)
from pyplug.exceptions import PyplugConfigError


def _env_tuple(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclasses.dataclass(frozen=True)
class PyplugConfig:
    """Runtime configuration.

    Parameters
    ----------
    plugins_dir : Path
        Directory installed components are unpacked into.
    scratch_dir : Path
        Scratch area for downloaded archives and temporary artifacts.
        Rollback may only delete inside ``plugins_dir`` and ``scratch_dir``.
    api_base_url : str
        Source API base URL used to verify repositories.
    archive_base_url : str
        Base URL for the fallback archive download.
    api_token : str or None
        Optional bearer token sent to the source API.
    user_agent : str
        User-Agent header for every request.
    default_branch : str
        Branch installed when none is given.
    lock_ttl : float
        Processing lock time-to-live in seconds.
    lock_wait_max : float
        Default upper bound for :meth:`ProcessingLockManager.wait_for_lock`.
    lock_poll_interval : float
        Default poll interval for :meth:`ProcessingLockManager.wait_for_lock`.
    state_snapshot_ttl : float
        Lifetime of the persisted state snapshot. ``0`` keeps it forever.
    error_context_ttl : float
        Lifetime of persisted error contexts.
    event_log_ttl : float
        Lifetime of persisted event buffers.
    cache_ttl : float
        Lifetime of processing cache entries.
    global_event_capacity : int
        Ring buffer size of the global broadcast feed.
    resource_event_capacity : int
        Ring buffer size of each per-resource event log.
    download_timeout : float
        Total timeout for a single HTTP request in seconds.
    min_free_disk_mb : int
        Free space required in ``plugins_dir`` for preflight to pass.
    entry_point_globs : tuple of str
        File patterns considered as entry point candidates.
    entry_point_header : str
        Marker an entry point must contain near its top.
    protected_patterns : tuple of str
        Case-insensitive substrings of resource keys that must never be
        deactivated.
    audit_capacity : int
        Number of audit entries kept.
    """

    plugins_dir: Path = Path("plugins")
    scratch_dir: Path = Path("upgrade")
    api_base_url: str = API_BASE_URL
    archive_base_url: str = ARCHIVE_BASE_URL
    api_token: str | None = None
    user_agent: str = USER_AGENT
    default_branch: str = "main"
    lock_ttl: float = DEFAULT_LOCK_TTL
    lock_wait_max: float = 30.0
    lock_poll_interval: float = 0.5
    state_snapshot_ttl: float = DEFAULT_STATE_SNAPSHOT_TTL
    error_context_ttl: float = DEFAULT_ERROR_CONTEXT_TTL
    event_log_ttl: float = DEFAULT_EVENT_LOG_TTL
    cache_ttl: float = DEFAULT_CACHE_TTL
    global_event_capacity: int = GLOBAL_EVENT_CAPACITY
    resource_event_capacity: int = RESOURCE_EVENT_CAPACITY
    download_timeout: float = 30.0
    min_free_disk_mb: int = 50
    entry_point_globs: tuple[str, ...] = ("*.php",)
    entry_point_header: str = "Plugin Name:"
    protected_patterns: tuple[str, ...] = ()
    audit_capacity: int = AUDIT_CAPACITY

    def __post_init__(self) -> None:
        # Accept plain strings for the directories.
        object.__setattr__(self, "plugins_dir", Path(self.plugins_dir))
        object.__setattr__(self, "scratch_dir", Path(self.scratch_dir))
        if self.lock_ttl <= 0:
            raise PyplugConfigError(f"lock_ttl must be positive, got {self.lock_ttl}")
        if self.lock_poll_interval <= 0:
            raise PyplugConfigError(f"lock_poll_interval must be positive, got {self.lock_poll_interval}")
        if self.global_event_capacity < 1 or self.resource_event_capacity < 1:
            raise PyplugConfigError("event capacities must be at least 1")
        if not self.entry_point_globs:
            raise PyplugConfigError("entry_point_globs must not be empty")
        if not self.api_base_url.startswith("https://") or not self.archive_base_url.startswith("https://"):
            raise PyplugConfigError("source URLs must use HTTPS")

    @classmethod
    def from_env(cls, **overrides: Any) -> PyplugConfig:
        """Create configuration from environment variables.

        Reads ``PYPLUG_*`` variables. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        PyplugConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "PYPLUG_PLUGINS_DIR": "plugins_dir",
            "PYPLUG_SCRATCH_DIR": "scratch_dir",
            "PYPLUG_API_BASE_URL": "api_base_url",
            "PYPLUG_ARCHIVE_BASE_URL": "archive_base_url",
            "PYPLUG_API_TOKEN": "api_token",
            "PYPLUG_USER_AGENT": "user_agent",
            "PYPLUG_DEFAULT_BRANCH": "default_branch",
            "PYPLUG_ENTRY_POINT_HEADER": "entry_point_header",
        }
        _ENV_FLOAT_MAP = {
            "PYPLUG_LOCK_TTL": "lock_ttl",
            "PYPLUG_LOCK_WAIT_MAX": "lock_wait_max",
            "PYPLUG_LOCK_POLL_INTERVAL": "lock_poll_interval",
            "PYPLUG_STATE_SNAPSHOT_TTL": "state_snapshot_ttl",
            "PYPLUG_DOWNLOAD_TIMEOUT": "download_timeout",
        }
        _ENV_INT_MAP = {
            "PYPLUG_MIN_FREE_DISK_MB": "min_free_disk_mb",
            "PYPLUG_GLOBAL_EVENT_CAPACITY": "global_event_capacity",
            "PYPLUG_RESOURCE_EVENT_CAPACITY": "resource_event_capacity",
        }
        _ENV_TUPLE_MAP = {
            "PYPLUG_ENTRY_POINT_GLOBS": "entry_point_globs",
            "PYPLUG_PROTECTED_PATTERNS": "protected_patterns",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise PyplugConfigError(f"{env_key} must be a number, got {val!r}") from exc

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = int(val)
                except ValueError as exc:
                    raise PyplugConfigError(f"{env_key} must be an integer, got {val!r}") from exc

        for env_key, field_name in _ENV_TUPLE_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_tuple(val)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
