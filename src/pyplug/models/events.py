"""Diagnostic and live-update events."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import Field

from pyplug.models._base import PyplugBaseModel


class EventType(StrEnum):
    TRANSITION = "transition"
    TRANSITION_BLOCKED = "transition_blocked"
    STATE_CHANGED = "state_changed"
    ERROR_OCCURRED = "error_occurred"
    ERROR_RECOVERED = "error_recovered"
    RECONCILED = "reconciled"
    DETECTION = "detection"
    DETECTION_ERROR = "detection_error"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_CONTENTION = "lock_contention"
    LOCK_EXPIRED_CLEANUP = "lock_expired_cleanup"
    LOCK_ACQUISITION_FAILED = "lock_acquisition_failed"
    LOCK_RELEASED = "lock_released"
    LOCK_RELEASE_DENIED = "lock_release_denied"
    LOCK_ACQUIRED_AFTER_WAIT = "lock_acquired_after_wait"
    LOCK_WAIT_TIMEOUT = "lock_wait_timeout"
    CACHE_INVALIDATED = "cache_invalidated"
    INSTALL_PROGRESS = "install_progress"
    ROLLBACK = "rollback"


class Event(PyplugBaseModel):
    """One entry of a ring buffer.

    Serialised as ``{id, event_type, resource, payload, timestamp}``.
    """

    id: int = Field(ge=1)
    event_type: str
    resource: str = "unknown"
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
