"""Resource lifecycle states and error context."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field

from pyplug.models._base import PyplugBaseModel


class ResourceState(StrEnum):
    """Lifecycle state of a resource.

    The string values are what gets persisted and what external observers
    receive; they must never change.
    """

    UNKNOWN = "unknown"
    CHECKING = "checking"
    AVAILABLE = "available"
    NOT_PLUGIN = "not_plugin"
    INSTALLED_INACTIVE = "installed_inactive"
    INSTALLED_ACTIVE = "installed_active"
    ERROR = "error"

    @property
    def is_installed(self) -> bool:
        return self in (ResourceState.INSTALLED_INACTIVE, ResourceState.INSTALLED_ACTIVE)

    @property
    def claims_host_reality(self) -> bool:
        """Whether the state asserts something about the host."""
        return self in (
            ResourceState.AVAILABLE,
            ResourceState.INSTALLED_INACTIVE,
            ResourceState.INSTALLED_ACTIVE,
        )


class ErrorContext(PyplugBaseModel):
    """Details stored while a resource sits in :attr:`ResourceState.ERROR`."""

    timestamp: datetime
    message: str = "Unknown error"
    source: str = "unknown"
    recoverable: bool = True
    retry_count: int = Field(default=0, ge=0)
    last_retry_at: datetime | None = None
