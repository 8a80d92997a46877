"""Data models shared across pyplug."""

from pyplug.models.cache import CacheEntry
from pyplug.models.events import Event, EventType
from pyplug.models.host import HostStatus
from pyplug.models.lock import LockRecord
from pyplug.models.pipeline import (
    ActivationResult,
    BatchItem,
    BatchItemResult,
    InstallResult,
    PipelineStep,
    ProgressUpdate,
    StepStatus,
)
from pyplug.models.repository import RepositoryInfo
from pyplug.models.state import ErrorContext, ResourceState

__all__ = [
    "ActivationResult",
    "BatchItem",
    "BatchItemResult",
    "CacheEntry",
    "ErrorContext",
    "Event",
    "EventType",
    "HostStatus",
    "InstallResult",
    "LockRecord",
    "PipelineStep",
    "ProgressUpdate",
    "RepositoryInfo",
    "ResourceState",
    "StepStatus",
]
