"""pyplug - Lifecycle tracking and safe installation of externally sourced components."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyplug")
except PackageNotFoundError:
    __version__ = "0+local"
from pyplug._cache import ProcessingCache
from pyplug._kv import KeyValueBackend, MemoryBackend, SqliteBackend
from pyplug.audit import AuditTrail
from pyplug.broadcast import EventBroadcaster
from pyplug.client import PyplugClient
from pyplug.config import PyplugConfig
from pyplug.exceptions import (
    ActivationError,
    AlreadyActiveError,
    AlreadyInstalledError,
    DownloadError,
    EntryPointNotFoundError,
    ExtractError,
    InvalidTransitionError,
    LockContentionError,
    NotActiveError,
    NotInstalledError,
    PipelineError,
    PreflightError,
    ProtectedResourceError,
    PyplugConfigError,
    PyplugError,
    PyplugTransportError,
    UnsafePathError,
    VerificationError,
)
from pyplug.host import FilesystemHost, HostController, HostInspector
from pyplug.installer import InstallationPipeline
from pyplug.locks import ProcessingLockManager
from pyplug.models import (
    ActivationResult,
    BatchItem,
    BatchItemResult,
    CacheEntry,
    ErrorContext,
    Event,
    EventType,
    HostStatus,
    InstallResult,
    LockRecord,
    PipelineStep,
    ProgressUpdate,
    RepositoryInfo,
    ResourceState,
    StepStatus,
)
from pyplug.sources import Detector, GitHubSource, SourceInspector
from pyplug.state.reconcile import Reconciler
from pyplug.state.store import StateStore
from pyplug.state.transitions import ALLOWED_TRANSITIONS, TransitionValidator, export_state_schema

__all__ = [
    "__version__",
    "ALLOWED_TRANSITIONS",
    "ActivationError",
    "ActivationResult",
    "AlreadyActiveError",
    "AlreadyInstalledError",
    "AuditTrail",
    "BatchItem",
    "BatchItemResult",
    "CacheEntry",
    "Detector",
    "DownloadError",
    "EntryPointNotFoundError",
    "ErrorContext",
    "Event",
    "EventBroadcaster",
    "EventType",
    "ExtractError",
    "FilesystemHost",
    "GitHubSource",
    "HostController",
    "HostInspector",
    "HostStatus",
    "InstallResult",
    "InstallationPipeline",
    "InvalidTransitionError",
    "KeyValueBackend",
    "LockContentionError",
    "LockRecord",
    "MemoryBackend",
    "NotActiveError",
    "NotInstalledError",
    "PipelineError",
    "PipelineStep",
    "PreflightError",
    "ProcessingCache",
    "ProcessingLockManager",
    "ProgressUpdate",
    "ProtectedResourceError",
    "PyplugClient",
    "PyplugConfig",
    "PyplugConfigError",
    "PyplugError",
    "PyplugTransportError",
    "Reconciler",
    "RepositoryInfo",
    "ResourceState",
    "SourceInspector",
    "SqliteBackend",
    "StateStore",
    "StepStatus",
    "TransitionValidator",
    "UnsafePathError",
    "VerificationError",
    "export_state_schema",
]
