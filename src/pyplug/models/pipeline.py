"""Installation pipeline steps and results."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field

from pyplug.models._base import PyplugBaseModel
from pyplug.models.state import ResourceState


class PipelineStep(StrEnum):
    VERIFY = "verify"
    PREFLIGHT = "preflight"
    ACQUIRE_LOCK = "acquire_lock"
    DOWNLOAD = "download"
    EXTRACT = "extract"
    LOCATE_ENTRY_POINT = "locate_entry_point"
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    RELEASE_LOCK = "release_lock"
    ROLLBACK = "rollback"
    DONE = "done"


class StepStatus(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ProgressUpdate(PyplugBaseModel):
    resource: str
    step: PipelineStep
    status: StepStatus
    message: str


class InstallResult(PyplugBaseModel):
    """Outcome of a successful install (activation may still have failed)."""

    resource: str
    branch: str
    entry_point: str
    install_dir: str
    download_url: str
    state: ResourceState
    activated: bool = False
    activation_error: str | None = None
    messages: list[str] = Field(default_factory=list)


class ActivationResult(PyplugBaseModel):
    resource: str
    entry_point: str
    state: ResourceState
    message: str


class BatchItem(PyplugBaseModel):
    owner: str
    repo: str
    branch: str | None = None


class BatchItemResult(PyplugBaseModel):
    resource: str
    success: bool
    result: InstallResult | None = None
    error: dict[str, Any] | None = None
