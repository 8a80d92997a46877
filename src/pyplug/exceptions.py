"""Custom exception hierarchy for pyplug."""

from __future__ import annotations

from typing import Any


class PyplugError(Exception):
    """Base exception for all pyplug errors."""

    kind: str = "error"
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        *,
        resource: str = "",
        step: str = "",
        recoverable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.resource = resource
        self.step = step
        if recoverable is not None:
            self.recoverable = recoverable
        self.details: dict[str, Any] = dict(details or {})
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Structured form handed to upstream request handlers."""
        return {
            "kind": self.kind,
            "message": self.message,
            "resource": self.resource,
            "step": self.step,
            "recoverable": self.recoverable,
            "details": dict(self.details),
        }


class PyplugConfigError(PyplugError):
    """Invalid or missing configuration."""

    kind = "config"


class PyplugTransportError(PyplugError):
    """HTTP-level failure (network, unexpected status, invalid JSON)."""

    kind = "transport"
    recoverable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str = "",
    ) -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(message, details={"status_code": status_code, "url": url})


class InvalidTransitionError(PyplugError):
    """A state transition that is not in the allowed-transition table.

    The state store logs and ignores these; only
    :meth:`TransitionValidator.validate` raises it.
    """

    kind = "invalid_transition"


class LockContentionError(PyplugError):
    """Another holder owns the processing lock for the resource."""

    kind = "lock_contention"
    recoverable = True


class UnsafePathError(PyplugError):
    """Refused to delete a path outside the permitted roots."""

    kind = "unsafe_path"


class PipelineError(PyplugError):
    """Base for install / activate / deactivate failures."""

    kind = "pipeline"


class VerificationError(PipelineError):
    """Resource key is invalid or the source does not have the resource."""

    kind = "verification_failed"


class AlreadyInstalledError(VerificationError):
    """Resource is already installed on the host."""

    kind = "already_installed"


class PreflightError(PipelineError):
    """Environment cannot host an installation (not writable, no unzip)."""

    kind = "preflight_failed"

    def __init__(self, message: str, *, issues: list[str], resource: str = "") -> None:
        self.issues = list(issues)
        super().__init__(message, resource=resource, step="preflight", details={"issues": self.issues})


class DownloadError(PipelineError):
    """Archive could not be fetched. The install has been rolled back."""

    kind = "download_failed"
    recoverable = True


class ExtractError(PipelineError):
    """Archive could not be unpacked. The install has been rolled back."""

    kind = "extract_failed"
    recoverable = True


class EntryPointNotFoundError(PipelineError):
    """Unpacked tree has no entry point.

    Signals a corrupted or non-conforming package. The install has been
    rolled back.
    """

    kind = "entry_point_not_found"
    recoverable = True


class ActivationError(PipelineError):
    """Host refused to activate the component.

    Never rolls back an install: the component stays installed and inactive.
    """

    kind = "activation_failed"
    recoverable = True


class NotInstalledError(PipelineError):
    """Operation needs an installed component but none was found."""

    kind = "not_installed"


class AlreadyActiveError(PipelineError):
    """Component is already active."""

    kind = "already_active"


class NotActiveError(PipelineError):
    """Component is not active."""

    kind = "not_active"


class ProtectedResourceError(PipelineError):
    """Resource is protected against deactivation."""

    kind = "protected"
