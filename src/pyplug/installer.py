"""Installation pipeline.

``install`` runs ``verify -> preflight -> acquire_lock -> download ->
extract -> locate_entry_point -> [activate] -> release_lock``. A failure
in download, extract or locate_entry_point triggers :meth:`rollback`,
which removes every artifact of the attempt and restores the state the
resource had before, so a retry starts from a clean slate. The processing
lock is released on every exit path.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import zipfile
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from pyplug._cache import ProcessingCache
from pyplug._constants import TEMP_ARTIFACT_PATTERN
from pyplug._fs import locate_entry_point, safe_extract_zip, safe_rmtree, zip_supported
from pyplug._transport import Transport
from pyplug.audit import AuditTrail
from pyplug.broadcast import EventBroadcaster
from pyplug.config import PyplugConfig
from pyplug.exceptions import (
    ActivationError,
    AlreadyActiveError,
    AlreadyInstalledError,
    DownloadError,
    EntryPointNotFoundError,
    ExtractError,
    LockContentionError,
    NotActiveError,
    NotInstalledError,
    PipelineError,
    PreflightError,
    ProtectedResourceError,
    PyplugError,
    PyplugTransportError,
    UnsafePathError,
    VerificationError,
)
from pyplug.host import HostController
from pyplug.locks import ProcessingLockManager
from pyplug.models.events import EventType
from pyplug.models.pipeline import (
    ActivationResult,
    BatchItem,
    BatchItemResult,
    InstallResult,
    PipelineStep,
    ProgressUpdate,
    StepStatus,
)
from pyplug.models.state import ResourceState
from pyplug.sources import SourceInspector, validate_identifier
from pyplug.state.store import StateStore

_logger = logging.getLogger(__name__)

_TEMP_ARTIFACT_RE = re.compile(TEMP_ARTIFACT_PATTERN)

ProgressCallback = Callable[[ProgressUpdate], None]
DiskUsage = Callable[[Path], Any]


def _branch_slug(branch: str) -> str:
    return branch.replace("/", "-")


def _unexpected_failure(exc: Exception, resource: str, step: PipelineStep) -> PipelineError:
    _logger.error("Unexpected failure during %s of %s", step.value, resource, exc_info=exc)
    return PipelineError(
        f"unexpected failure during {step.value}: {exc}",
        resource=resource,
        step=step.value,
        recoverable=True,
        details={"exception": type(exc).__name__},
    )


class InstallationPipeline:
    """Installs, activates and deactivates components.

    Parameters
    ----------
    config : PyplugConfig
        Directories, lock TTL, entry point rules and disk requirements.
    store : StateStore
        Receives every state change.
    locks : ProcessingLockManager
        Serialises mutating operations per resource.
    host : HostController
        Probed for presence and asked to activate/deactivate.
    source : SourceInspector
        Verifies repositories and resolves archive URLs.
    transport : Transport
        Downloads archives.
    events, cache, audit : optional
        Progress broadcasting, cache invalidation and the audit trail.
    progress_callback : callable, optional
        Called with every :class:`ProgressUpdate`; exceptions it raises are
        logged and ignored.
    """

    def __init__(
        self,
        config: PyplugConfig,
        *,
        store: StateStore,
        locks: ProcessingLockManager,
        host: HostController,
        source: SourceInspector,
        transport: Transport,
        events: EventBroadcaster | None = None,
        cache: ProcessingCache | None = None,
        audit: AuditTrail | None = None,
        progress_callback: ProgressCallback | None = None,
        disk_usage: DiskUsage = shutil.disk_usage,
    ) -> None:
        self._config = config
        self._store = store
        self._locks = locks
        self._host = host
        self._source = source
        self._transport = transport
        self._events = events
        self._cache = cache
        self._audit = audit
        self._progress_callback = progress_callback
        self._disk_usage = disk_usage

    @property
    def allowed_roots(self) -> tuple[Path, Path]:
        return (self._config.plugins_dir, self._config.scratch_dir)

    def install_dir(self, repo: str, branch: str) -> Path:
        """Directory an install of *repo* at *branch* unpacks into."""
        return self._config.plugins_dir / f"{repo}-{_branch_slug(branch)}"

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _progress(
        self,
        resource: str,
        step: PipelineStep,
        status: StepStatus,
        message: str,
        messages: list[str] | None = None,
    ) -> None:
        update = ProgressUpdate(resource=resource, step=step, status=status, message=message)
        if messages is not None:
            messages.append(message)
        if self._events is not None:
            self._events.broadcast(EventType.INSTALL_PROGRESS, update.model_dump(mode="json"))
        if self._progress_callback is not None:
            try:
                self._progress_callback(update)
            except Exception:
                _logger.debug("Progress callback failed", exc_info=True)
        log = _logger.warning if status in (StepStatus.WARNING, StepStatus.ERROR) else _logger.debug
        log("[%s] %s: %s", resource, step.value, message)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _verify(self, owner: str, repo: str, branch: str | None) -> tuple[str, ResourceState]:
        resource = f"{owner}/{repo}"
        validate_identifier(owner, repo, branch)
        info = await self._source.get_repository(owner, repo)
        if info.archived:
            _logger.info("%s is archived; installing anyway", resource)
        resolved = branch or info.default_branch or self._config.default_branch
        validate_identifier(owner, repo, resolved)

        current = self._store.get(resource)
        if current.is_installed:
            raise AlreadyInstalledError(
                f"{resource} is already installed", resource=resource, step=PipelineStep.VERIFY.value
            )
        if current is ResourceState.CHECKING:
            raise VerificationError(
                f"{resource} is currently being checked", resource=resource, step=PipelineStep.VERIFY.value
            )
        return resolved, current

    def _preflight(self, resource: str, install_dir: Path) -> None:
        issues: list[str] = []
        plugins_dir = self._config.plugins_dir
        scratch_dir = self._config.scratch_dir

        if not plugins_dir.is_dir():
            issues.append(f"plugins directory {plugins_dir} does not exist")
        elif not os.access(plugins_dir, os.W_OK):
            issues.append(f"plugins directory {plugins_dir} is not writable")

        try:
            scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            issues.append(f"scratch directory {scratch_dir} cannot be created: {exc}")
        else:
            if not os.access(scratch_dir, os.W_OK):
                issues.append(f"scratch directory {scratch_dir} is not writable")

        if not zip_supported():
            issues.append("zip archives cannot be unpacked on this system")

        if plugins_dir.is_dir():
            required = self._config.min_free_disk_mb * 1024 * 1024
            try:
                free = self._disk_usage(plugins_dir).free
            except OSError as exc:
                issues.append(f"cannot determine free disk space: {exc}")
            else:
                if free < required:
                    issues.append(
                        f"insufficient disk space: {free // (1024 * 1024)}MB free, "
                        f"{self._config.min_free_disk_mb}MB required"
                    )

        if install_dir.exists():
            issues.append(f"destination {install_dir} already exists")

        if issues:
            raise PreflightError("; ".join(issues), issues=issues, resource=resource)

    async def _download(self, owner: str, repo: str, branch: str, messages: list[str]) -> tuple[str, Path]:
        resource = f"{owner}/{repo}"
        step = PipelineStep.DOWNLOAD.value
        try:
            url = await self._source.resolve_download_url(owner, repo, branch)
        except (VerificationError, PyplugTransportError) as exc:
            raise DownloadError(f"could not resolve download URL: {exc.message}", resource=resource, step=step) from exc
        if not url.startswith("https://"):
            raise DownloadError(f"refusing non-HTTPS download URL {url}", resource=resource, step=step)

        self._progress(resource, PipelineStep.DOWNLOAD, StepStatus.INFO, f"Downloading {url}", messages)
        try:
            data = await self._transport.download(url)
        except PyplugTransportError as exc:
            raise DownloadError(
                f"download failed: {exc.message}", resource=resource, step=step, details={"url": url}
            ) from exc
        if not data:
            raise DownloadError("downloaded archive is empty", resource=resource, step=step, details={"url": url})

        archive_path = self._config.scratch_dir / f"{repo}-{_branch_slug(branch)}.zip"
        try:
            archive_path.write_bytes(data)
        except OSError as exc:
            raise DownloadError(f"cannot write archive: {exc}", resource=resource, step=step) from exc
        self._progress(resource, PipelineStep.DOWNLOAD, StepStatus.SUCCESS, f"Downloaded {len(data)} bytes", messages)
        return url, archive_path

    def _extract(self, resource: str, archive_path: Path, install_dir: Path, messages: list[str]) -> None:
        self._progress(resource, PipelineStep.EXTRACT, StepStatus.INFO, f"Extracting to {install_dir.name}", messages)
        try:
            extracted = safe_extract_zip(archive_path, install_dir)
        # RuntimeError covers encrypted and unsupported-compression members.
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError, RuntimeError, EOFError) as exc:
            raise ExtractError(f"cannot unpack archive: {exc}", resource=resource, step=PipelineStep.EXTRACT.value) from exc
        if not extracted:
            raise ExtractError("archive contains no files", resource=resource, step=PipelineStep.EXTRACT.value)
        safe_rmtree(archive_path, self.allowed_roots)
        self._progress(resource, PipelineStep.EXTRACT, StepStatus.SUCCESS, f"Extracted {len(extracted)} files", messages)

    def _locate(self, resource: str, install_dir: Path, messages: list[str]) -> str:
        entry = locate_entry_point(install_dir, self._config.entry_point_globs, self._config.entry_point_header)
        if entry is None:
            raise EntryPointNotFoundError(
                f"no entry point with header {self._config.entry_point_header!r} in {install_dir.name}",
                resource=resource,
                step=PipelineStep.LOCATE_ENTRY_POINT.value,
            )
        entry_point = entry.relative_to(self._config.plugins_dir).as_posix()
        self._progress(resource, PipelineStep.LOCATE_ENTRY_POINT, StepStatus.SUCCESS, f"Found {entry_point}", messages)
        return entry_point

    def _set_state(self, resource: str, target: ResourceState, context: dict[str, Any]) -> ResourceState:
        # A refused move means the stored state drifted; re-derive it.
        if not self._store.transition(resource, target, context):
            return self._store.refresh(resource)
        return target

    def _activate_entry(self, resource: str, entry_point: str, messages: list[str] | None = None) -> ResourceState:
        self._progress(resource, PipelineStep.ACTIVATE, StepStatus.INFO, f"Activating {entry_point}", messages)
        try:
            self._host.activate(entry_point)
        except ActivationError as exc:
            exc.resource = exc.resource or resource
            exc.step = PipelineStep.ACTIVATE.value
            raise
        except OSError as exc:
            raise ActivationError(
                f"activation of {entry_point} failed: {exc}", resource=resource, step=PipelineStep.ACTIVATE.value
            ) from exc
        state = self._set_state(resource, ResourceState.INSTALLED_ACTIVE, {"reason": "activated", "entry_point": entry_point})
        if self._cache is not None:
            self._cache.invalidate(resource)
        self._progress(resource, PipelineStep.ACTIVATE, StepStatus.SUCCESS, f"Activated {entry_point}", messages)
        return state

    def _acquire(self, resource: str) -> None:
        if not self._locks.acquire(resource, self._config.lock_ttl):
            holder = self._locks.is_locked(resource)
            raise LockContentionError(
                f"{resource} is being processed by another request",
                resource=resource,
                step=PipelineStep.ACQUIRE_LOCK.value,
                details={"held_by": holder.holder_id if holder else None},
            )

    def _release(self, resource: str, messages: list[str] | None = None) -> None:
        self._locks.release(resource)
        self._progress(resource, PipelineStep.RELEASE_LOCK, StepStatus.INFO, "Lock released", messages)

    def _record(self, kind: str, resource: str, success: bool, details: dict[str, Any]) -> None:
        if self._audit is None:
            return
        if kind == "install":
            self._audit.record_install(resource, success, details)
        elif kind == "activate":
            self._audit.record_activate(resource, success, details)
        else:
            self._audit.record_deactivate(resource, success, details)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _purge_scratch(self, repo: str) -> bool:
        scratch_dir = self._config.scratch_dir
        if not scratch_dir.is_dir():
            return False
        cleaned = False
        needle = repo.lower()
        for candidate in sorted(scratch_dir.iterdir()):
            name = candidate.name
            if needle not in name.lower() and not _TEMP_ARTIFACT_RE.match(name):
                continue
            try:
                cleaned = safe_rmtree(candidate, self.allowed_roots) or cleaned
            except (UnsafePathError, OSError):
                _logger.error("Rollback could not remove %s", candidate, exc_info=True)
        return cleaned

    def rollback(
        self,
        owner: str,
        repo: str,
        branch: str | None = None,
        restore_state: ResourceState | None = None,
    ) -> bool:
        """Remove the artifacts of a failed install and restore the state.

        Returns whether anything was deleted. ``checking`` is never restored;
        it becomes ``available``.
        """
        resource = f"{owner}/{repo}"
        install_dir = self.install_dir(repo, branch or self._config.default_branch)
        self._progress(resource, PipelineStep.ROLLBACK, StepStatus.WARNING, "Rolling back installation")

        cleaned = False
        try:
            cleaned = safe_rmtree(install_dir, self.allowed_roots)
        except (UnsafePathError, OSError):
            _logger.error("Rollback could not remove %s", install_dir, exc_info=True)
        cleaned = self._purge_scratch(repo) or cleaned

        if restore_state is not None:
            target = ResourceState.AVAILABLE if restore_state is ResourceState.CHECKING else restore_state
            self._store.transition(resource, target, {"reason": "rollback"}, force=True)
        if self._cache is not None:
            self._cache.invalidate(resource)
        if self._events is not None:
            self._events.log_event(resource, EventType.ROLLBACK, {"install_dir": str(install_dir), "cleaned": cleaned})
        _logger.error("Rolled back installation of %s (cleaned=%s)", resource, cleaned)
        return cleaned

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def install(
        self,
        owner: str,
        repo: str,
        branch: str | None = None,
        activate: bool = False,
    ) -> InstallResult:
        """Install ``owner/repo`` and optionally activate it.

        Raises a :class:`PipelineError` subclass when the install fails.
        Activation failures do not: they are reported on the result.
        """
        resource = f"{owner}/{repo}"
        messages: list[str] = []
        self._progress(resource, PipelineStep.VERIFY, StepStatus.INFO, "Verifying repository", messages)
        try:
            resolved_branch, pre_state = await self._verify(owner, repo, branch)
        except VerificationError as exc:
            self._progress(resource, PipelineStep.VERIFY, StepStatus.ERROR, exc.message)
            raise

        install_dir = self.install_dir(repo, resolved_branch)
        self._progress(resource, PipelineStep.PREFLIGHT, StepStatus.INFO, "Checking environment", messages)
        try:
            self._preflight(resource, install_dir)
        except PreflightError as exc:
            self._progress(resource, PipelineStep.PREFLIGHT, StepStatus.ERROR, exc.message)
            self._record("install", resource, False, exc.to_dict())
            raise

        self._acquire(resource)
        self._progress(resource, PipelineStep.ACQUIRE_LOCK, StepStatus.SUCCESS, "Lock acquired", messages)
        try:
            step = PipelineStep.DOWNLOAD
            try:
                url, archive_path = await self._download(owner, repo, resolved_branch, messages)
                step = PipelineStep.EXTRACT
                self._extract(resource, archive_path, install_dir, messages)
                step = PipelineStep.LOCATE_ENTRY_POINT
                entry_point = self._locate(resource, install_dir, messages)
            except Exception as exc:
                error = exc if isinstance(exc, PipelineError) else _unexpected_failure(exc, resource, step)
                self._progress(resource, step, StepStatus.ERROR, error.message)
                error.details["rolled_back"] = self.rollback(owner, repo, resolved_branch, restore_state=pre_state)
                self._record("install", resource, False, error.to_dict())
                if error is exc:
                    raise
                raise error from exc

            state = self._set_state(
                resource,
                ResourceState.INSTALLED_INACTIVE,
                {"reason": "installed", "branch": resolved_branch, "entry_point": entry_point},
            )
            if self._cache is not None:
                self._cache.invalidate(resource)
            self._record("install", resource, True, {"branch": resolved_branch, "entry_point": entry_point})

            activated = False
            activation_error: str | None = None
            if activate:
                try:
                    state = self._activate_entry(resource, entry_point, messages)
                    activated = True
                    self._record("activate", resource, True, {"entry_point": entry_point})
                except ActivationError as exc:
                    activation_error = exc.message
                    self._progress(resource, PipelineStep.ACTIVATE, StepStatus.ERROR, exc.message, messages)
                    self._record("activate", resource, False, exc.to_dict())
        finally:
            self._release(resource, messages)

        self._progress(resource, PipelineStep.DONE, StepStatus.SUCCESS, f"Installed {resource}", messages)
        return InstallResult(
            resource=resource,
            branch=resolved_branch,
            entry_point=entry_point,
            install_dir=str(install_dir),
            download_url=url,
            state=state,
            activated=activated,
            activation_error=activation_error,
            messages=messages,
        )

    async def install_and_activate(self, owner: str, repo: str, branch: str | None = None) -> InstallResult:
        return await self.install(owner, repo, branch, activate=True)

    async def activate(self, resource: str) -> ActivationResult:
        """Activate an installed component."""
        self._acquire(resource)
        try:
            status = self._host.probe(resource)
            if not status.present or status.entry_point is None:
                raise NotInstalledError(f"{resource} is not installed", resource=resource, step=PipelineStep.ACTIVATE.value)
            if status.active:
                raise AlreadyActiveError(f"{resource} is already active", resource=resource, step=PipelineStep.ACTIVATE.value)
            try:
                state = self._activate_entry(resource, status.entry_point)
            except ActivationError as exc:
                self._record("activate", resource, False, exc.to_dict())
                raise
            self._record("activate", resource, True, {"entry_point": status.entry_point})
        finally:
            self._release(resource)
        return ActivationResult(
            resource=resource,
            entry_point=status.entry_point,
            state=state,
            message=f"{resource} activated",
        )

    async def deactivate(self, resource: str) -> ActivationResult:
        """Deactivate an active component. Protected resources are refused."""
        if self._store.is_protected(resource):
            raise ProtectedResourceError(
                f"{resource} is protected and cannot be deactivated",
                resource=resource,
                step=PipelineStep.DEACTIVATE.value,
            )
        self._acquire(resource)
        try:
            status = self._host.probe(resource)
            if not status.present or status.entry_point is None:
                raise NotInstalledError(f"{resource} is not installed", resource=resource, step=PipelineStep.DEACTIVATE.value)
            if not status.active:
                raise NotActiveError(f"{resource} is not active", resource=resource, step=PipelineStep.DEACTIVATE.value)
            self._progress(resource, PipelineStep.DEACTIVATE, StepStatus.INFO, f"Deactivating {status.entry_point}")
            self._host.deactivate(status.entry_point)
            state = self._set_state(
                resource,
                ResourceState.INSTALLED_INACTIVE,
                {"reason": "deactivated", "entry_point": status.entry_point},
            )
            if self._cache is not None:
                self._cache.invalidate(resource)
            self._record("deactivate", resource, True, {"entry_point": status.entry_point})
            self._progress(resource, PipelineStep.DEACTIVATE, StepStatus.SUCCESS, f"Deactivated {status.entry_point}")
        finally:
            self._release(resource)
        return ActivationResult(
            resource=resource,
            entry_point=status.entry_point,
            state=state,
            message=f"{resource} deactivated",
        )

    async def batch_install(self, items: Iterable[BatchItem], activate: bool = False) -> list[BatchItemResult]:
        """Install several resources one after another; failures are per item."""
        results: list[BatchItemResult] = []
        for item in items:
            resource = f"{item.owner}/{item.repo}"
            try:
                result = await self.install(item.owner, item.repo, item.branch, activate=activate)
            except PyplugError as exc:
                _logger.info("Batch install of %s failed: %s", resource, exc.message)
                results.append(BatchItemResult(resource=resource, success=False, error=exc.to_dict()))
            else:
                results.append(BatchItemResult(resource=resource, success=True, result=result))
        return results
