from __future__ import annotations

import io
import zipfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from pyplug._cache import ProcessingCache
from pyplug._kv import MemoryBackend
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
    PyplugTransportError,
    VerificationError,
)
from pyplug.host import FilesystemHost
from pyplug.installer import InstallationPipeline
from pyplug.locks import ProcessingLockManager
from pyplug.models.pipeline import BatchItem, PipelineStep, ProgressUpdate
from pyplug.models.repository import RepositoryInfo
from pyplug.models.state import ResourceState
from pyplug.state.store import StateStore

RESOURCE = "acme/widget"
DOWNLOAD_URL = "https://codeload.github.com/acme/widget/legacy.zip/refs/heads/main"
ENTRY_SOURCE = "<?php\n/*\n * Plugin Name: Widget\n * Version: 1.0\n */\n"


def _zip_bytes(members: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


GOOD_ARCHIVE = _zip_bytes({"widget-main/widget.php": ENTRY_SOURCE, "widget-main/readme.txt": "Widget"})


def _mark_encrypted(data: bytes, name: str) -> bytes:
    """Set the encryption flag on *name* in the central directory."""
    buffer = bytearray(data)
    start = 0
    while (offset := buffer.find(b"PK\x01\x02", start)) != -1:
        name_length = int.from_bytes(buffer[offset + 28 : offset + 30], "little")
        if bytes(buffer[offset + 46 : offset + 46 + name_length]) == name.encode():
            flags = int.from_bytes(buffer[offset + 8 : offset + 10], "little") | 0x1
            buffer[offset + 8 : offset + 10] = flags.to_bytes(2, "little")
        start = offset + 4
    return bytes(buffer)


class _FakeSource:
    def __init__(self, missing: set[str] | None = None, url: str = DOWNLOAD_URL) -> None:
        self.missing = missing or set()
        self.url = url
        self.lookups: list[str] = []

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        self.lookups.append(f"{owner}/{name}")
        if name in self.missing:
            raise VerificationError(f"repository {owner}/{name} not found", resource=f"{owner}/{name}", step="verify")
        return RepositoryInfo(full_name=f"{owner}/{name}", name=name, default_branch="main")

    async def resolve_download_url(self, owner: str, name: str, branch: str) -> str:
        return self.url


class _FakeTransport:
    def __init__(self, *payloads: bytes | Exception) -> None:
        self.payloads = list(payloads) or [GOOD_ARCHIVE]
        self.downloads: list[str] = []

    async def get_json(self, url: str) -> Any:
        raise AssertionError("not used")

    async def head_location(self, url: str) -> str | None:
        raise AssertionError("not used")

    async def download(self, url: str) -> bytes:
        self.downloads.append(url)
        payload = self.payloads.pop(0) if len(self.payloads) > 1 else self.payloads[0]
        if isinstance(payload, Exception):
            raise payload
        return payload


class _RefusingHost(FilesystemHost):
    def activate(self, entry_point: str) -> None:
        raise ActivationError(f"{entry_point} triggered a fatal error")


@pytest.fixture
def env(tmp_path: Path) -> SimpleNamespace:
    plugins = tmp_path / "plugins"
    plugins.mkdir()
    scratch = tmp_path / "upgrade"
    config = PyplugConfig(plugins_dir=plugins, scratch_dir=scratch, min_free_disk_mb=0)
    backend = MemoryBackend()
    events = EventBroadcaster(backend)
    cache = ProcessingCache(backend)
    return SimpleNamespace(
        config=config,
        plugins=plugins,
        scratch=scratch,
        backend=backend,
        events=events,
        cache=cache,
        locks=ProcessingLockManager(backend, holder_id="installer", events=events),
        audit=AuditTrail(backend),
        host=FilesystemHost(plugins, backend),
    )


def _store(env: SimpleNamespace, **kwargs: Any) -> StateStore:
    return StateStore(env.backend, host=env.host, events=env.events, cache=env.cache, **kwargs)


def _pipeline(
    env: SimpleNamespace,
    transport: _FakeTransport | None = None,
    *,
    store: StateStore | None = None,
    source: _FakeSource | None = None,
    host: FilesystemHost | None = None,
    config: PyplugConfig | None = None,
    **kwargs: Any,
) -> InstallationPipeline:
    env.store = store or _store(env)
    return InstallationPipeline(
        config or env.config,
        store=env.store,
        locks=env.locks,
        host=host or env.host,
        source=source or _FakeSource(),
        transport=transport or _FakeTransport(),
        events=env.events,
        cache=env.cache,
        audit=env.audit,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_install_success(env: SimpleNamespace) -> None:
    updates: list[ProgressUpdate] = []
    transport = _FakeTransport()
    pipeline = _pipeline(env, transport, progress_callback=updates.append)
    env.store.transition(RESOURCE, ResourceState.AVAILABLE)

    result = await pipeline.install("acme", "widget")

    assert result.state is ResourceState.INSTALLED_INACTIVE
    assert result.entry_point == "widget-main/widget.php"
    assert result.branch == "main"
    assert result.download_url == DOWNLOAD_URL
    assert result.activated is False
    assert (env.plugins / "widget-main" / "widget.php").read_text() == ENTRY_SOURCE
    assert list(env.scratch.iterdir()) == []
    assert env.locks.is_locked(RESOURCE) is None
    assert env.store.get(RESOURCE) is ResourceState.INSTALLED_INACTIVE
    assert transport.downloads == [DOWNLOAD_URL]

    steps = [u.step for u in updates]
    for step in (
        PipelineStep.VERIFY,
        PipelineStep.PREFLIGHT,
        PipelineStep.ACQUIRE_LOCK,
        PipelineStep.DOWNLOAD,
        PipelineStep.EXTRACT,
        PipelineStep.LOCATE_ENTRY_POINT,
        PipelineStep.RELEASE_LOCK,
    ):
        assert step in steps
    assert steps[-1] is PipelineStep.DONE
    assert any(e.event_type == "install_progress" for e in env.events.get_events_since(0))
    assert env.audit.get_audit_trail(event_type="install")[0]["result"] == "success"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [b"not a zip archive", _zip_bytes({"../evil.php": "x", "widget-main/widget.php": ENTRY_SOURCE})],
    ids=["corrupt", "traversal"],
)
async def test_extract_failure_rolls_back(env: SimpleNamespace, payload: bytes) -> None:
    env.scratch.mkdir()
    stray = env.scratch / ("0123456789abcdef" * 2 + ".tmp")
    stray.write_text("partial")
    unrelated = env.scratch / "keep.txt"
    unrelated.write_text("keep")
    pipeline = _pipeline(env, _FakeTransport(payload))
    env.store.transition(RESOURCE, ResourceState.AVAILABLE)

    with pytest.raises(ExtractError) as exc_info:
        await pipeline.install("acme", "widget")

    assert exc_info.value.recoverable is True
    assert exc_info.value.details["rolled_back"] is True
    assert not (env.plugins / "widget-main").exists()
    assert not (env.plugins.parent / "evil.php").exists()
    assert not stray.exists()
    assert unrelated.exists()
    assert not (env.scratch / "widget-main.zip").exists()
    assert env.locks.is_locked(RESOURCE) is None
    assert env.store.get(RESOURCE) is ResourceState.AVAILABLE
    assert env.audit.get_audit_trail(event_type="install")[0]["result"] == "failure"


@pytest.mark.asyncio
async def test_missing_entry_point_rolls_back(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env, _FakeTransport(_zip_bytes({"widget-main/readme.txt": "no php here"})))
    env.store.transition(RESOURCE, ResourceState.AVAILABLE)

    with pytest.raises(EntryPointNotFoundError):
        await pipeline.install("acme", "widget")

    assert not (env.plugins / "widget-main").exists()
    assert env.locks.is_locked(RESOURCE) is None
    assert env.store.get(RESOURCE) is ResourceState.AVAILABLE


@pytest.mark.asyncio
async def test_download_failure_rolls_back(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env, _FakeTransport(PyplugTransportError("HTTP 500", status_code=500)))

    with pytest.raises(DownloadError) as exc_info:
        await pipeline.install("acme", "widget")

    assert "rolled_back" in exc_info.value.details
    assert env.locks.is_locked(RESOURCE) is None
    assert env.store.get(RESOURCE) is ResourceState.UNKNOWN


@pytest.mark.asyncio
async def test_non_https_download_url_is_refused(env: SimpleNamespace) -> None:
    transport = _FakeTransport()
    pipeline = _pipeline(env, transport, source=_FakeSource(url="http://example.com/widget.zip"))

    with pytest.raises(DownloadError):
        await pipeline.install("acme", "widget")

    assert transport.downloads == []


@pytest.mark.asyncio
async def test_retry_after_rollback_starts_clean(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env, _FakeTransport(b"garbage", GOOD_ARCHIVE))
    env.store.transition(RESOURCE, ResourceState.AVAILABLE)

    with pytest.raises(ExtractError):
        await pipeline.install("acme", "widget")
    result = await pipeline.install("acme", "widget")

    assert result.state is ResourceState.INSTALLED_INACTIVE


@pytest.mark.asyncio
async def test_verify_failure_changes_nothing(env: SimpleNamespace) -> None:
    source = _FakeSource(missing={"widget"})
    transport = _FakeTransport()
    pipeline = _pipeline(env, transport, source=source)

    with pytest.raises(VerificationError):
        await pipeline.install("acme", "widget")

    assert env.store.all_states() == {}
    assert transport.downloads == []


@pytest.mark.asyncio
async def test_invalid_key_is_rejected_before_lookup(env: SimpleNamespace) -> None:
    source = _FakeSource()
    pipeline = _pipeline(env, source=source)

    with pytest.raises(VerificationError):
        await pipeline.install("acme", "../widget")

    assert source.lookups == []


@pytest.mark.asyncio
async def test_already_installed(env: SimpleNamespace) -> None:
    (env.plugins / "widget-main").mkdir()
    (env.plugins / "widget-main" / "widget.php").write_text(ENTRY_SOURCE)
    pipeline = _pipeline(env)

    with pytest.raises(AlreadyInstalledError):
        await pipeline.install("acme", "widget")


@pytest.mark.asyncio
async def test_preflight_insufficient_disk_space(env: SimpleNamespace) -> None:
    config = PyplugConfig(plugins_dir=env.plugins, scratch_dir=env.scratch, min_free_disk_mb=10)
    pipeline = _pipeline(env, config=config, disk_usage=lambda path: SimpleNamespace(free=1024))

    with pytest.raises(PreflightError) as exc_info:
        await pipeline.install("acme", "widget")

    assert any("disk space" in issue for issue in exc_info.value.issues)
    assert env.locks.is_locked(RESOURCE) is None


@pytest.mark.asyncio
async def test_preflight_existing_destination(env: SimpleNamespace) -> None:
    (env.plugins / "widget-main").mkdir()
    (env.plugins / "widget-main" / "notes.txt").write_text("left behind")
    pipeline = _pipeline(env)

    with pytest.raises(PreflightError):
        await pipeline.install("acme", "widget")

    assert (env.plugins / "widget-main" / "notes.txt").exists()


@pytest.mark.asyncio
async def test_preflight_missing_plugins_dir(env: SimpleNamespace, tmp_path: Path) -> None:
    config = PyplugConfig(plugins_dir=tmp_path / "missing", scratch_dir=env.scratch, min_free_disk_mb=0)
    pipeline = _pipeline(env, config=config)

    with pytest.raises(PreflightError) as exc_info:
        await pipeline.install("acme", "widget")

    assert exc_info.value.step == "preflight"


@pytest.mark.asyncio
async def test_lock_contention(env: SimpleNamespace) -> None:
    other = ProcessingLockManager(env.backend, holder_id="someone-else")
    other.acquire(RESOURCE, 60)
    transport = _FakeTransport()
    pipeline = _pipeline(env, transport)

    with pytest.raises(LockContentionError) as exc_info:
        await pipeline.install("acme", "widget")

    assert exc_info.value.details["held_by"] == "someone-else"
    assert transport.downloads == []
    assert other.holds(RESOURCE)


@pytest.mark.asyncio
async def test_install_and_activate(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env)

    result = await pipeline.install_and_activate("acme", "widget")

    assert result.activated is True
    assert result.state is ResourceState.INSTALLED_ACTIVE
    assert env.host.is_active("widget-main/widget.php")
    assert env.store.get(RESOURCE) is ResourceState.INSTALLED_ACTIVE


@pytest.mark.asyncio
async def test_activation_failure_keeps_install(env: SimpleNamespace) -> None:
    host = _RefusingHost(env.plugins, env.backend)
    env.host = host
    pipeline = _pipeline(env, host=host)

    result = await pipeline.install("acme", "widget", activate=True)

    assert result.activated is False
    assert "fatal error" in result.activation_error
    assert result.state is ResourceState.INSTALLED_INACTIVE
    assert (env.plugins / "widget-main" / "widget.php").exists()
    assert env.locks.is_locked(RESOURCE) is None


@pytest.mark.asyncio
async def test_activate_and_deactivate(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env)
    await pipeline.install("acme", "widget")

    activated = await pipeline.activate(RESOURCE)
    assert activated.state is ResourceState.INSTALLED_ACTIVE
    with pytest.raises(AlreadyActiveError):
        await pipeline.activate(RESOURCE)

    deactivated = await pipeline.deactivate(RESOURCE)
    assert deactivated.state is ResourceState.INSTALLED_INACTIVE
    assert deactivated.entry_point == "widget-main/widget.php"
    with pytest.raises(NotActiveError):
        await pipeline.deactivate(RESOURCE)

    assert env.locks.is_locked(RESOURCE) is None
    kinds = [entry["event_type"] for entry in env.audit.get_resource_history(RESOURCE)]
    assert kinds == ["deactivate", "activate", "install"]


@pytest.mark.asyncio
async def test_activate_not_installed(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env)

    with pytest.raises(NotInstalledError):
        await pipeline.activate("acme/ghost")
    with pytest.raises(NotInstalledError):
        await pipeline.deactivate("acme/ghost")


@pytest.mark.asyncio
async def test_protected_resource_cannot_be_deactivated(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env, store=_store(env, protected_patterns=("acme/widget",)))
    await pipeline.install_and_activate("acme", "widget")

    with pytest.raises(ProtectedResourceError):
        await pipeline.deactivate(RESOURCE)

    assert env.host.is_active("widget-main/widget.php")


@pytest.mark.asyncio
async def test_batch_install_isolates_failures(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env, source=_FakeSource(missing={"gadget"}))

    results = await pipeline.batch_install([BatchItem(owner="acme", repo="widget"), BatchItem(owner="acme", repo="gadget")])

    assert [r.success for r in results] == [True, False]
    assert results[0].result is not None
    assert results[0].result.entry_point == "widget-main/widget.php"
    assert results[1].error["kind"] == "verification_failed"


def test_rollback_is_noop_when_nothing_left(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env)
    env.store.transition(RESOURCE, ResourceState.CHECKING)

    assert pipeline.rollback("acme", "widget", "main", restore_state=ResourceState.CHECKING) is False
    assert env.store.get(RESOURCE) is ResourceState.AVAILABLE


@pytest.mark.asyncio
async def test_encrypted_member_rolls_back_partial_extract(env: SimpleNamespace) -> None:
    archive = _mark_encrypted(
        _zip_bytes({"widget-main/widget.php": ENTRY_SOURCE, "widget-main/secret.txt": "hidden"}),
        "widget-main/secret.txt",
    )
    pipeline = _pipeline(env, _FakeTransport(archive, GOOD_ARCHIVE))
    env.store.transition(RESOURCE, ResourceState.AVAILABLE)

    with pytest.raises(ExtractError) as exc_info:
        await pipeline.install("acme", "widget")

    assert "encrypted" in exc_info.value.message
    assert exc_info.value.details["rolled_back"] is True
    assert not (env.plugins / "widget-main").exists()
    assert env.locks.is_locked(RESOURCE) is None
    assert env.store.get(RESOURCE) is ResourceState.AVAILABLE

    result = await pipeline.install("acme", "widget")
    assert result.state is ResourceState.INSTALLED_INACTIVE


@pytest.mark.asyncio
async def test_unexpected_failure_is_wrapped_and_rolled_back(env: SimpleNamespace) -> None:
    pipeline = _pipeline(env, _FakeTransport(KeyError("boom")))
    env.store.transition(RESOURCE, ResourceState.AVAILABLE)

    with pytest.raises(PipelineError) as exc_info:
        await pipeline.install("acme", "widget")

    assert exc_info.value.step == "download"
    assert exc_info.value.details["exception"] == "KeyError"
    assert "rolled_back" in exc_info.value.details
    assert isinstance(exc_info.value.__cause__, KeyError)
    assert env.locks.is_locked(RESOURCE) is None
    assert env.store.get(RESOURCE) is ResourceState.AVAILABLE
