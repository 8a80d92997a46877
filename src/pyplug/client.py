"""High-level facade over the state store, locks, cache and pipeline."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import aiohttp

from pyplug._cache import ProcessingCache
from pyplug._kv import KeyValueBackend, MemoryBackend
from pyplug._transport import HttpTransport, Transport
from pyplug.audit import AuditTrail
from pyplug.broadcast import EventBroadcaster
from pyplug.config import PyplugConfig
from pyplug.exceptions import PyplugError
from pyplug.host import FilesystemHost, HostController
from pyplug.installer import InstallationPipeline, ProgressCallback
from pyplug.locks import ProcessingLockManager
from pyplug.models.events import Event
from pyplug.models.pipeline import ActivationResult, BatchItem, BatchItemResult, InstallResult
from pyplug.models.repository import RepositoryInfo
from pyplug.models.state import ResourceState
from pyplug.sources import Detector, GitHubSource, SourceInspector
from pyplug.state.store import StateStore

_logger = logging.getLogger(__name__)


class PyplugClient:
    """Entry point for tracking and installing resources.

    State, lock, cache and event operations work right after construction.
    Operations that reach the network need the async context manager::

        async with PyplugClient(config) as client:
            result = await client.install("acme", "widget")
    """

    def __init__(
        self,
        config: PyplugConfig,
        *,
        backend: KeyValueBackend | None = None,
        host: HostController | None = None,
        source: SourceInspector | None = None,
        detector: Detector | None = None,
        transport: Transport | None = None,
        session: aiohttp.ClientSession | None = None,
        holder_id: str | None = None,
        progress_callback: ProgressCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._backend = backend if backend is not None else MemoryBackend(clock=clock)
        self._external_session = session is not None
        self._http_session = session
        self._injected_transport = transport
        self._injected_source = source
        self._transport: Transport | None = None
        self._pipeline: InstallationPipeline | None = None
        self._progress_callback = progress_callback

        self._events = EventBroadcaster(
            self._backend,
            global_capacity=config.global_event_capacity,
            resource_capacity=config.resource_event_capacity,
            ttl=config.event_log_ttl,
            clock=clock,
        )
        self._cache = ProcessingCache(self._backend, ttl=config.cache_ttl, events=self._events, clock=clock)
        self._locks = ProcessingLockManager(
            self._backend,
            holder_id=holder_id,
            events=self._events,
            default_ttl=config.lock_ttl,
            clock=clock,
        )
        self._host: HostController = host or FilesystemHost(
            config.plugins_dir,
            self._backend,
            entry_point_globs=config.entry_point_globs,
            entry_point_header=config.entry_point_header,
        )
        self._audit = AuditTrail(self._backend, config.audit_capacity, clock=clock)
        self._store = StateStore(
            self._backend,
            host=self._host,
            detector=detector,
            events=self._events,
            cache=self._cache,
            audit=self._audit,
            snapshot_ttl=config.state_snapshot_ttl,
            error_context_ttl=config.error_context_ttl,
            protected_patterns=config.protected_patterns,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> PyplugClient:
        transport = self._injected_transport
        if transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            transport = HttpTransport(self._config, self._http_session)
        self._transport = transport
        source = self._injected_source or GitHubSource(self._config, transport)
        self._pipeline = InstallationPipeline(
            self._config,
            store=self._store,
            locks=self._locks,
            host=self._host,
            source=source,
            transport=transport,
            events=self._events,
            cache=self._cache,
            audit=self._audit,
            progress_callback=self._progress_callback,
        )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._transport = None
        self._pipeline = None

    def _require_pipeline(self) -> InstallationPipeline:
        if self._pipeline is None:
            raise PyplugError("Client not initialized. Use 'async with PyplugClient(...) as client:'")
        return self._pipeline

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> PyplugConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def locks(self) -> ProcessingLockManager:
        return self._locks

    @property
    def cache(self) -> ProcessingCache:
        return self._cache

    @property
    def events(self) -> EventBroadcaster:
        return self._events

    @property
    def host(self) -> HostController:
        return self._host

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self, resource: str, force_refresh: bool = False) -> ResourceState:
        return self._store.get(resource, force_refresh)

    def transition(
        self,
        resource: str,
        target: ResourceState | str,
        context: Mapping[str, Any] | None = None,
        force: bool = False,
    ) -> bool:
        return self._store.transition(resource, target, context, force)

    def get_statistics(self) -> dict[str, int]:
        return self._store.get_statistics()

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def acquire_lock(self, resource: str, ttl: float | None = None) -> bool:
        return self._locks.acquire(resource, ttl)

    def release_lock(self, resource: str, force: bool = False) -> bool:
        return self._locks.release(resource, force)

    async def wait_for_lock(
        self,
        resource: str,
        max_wait: float | None = None,
        poll_interval: float | None = None,
        ttl: float | None = None,
    ) -> bool:
        return await self._locks.wait_for_lock(
            resource,
            self._config.lock_wait_max if max_wait is None else max_wait,
            self._config.lock_poll_interval if poll_interval is None else poll_interval,
            ttl,
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_cache(self, resource: str, content_version: str) -> Any | None:
        return self._cache.get(resource, content_version)

    def set_cache(self, resource: str, content_version: str, payload: Any) -> None:
        self._cache.set(resource, content_version, payload)

    def invalidate_cache(self, resource: str) -> bool:
        return self._cache.invalidate(resource)

    def process_resource(self, info: RepositoryInfo) -> dict[str, Any]:
        """Decision payload for a listed repository, cached per content version."""
        resource = info.full_name
        version = info.content_version
        cached = self._cache.get(resource, version)
        if cached is not None:
            return cached
        state = self._store.get(resource)
        payload = {"resource": resource, "state": state.value, "content_version": version}
        self._cache.set(resource, version, payload)
        return payload

    # ------------------------------------------------------------------
    # Events and audit
    # ------------------------------------------------------------------

    def get_events_since(self, last_id: int) -> list[Event]:
        return self._events.get_events_since(last_id)

    def get_events(self, resource: str, limit: int = 10) -> list[Event]:
        return self._events.get_events(resource, limit)

    def audit_trail(
        self,
        limit: int = 100,
        event_type: str | None = None,
        resource: str | None = None,
    ) -> list[dict[str, Any]]:
        return self._audit.get_audit_trail(limit, event_type, resource)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def install(self, owner: str, repo: str, branch: str | None = None, activate: bool = False) -> InstallResult:
        return await self._require_pipeline().install(owner, repo, branch, activate)

    async def install_and_activate(self, owner: str, repo: str, branch: str | None = None) -> InstallResult:
        return await self._require_pipeline().install_and_activate(owner, repo, branch)

    async def activate(self, resource: str) -> ActivationResult:
        return await self._require_pipeline().activate(resource)

    async def deactivate(self, resource: str) -> ActivationResult:
        return await self._require_pipeline().deactivate(resource)

    async def batch_install(self, items: Iterable[BatchItem], activate: bool = False) -> list[BatchItemResult]:
        return await self._require_pipeline().batch_install(items, activate)
