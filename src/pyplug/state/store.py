"""Authoritative per-resource lifecycle state.

This is the only component allowed to change a resource's state. Every
mutation goes through :meth:`StateStore.transition`, which validates the
move, records events, invalidates the processing cache and writes the
snapshot through to the backend so other processes observe it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from pyplug._cache import ProcessingCache
from pyplug._constants import (
    DEFAULT_ERROR_CONTEXT_TTL,
    DEFAULT_STATE_SNAPSHOT_TTL,
    ERROR_CONTEXT_PREFIX,
    METADATA_KEY,
    STATES_KEY,
)
from pyplug._kv import KeyValueBackend
from pyplug._redact import redact_for_log
from pyplug.broadcast import EventBroadcaster
from pyplug.models._base import utc_from_epoch
from pyplug.models.events import EventType
from pyplug.models.state import ErrorContext, ResourceState
from pyplug.state.matching import matches_search
from pyplug.state.reconcile import Reconciler
from pyplug.state.transitions import TransitionValidator

if TYPE_CHECKING:
    from pyplug.audit import AuditTrail
    from pyplug.host import HostInspector
    from pyplug.sources import Detector

_logger = logging.getLogger(__name__)


def _parse_state(resource: str, value: Any) -> ResourceState | None:
    try:
        return ResourceState(value)
    except ValueError:
        _logger.warning("Ignoring unknown persisted state %r for %s", value, resource)
        return None


class StateStore:
    """Per-resource state with read-through/write-through persistence.

    Parameters
    ----------
    backend : KeyValueBackend
        Shared persistence for the state snapshot, error contexts and
        metadata.
    host : HostInspector, optional
        Used to reconcile persisted states and to determine the state of a
        resource on refresh.
    detector : Detector, optional
        Decides whether a resource not present on the host is installable.
    events : EventBroadcaster, optional
        Receives transition, reconciliation and detection events.
    cache : ProcessingCache, optional
        Invalidated for the resource on every transition.
    audit : AuditTrail, optional
        Receives a ``state_change`` entry for every completed transition.
    validator : TransitionValidator, optional
        Defaults to the standard transition table.
    snapshot_ttl : float
        Lifetime of the persisted state snapshot in seconds.
    error_context_ttl : float
        Lifetime of a persisted error context in seconds.
    protected_patterns : Sequence[str]
        Case-insensitive substrings of resource keys that must not be deactivated.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        host: HostInspector | None = None,
        detector: Detector | None = None,
        events: EventBroadcaster | None = None,
        cache: ProcessingCache | None = None,
        audit: AuditTrail | None = None,
        validator: TransitionValidator | None = None,
        snapshot_ttl: float = DEFAULT_STATE_SNAPSHOT_TTL,
        error_context_ttl: float = DEFAULT_ERROR_CONTEXT_TTL,
        protected_patterns: Sequence[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._host = host
        self._reconciler = Reconciler(host) if host is not None else None
        self._detector = detector
        self._events = events
        self._cache = cache
        self._audit = audit
        self._validator = validator or TransitionValidator()
        self._snapshot_ttl = snapshot_ttl
        self._error_context_ttl = error_context_ttl
        self._protected_patterns = tuple(protected_patterns)
        self._clock = clock
        self._states: dict[str, ResourceState] = {}

    @property
    def validator(self) -> TransitionValidator:
        return self._validator

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _read_snapshot(self) -> dict[str, ResourceState]:
        raw = self._backend.get(STATES_KEY)
        if not isinstance(raw, dict):
            return {}
        snapshot: dict[str, ResourceState] = {}
        for resource, value in raw.items():
            state = _parse_state(resource, value)
            if state is not None:
                snapshot[resource] = state
        return snapshot

    def _write_snapshot(self, updates: Mapping[str, ResourceState], removed: Iterable[str] = ()) -> None:
        raw = self._backend.get(STATES_KEY)
        snapshot: dict[str, Any] = dict(raw) if isinstance(raw, dict) else {}
        for resource in removed:
            snapshot.pop(resource, None)
        snapshot.update({resource: state.value for resource, state in updates.items()})
        self._backend.set(STATES_KEY, snapshot, self._snapshot_ttl)

    def _current(self, resource: str) -> ResourceState:
        # The shared snapshot wins; memory only covers an expired snapshot.
        persisted = self._read_snapshot().get(resource)
        if persisted is not None:
            return persisted
        return self._states.get(resource, ResourceState.UNKNOWN)

    def _log(self, resource: str, event_type: EventType, data: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.log_event(resource, event_type, data)

    def _apply_reconciled(self, resource: str, previous: ResourceState, reconciled: ResourceState) -> None:
        self._states[resource] = reconciled
        if reconciled is previous:
            return
        self._log(resource, EventType.RECONCILED, {"from": previous.value, "to": reconciled.value})
        if self._cache is not None:
            self._cache.invalidate(resource)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, resource: str, force_refresh: bool = False) -> ResourceState:
        """Current state of *resource*.

        The persisted snapshot is authoritative, so a state written by
        another store sharing the backend is picked up. A value not seen
        before by this store is reconciled with the host; an absent or
        expired entry triggers a full :meth:`refresh`.
        """
        if not force_refresh:
            persisted = self._read_snapshot().get(resource)
            if persisted is not None:
                if self._states.get(resource) is persisted:
                    return persisted
                reconciled = persisted
                if self._reconciler is not None:
                    reconciled = self._reconciler.reconcile(resource, persisted)
                self._apply_reconciled(resource, persisted, reconciled)
                if reconciled is not persisted:
                    self._write_snapshot({resource: reconciled})
                return reconciled
        return self.refresh(resource)

    def get_batch(self, resources: Iterable[str], force_refresh: bool = False) -> dict[str, ResourceState]:
        return {resource: self.get(resource, force_refresh) for resource in resources}

    def all_states(self) -> dict[str, ResourceState]:
        """Every known resource; persisted values win over memory."""
        states = dict(self._states)
        states.update(self._read_snapshot())
        return states

    def get_statistics(self) -> dict[str, int]:
        stats = {state.value: 0 for state in ResourceState}
        states = self.all_states()
        for state in states.values():
            stats[state.value] += 1
        stats["total"] = len(states)
        return stats

    def filter_resources(self, search_term: str) -> dict[str, ResourceState]:
        return {
            resource: state
            for resource, state in sorted(self.all_states().items())
            if matches_search(resource, search_term)
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def transition(
        self,
        resource: str,
        target: ResourceState | str,
        context: Mapping[str, Any] | None = None,
        force: bool = False,
    ) -> bool:
        """Move *resource* to *target*.

        Returns ``False`` (and changes nothing) when the move is not in the
        transition table and ``force`` is not set.
        """
        target = ResourceState(target)
        ctx = dict(context or {})
        current = self._current(resource)

        if not force and not self._validator.is_allowed(current, target):
            _logger.warning(
                "Blocked invalid transition for %s: %s -> %s (context: %s)",
                resource,
                current.value,
                target.value,
                redact_for_log(ctx),
            )
            self._log(
                resource,
                EventType.TRANSITION_BLOCKED,
                {"from": current.value, "to": target.value, "context": ctx},
            )
            return False

        self._states[resource] = target

        if target is ResourceState.ERROR:
            error_context = self._store_error_context(resource, ctx)
            self._log(
                resource,
                EventType.ERROR_OCCURRED,
                {"message": error_context.message, "source": error_context.source, "recoverable": error_context.recoverable},
            )
            _logger.error("%s entered error state: %s", resource, error_context.message)
        elif current is ResourceState.ERROR:
            previous_error = self.get_error_context(resource)
            self._backend.delete(f"{ERROR_CONTEXT_PREFIX}{resource}")
            self._log(
                resource,
                EventType.ERROR_RECOVERED,
                {"to": target.value, "previous_error": previous_error.message if previous_error else None},
            )

        self._log(resource, EventType.TRANSITION, {"from": current.value, "to": target.value, "context": ctx, "forced": force})
        if self._events is not None:
            self._events.broadcast(
                EventType.STATE_CHANGED,
                {"resource": resource, "old_state": current.value, "new_state": target.value, "context": ctx},
            )
        if self._cache is not None:
            self._cache.invalidate(resource)
        self._write_snapshot({resource: target})

        if self._audit is not None:
            self._audit.record_state_change(resource, current.value, target.value, reason=str(ctx.get("reason", "")))
        _logger.info("%s: %s -> %s%s", resource, current.value, target.value, " (forced)" if force else "")
        return True

    def _determine(self, resource: str) -> ResourceState:
        if self._host is not None:
            status = self._host.probe(resource)
            if status.present:
                return ResourceState.INSTALLED_ACTIVE if status.active else ResourceState.INSTALLED_INACTIVE

        if self._detector is None:
            return ResourceState.UNKNOWN
        try:
            detected = self._detector.detect(resource)
        except Exception as exc:
            _logger.warning("Detection failed for %s", resource, exc_info=True)
            self._log(resource, EventType.DETECTION_ERROR, {"error": str(exc)})
            return ResourceState.UNKNOWN

        self._log(resource, EventType.DETECTION, {"result": detected})
        if detected is None:
            return ResourceState.UNKNOWN
        return ResourceState.AVAILABLE if detected else ResourceState.NOT_PLUGIN

    def refresh(self, resource: str) -> ResourceState:
        """Re-derive the state from the host and the detector.

        Both writes are forced: a refresh reports reality rather than
        requesting a move.
        """
        self.transition(resource, ResourceState.CHECKING, {"reason": "refresh"}, force=True)
        state = self._determine(resource)
        self.transition(resource, state, {"reason": "refresh_complete"}, force=True)
        if self._matches_protected(resource):
            self.set_metadata(resource, "protected", True)
        return state

    def refresh_batch(self, resources: Iterable[str]) -> dict[str, ResourceState]:
        return {resource: self.refresh(resource) for resource in resources}

    def load(self) -> int:
        """Hydrate from the persisted snapshot and reconcile with the host.

        Returns the number of corrected entries.
        """
        persisted = self._read_snapshot()
        changes: dict[str, ResourceState] = {}
        if self._reconciler is not None:
            changes = self._reconciler.reconcile_all(persisted)
        for resource, state in persisted.items():
            self._apply_reconciled(resource, state, changes.get(resource, state))
        if changes:
            self._write_snapshot(changes)
            _logger.info("Reconciled %d persisted states with the host", len(changes))
        return len(changes)

    def forget(self, resource: str) -> None:
        self._states.pop(resource, None)
        self._write_snapshot({}, removed=[resource])
        self._backend.delete(f"{ERROR_CONTEXT_PREFIX}{resource}")

    def clear(self) -> None:
        """Drop every in-memory and persisted state and error context."""
        self._states.clear()
        self._backend.delete(STATES_KEY)
        for key in self._backend.keys(ERROR_CONTEXT_PREFIX):
            self._backend.delete(key)
        _logger.info("Cleared all resource states")

    # ------------------------------------------------------------------
    # Error context
    # ------------------------------------------------------------------

    def _store_error_context(self, resource: str, ctx: Mapping[str, Any]) -> ErrorContext:
        previous = self.get_error_context(resource)
        message = ctx.get("error") or ctx.get("message") or "Unknown error"
        error_context = ErrorContext(
            timestamp=utc_from_epoch(self._clock()),
            message=str(message),
            source=str(ctx.get("source") or "unknown"),
            recoverable=bool(ctx.get("recoverable", True)),
            retry_count=previous.retry_count if previous is not None else 0,
            last_retry_at=previous.last_retry_at if previous is not None else None,
        )
        self._save_error_context(resource, error_context)
        return error_context

    def _save_error_context(self, resource: str, error_context: ErrorContext) -> None:
        self._backend.set(
            f"{ERROR_CONTEXT_PREFIX}{resource}",
            error_context.model_dump(mode="json"),
            self._error_context_ttl,
        )

    def get_error_context(self, resource: str) -> ErrorContext | None:
        raw = self._backend.get(f"{ERROR_CONTEXT_PREFIX}{resource}")
        if not isinstance(raw, dict):
            return None
        try:
            return ErrorContext.model_validate(raw)
        except ValidationError:
            _logger.warning("Discarding malformed error context for %s", resource)
            return None

    def increment_retry_count(self, resource: str) -> int:
        """Bump the retry counter of the stored error context.

        Returns the new count, or ``0`` when the resource has no error
        context.
        """
        error_context = self.get_error_context(resource)
        if error_context is None:
            return 0
        updated = error_context.model_copy(
            update={
                "retry_count": error_context.retry_count + 1,
                "last_retry_at": utc_from_epoch(self._clock()),
            }
        )
        self._save_error_context(resource, updated)
        return updated.retry_count

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _read_metadata(self) -> dict[str, dict[str, Any]]:
        raw = self._backend.get(METADATA_KEY)
        return dict(raw) if isinstance(raw, dict) else {}

    def set_metadata(self, resource: str, key: str, value: Any) -> None:
        metadata = self._read_metadata()
        entry = dict(metadata.get(resource) or {})
        entry[key] = value
        metadata[resource] = entry
        self._backend.set(METADATA_KEY, metadata)

    def get_metadata(self, resource: str, key: str | None = None, default: Any = None) -> Any:
        entry = self._read_metadata().get(resource) or {}
        if key is None:
            return dict(entry)
        return entry.get(key, default)

    def _matches_protected(self, resource: str) -> bool:
        key = resource.lower()
        return any(pattern.lower() in key for pattern in self._protected_patterns if pattern)

    def is_protected(self, resource: str) -> bool:
        return bool(self.get_metadata(resource, "protected", False)) or self._matches_protected(resource)
