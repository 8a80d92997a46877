"""Audit trail of install, activate, deactivate and state-change operations.

Unlike the event buffers the trail records outcomes only, one entry per
completed operation, newest first.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Literal

from pydantic_core import to_jsonable_python

from pyplug._constants import AUDIT_CAPACITY, AUDIT_KEY
from pyplug._kv import KeyValueBackend
from pyplug._redact import redact, redact_for_log
from pyplug.models._base import utc_from_epoch

_logger = logging.getLogger(__name__)

AuditEventType = Literal["install", "activate", "deactivate", "state_change"]


class AuditTrail:
    """Bounded, persisted list of operation outcomes."""

    def __init__(
        self,
        backend: KeyValueBackend,
        capacity: int = AUDIT_CAPACITY,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._capacity = capacity
        self._clock = clock

    def _entries(self) -> list[dict[str, Any]]:
        raw = self._backend.get(AUDIT_KEY)
        return list(raw) if isinstance(raw, list) else []

    def record(
        self,
        event_type: AuditEventType,
        resource: str,
        success: bool,
        details: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        entry = {
            "id": str(uuid.uuid4()),
            "timestamp": utc_from_epoch(self._clock()).isoformat(),
            "event_type": event_type,
            "resource": resource,
            "result": "success" if success else "failure",
            "details": to_jsonable_python(redact(dict(details or {})), serialize_unknown=True),
        }
        entries = self._entries()
        entries.insert(0, entry)
        self._backend.set(AUDIT_KEY, entries[: self._capacity])

        if success:
            _logger.info("AUDIT %s %s: success", event_type, resource)
        else:
            _logger.error("AUDIT %s %s: failure %s", event_type, resource, redact_for_log(entry["details"]))
        return entry

    def record_install(self, resource: str, success: bool, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return self.record("install", resource, success, details)

    def record_activate(self, resource: str, success: bool, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return self.record("activate", resource, success, details)

    def record_deactivate(self, resource: str, success: bool, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return self.record("deactivate", resource, success, details)

    def record_state_change(self, resource: str, old_state: str, new_state: str, reason: str = "") -> dict[str, Any]:
        return self.record(
            "state_change",
            resource,
            True,
            {"old_state": old_state, "new_state": new_state, "reason": reason},
        )

    def get_audit_trail(
        self,
        limit: int = 100,
        event_type: str | None = None,
        resource: str | None = None,
    ) -> list[dict[str, Any]]:
        """Newest entries first, optionally filtered."""
        entries = self._entries()
        if event_type is not None:
            entries = [e for e in entries if e.get("event_type") == event_type]
        if resource is not None:
            entries = [e for e in entries if e.get("resource") == resource]
        return entries[: max(limit, 0)]

    def get_resource_history(self, resource: str, limit: int = 50) -> list[dict[str, Any]]:
        return self.get_audit_trail(limit=limit, resource=resource)

    def clear(self) -> None:
        self._backend.delete(AUDIT_KEY)
        _logger.info("Audit trail cleared")
