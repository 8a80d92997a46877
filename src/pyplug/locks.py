"""TTL-based processing locks.

A lock is a :class:`~pyplug.models.LockRecord` written with the backend's
atomic ``create_if_absent``. Whoever created the entry holds the lock; a
holder that crashes without releasing blocks the resource for at most
``ttl`` seconds, after which the next acquirer reclaims the entry.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from pyplug._constants import DEFAULT_LOCK_TTL, LOCK_PREFIX
from pyplug._kv import KeyValueBackend
from pyplug.broadcast import EventBroadcaster
from pyplug.models.events import EventType
from pyplug.models.lock import LockRecord

_logger = logging.getLogger(__name__)


def default_holder_id() -> str:
    """Identity unique to this process and manager instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _key(resource: str) -> str:
    return f"{LOCK_PREFIX}{resource}"


class ProcessingLockManager:
    """Per-resource mutual exclusion across processes sharing a backend."""

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        holder_id: str | None = None,
        events: EventBroadcaster | None = None,
        default_ttl: float = DEFAULT_LOCK_TTL,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._holder_id = holder_id or default_holder_id()
        self._events = events
        self._default_ttl = default_ttl
        self._clock = clock
        self._sleep = sleep

    @property
    def holder_id(self) -> str:
        return self._holder_id

    def _log(self, resource: str, event_type: EventType, data: dict[str, object]) -> None:
        if self._events is not None:
            self._events.log_event(resource, event_type, data)

    def _read(self, resource: str) -> tuple[LockRecord | None, object]:
        """The parsed lock record and the raw value it was parsed from."""
        raw = self._backend.get(_key(resource))
        if raw is None:
            return None, None
        try:
            return LockRecord.model_validate(raw), raw
        except ValidationError:
            _logger.warning("Discarding malformed lock record for %s: %r", resource, raw)
            self._backend.delete_if_equals(_key(resource), raw)
            return None, None

    def _try_insert(self, record: LockRecord) -> bool:
        # Stored without backend TTL; expiry is judged from acquired_at + ttl.
        return self._backend.create_if_absent(_key(record.resource_key), record.model_dump(mode="json"))

    def acquire(self, resource: str, ttl: float | None = None) -> bool:
        """Try to take the lock. Never blocks; ``False`` means contention."""
        ttl = self._default_ttl if ttl is None else ttl
        now = self._clock()
        record = LockRecord(resource_key=resource, holder_id=self._holder_id, acquired_at=now, ttl=ttl)

        if self._try_insert(record):
            self._log(resource, EventType.LOCK_ACQUIRED, {"ttl": ttl, "holder": self._holder_id, "expires_at": now + ttl})
            _logger.debug("Lock acquired for %s by %s (ttl=%s)", resource, self._holder_id, ttl)
            return True

        existing, raw = self._read(resource)
        if existing is not None and not existing.is_expired(now):
            self._log(
                resource,
                EventType.LOCK_CONTENTION,
                {
                    "held_by": existing.holder_id,
                    "locked_at": existing.acquired_at,
                    "expires_at": existing.expires_at,
                    "time_remaining": existing.remaining(now),
                },
            )
            _logger.debug("Lock contention for %s (held by %s)", resource, existing.holder_id)
            return False

        # Only the exact expired record is removed; a lock another acquirer
        # reclaimed in the meantime stays in place.
        if existing is not None and self._backend.delete_if_equals(_key(resource), raw):
            self._log(
                resource,
                EventType.LOCK_EXPIRED_CLEANUP,
                {"expired_at": existing.expires_at, "cleaned_at": now, "previous_holder": existing.holder_id},
            )
            _logger.info("Reclaimed expired lock for %s from %s", resource, existing.holder_id)

        # One retry: another acquirer may have won the slot meanwhile.
        if self._try_insert(record):
            self._log(resource, EventType.LOCK_ACQUIRED, {"ttl": ttl, "holder": self._holder_id, "expires_at": now + ttl})
            return True

        self._log(resource, EventType.LOCK_ACQUISITION_FAILED, {"reason": "insert_lost_race", "holder": self._holder_id})
        return False

    def release(self, resource: str, force: bool = False) -> bool:
        """Release the lock.

        Unless ``force`` is set, a lock held by someone else is left alone
        and ``False`` is returned.
        """
        if force:
            removed = self._backend.delete(_key(resource))
        else:
            existing, raw = self._read(resource)
            if existing is not None and existing.holder_id != self._holder_id:
                self._log(
                    resource,
                    EventType.LOCK_RELEASE_DENIED,
                    {"owner": existing.holder_id, "requester": self._holder_id, "reason": "not_owner"},
                )
                _logger.warning(
                    "Refusing to release lock for %s held by %s (requester %s)",
                    resource,
                    existing.holder_id,
                    self._holder_id,
                )
                return False
            # A record replaced since the read belongs to a new holder and stays.
            removed = existing is not None and self._backend.delete_if_equals(_key(resource), raw)

        self._log(resource, EventType.LOCK_RELEASED, {"holder": self._holder_id, "forced": force})
        _logger.debug("Lock released for %s (forced=%s, existed=%s)", resource, force, removed)
        return True

    def is_locked(self, resource: str) -> LockRecord | None:
        """The live lock record, or ``None`` if unlocked or expired."""
        existing, _ = self._read(resource)
        if existing is None or existing.is_expired(self._clock()):
            return None
        return existing

    def holds(self, resource: str) -> bool:
        existing = self.is_locked(resource)
        return existing is not None and existing.holder_id == self._holder_id

    async def wait_for_lock(
        self,
        resource: str,
        max_wait: float = 30.0,
        poll_interval: float = 0.5,
        ttl: float | None = None,
    ) -> bool:
        """Poll :meth:`acquire` until it succeeds or ``max_wait`` elapses."""
        start = self._clock()
        while True:
            if self.acquire(resource, ttl):
                waited = self._clock() - start
                self._log(resource, EventType.LOCK_ACQUIRED_AFTER_WAIT, {"wait_time": waited})
                return True
            waited = self._clock() - start
            if waited >= max_wait:
                break
            await self._sleep(min(poll_interval, max_wait - waited))

        self._log(resource, EventType.LOCK_WAIT_TIMEOUT, {"max_wait": max_wait, "waited": self._clock() - start})
        _logger.info("Timed out after %.1fs waiting for lock on %s", max_wait, resource)
        return False
