"""Processing lock record."""

from __future__ import annotations

from pydantic import Field

from pyplug.models._base import PyplugBaseModel


class LockRecord(PyplugBaseModel):
    """A processing lock as stored in the key/value backend.

    Parameters
    ----------
    resource_key : str
        Locked resource.
    holder_id : str
        Identity of the process/request holding the lock.
    acquired_at : float
        Epoch seconds at acquisition.
    ttl : float
        Seconds after ``acquired_at`` at which the lock self-expires.
    """

    resource_key: str
    holder_id: str
    acquired_at: float
    ttl: float = Field(gt=0)

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)
