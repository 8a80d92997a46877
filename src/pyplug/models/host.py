"""What the host reports about a resource."""

from __future__ import annotations

from pyplug.models._base import PyplugBaseModel


class HostStatus(PyplugBaseModel):
    """Presence/activity of a resource on the host.

    ``entry_point`` is the path of the component's entry file relative to
    the plugins directory (e.g. ``"widget-main/widget.php"``).
    """

    present: bool = False
    active: bool = False
    entry_point: str | None = None
