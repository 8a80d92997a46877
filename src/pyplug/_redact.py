"""Credential scrubbing for anything that leaves the process.

Transition contexts, audit details and transport traces can carry GitHub
tokens or authorization headers. Two views are provided:

* :func:`redact` masks credential-bearing keys and changes nothing else.
  Event and audit payloads are stored through it so observers receive the
  full data.
* :func:`redact_for_log` additionally shortens long strings and renders
  bytes and arbitrary objects as short text, for log lines only.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

REDACTED = "<redacted>"

#: A key is masked when its lower-cased name contains one of these.
_SENSITIVE_MARKERS: tuple[str, ...] = ("password", "token", "authorization", "cookie", "secret")

_MAX_DEPTH = 20


def is_sensitive_key(key: object) -> bool:
    name = str(key).lower()
    return any(marker in name for marker in _SENSITIVE_MARKERS)


def _walk(value: Any, leaf: Callable[[Any], Any], depth: int) -> Any:
    if depth > _MAX_DEPTH:
        return "<max-depth>"
    if isinstance(value, Mapping):
        return {
            str(k): REDACTED if is_sensitive_key(k) else _walk(v, leaf, depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_walk(item, leaf, depth + 1) for item in value]
    return leaf(value)


def redact(value: Any) -> Any:
    """Copy of *value* with credential-bearing keys masked.

    Leaf values are returned as they are; tuples and sets become lists.
    """
    return _walk(value, lambda leaf: leaf, 0)


def redact_for_log(value: Any, *, max_string: int = 512) -> Any:
    """Redacted, size-bounded rendering of *value* for a log line."""

    def summarize(leaf: Any) -> Any:
        if leaf is None or isinstance(leaf, (bool, int, float)):
            return leaf
        if isinstance(leaf, (bytes, bytearray)):
            return f"<bytes:{len(leaf)}b>"
        text = leaf if isinstance(leaf, str) else str(leaf)
        if len(text) > max_string:
            return f"{text[:max_string]}…<truncated>"
        return text

    return _walk(value, summarize, 0)
