from __future__ import annotations

from pathlib import Path

import pytest

from pyplug._kv import KeyValueBackend, MemoryBackend, SqliteBackend


@pytest.fixture(params=["memory", "sqlite"])
def backend(request: pytest.FixtureRequest, tmp_path: Path, clock) -> KeyValueBackend:
    if request.param == "memory":
        return MemoryBackend(clock=clock)
    return SqliteBackend(tmp_path / "kv.sqlite3", clock=clock)


def test_set_get_roundtrip(backend: KeyValueBackend) -> None:
    backend.set("pyplug:x", {"a": [1, 2], "b": None})

    assert backend.get("pyplug:x") == {"a": [1, 2], "b": None}
    assert backend.get("pyplug:missing") is None
    assert backend.get("pyplug:missing", 7) == 7


def test_returned_values_are_copies(backend: KeyValueBackend) -> None:
    backend.set("k", {"items": [1]})
    value = backend.get("k")
    value["items"].append(2)

    assert backend.get("k") == {"items": [1]}


def test_ttl_expiry(backend: KeyValueBackend, clock) -> None:
    backend.set("short", 1, ttl=10)
    backend.set("forever", 2)

    clock.advance(9)
    assert backend.get("short") == 1

    clock.advance(2)
    assert backend.get("short") is None
    assert backend.get("forever") == 2
    assert backend.keys() == ["forever"]


def test_delete_reports_existence(backend: KeyValueBackend) -> None:
    backend.set("k", 1)

    assert backend.delete("k") is True
    assert backend.delete("k") is False


def test_create_if_absent_only_once(backend: KeyValueBackend) -> None:
    assert backend.create_if_absent("lock", {"holder": "a"}) is True
    assert backend.create_if_absent("lock", {"holder": "b"}) is False
    assert backend.get("lock") == {"holder": "a"}


def test_create_if_absent_replaces_expired_entry(backend: KeyValueBackend, clock) -> None:
    assert backend.create_if_absent("lock", "a", ttl=1)
    clock.advance(5)

    assert backend.create_if_absent("lock", "b", ttl=1)
    assert backend.get("lock") == "b"


def test_delete_if_equals_only_removes_matching_value(backend: KeyValueBackend) -> None:
    backend.set("lock", {"holder": "a", "at": 1})

    assert backend.delete_if_equals("lock", {"holder": "b", "at": 1}) is False
    assert backend.get("lock") == {"holder": "a", "at": 1}
    assert backend.delete_if_equals("lock", {"holder": "a", "at": 1}) is True
    assert backend.get("lock") is None
    assert backend.delete_if_equals("lock", {"holder": "a", "at": 1}) is False

def test_increment_counts_from_zero(backend: KeyValueBackend) -> None:
    assert backend.increment("counter") == 1
    assert backend.increment("counter") == 2
    assert backend.increment("counter", 5) == 7
    assert backend.get("counter") == 7

def test_keys_filters_by_literal_prefix(backend: KeyValueBackend) -> None:
    backend.set("a_b:1", 1)
    backend.set("axb:2", 2)
    backend.set("a%b:3", 3)

    assert backend.keys("a_b") == ["a_b:1"]
    assert backend.keys("a%") == ["a%b:3"]
    assert backend.keys() == ["a%b:3", "a_b:1", "axb:2"]


def test_sqlite_backend_shared_between_instances(tmp_path: Path) -> None:
    path = tmp_path / "shared.sqlite3"
    first = SqliteBackend(path)
    second = SqliteBackend(path)

    first.set("pyplug:states", {"acme/widget": "available"})

    assert second.get("pyplug:states") == {"acme/widget": "available"}
    assert second.create_if_absent("pyplug:lock:acme/widget", {"holder": "b"})
    assert not first.create_if_absent("pyplug:lock:acme/widget", {"holder": "a"})
