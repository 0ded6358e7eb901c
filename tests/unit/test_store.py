"""
Tests for the SQLite record store.
"""

import pytest

from utils.errors import NoSuchPartition
from utils.store import Direction, RangeScan, RecordStore

P = "timeline:alice"


@pytest.fixture
def filled(store):
    store.create_partition(P)
    store.put_many(P, [(k, k.encode()) for k in ("a", "b", "c", "d", "e")])
    return store


def keys(scan):
    return [key for key, _ in scan]


def test_put_overwrites_existing_key(store):
    store.create_partition(P)
    store.put(P, "k", b"first")
    store.put(P, "k", b"second")

    assert store.get(P, "k") == b"second"
    assert store.count(P) == 1


def test_get_missing_key_returns_none(filled):
    assert filled.get(P, "zz") is None


@pytest.mark.parametrize(
    "operation",
    [
        lambda s: s.put("nope", "k", b"v"),
        lambda s: s.get("nope", "k"),
        lambda s: s.iterate("nope"),
        lambda s: s.delete_range("nope", None, None),
        lambda s: s.drop_partition("nope"),
        lambda s: s.count("nope"),
    ],
)
def test_missing_partition_is_an_error(store, operation):
    with pytest.raises(NoSuchPartition):
        operation(store)
    assert "nope" not in store.list_partitions()


def test_create_partition_is_idempotent(store):
    assert store.create_partition(P) is True
    assert store.create_partition(P) is False
    assert store.list_partitions() == [P]


def test_iterate_forward_and_backward(filled):
    assert keys(filled.iterate(P)) == ["a", "b", "c", "d", "e"]
    assert keys(filled.iterate(P, from_key="c")) == ["c", "d", "e"]
    assert keys(filled.iterate(P, direction=Direction.BACKWARD)) == ["e", "d", "c", "b", "a"]
    assert keys(filled.iterate(P, from_key="c", direction=Direction.BACKWARD)) == ["c", "b", "a"]


def test_iterate_from_key_between_existing_keys(filled):
    assert keys(filled.iterate(P, from_key="bb")) == ["c", "d", "e"]


def test_scan_is_restartable(filled):
    scan = filled.iterate(P, from_key="b")
    assert keys(scan) == keys(scan) == ["b", "c", "d", "e"]


def test_scan_tolerates_deletes_behind_it(filled):
    scan = RangeScan(filled, P, None, Direction.FORWARD, batch_size=2)
    seen = []
    for key, _ in scan:
        seen.append(key)
        filled.delete_range(P, None, key + "\x00")

    assert seen == ["a", "b", "c", "d", "e"]
    assert filled.count(P) == 0


def test_delete_range_is_inclusive_exclusive(filled):
    deleted = filled.delete_range(P, "b", "d")

    assert deleted == 2
    assert keys(filled.iterate(P)) == ["a", "d", "e"]


def test_delete_range_with_open_bounds(filled):
    filled.delete_range(P, None, "c")
    assert keys(filled.iterate(P)) == ["c", "d", "e"]

    filled.delete_range(P, "d", None)
    assert keys(filled.iterate(P)) == ["c"]


def test_drop_partition_removes_records(filled):
    filled.drop_partition(P)

    assert filled.list_partitions() == []
    filled.create_partition(P)
    assert filled.count(P) == 0


def test_first_and_last_key(filled):
    assert filled.first_key(P) == "a"
    assert filled.last_key(P) == "e"

    filled.delete_range(P, None, None)
    assert filled.first_key(P) is None
    assert filled.last_key(P) is None


def test_partitions_are_isolated(filled):
    filled.create_partition("timeline:bob")
    filled.put("timeline:bob", "a", b"bob")

    assert filled.get(P, "a") == b"a"
    assert filled.count("timeline:bob") == 1


def test_writes_survive_reopen(tmp_path):
    path = str(tmp_path / "nested" / "relay.db")
    store = RecordStore(path)
    store.create_partition(P)
    store.put(P, "k", b"v")
    store.close()

    reopened = RecordStore(path)
    try:
        assert reopened.list_partitions() == [P]
        assert reopened.get(P, "k") == b"v"
    finally:
        reopened.close()
