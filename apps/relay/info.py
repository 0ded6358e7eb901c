"""
Store overview and record export.

Usage:
    # One JSON line per stored identity: counts, key range, cursors
    python -m apps.relay.info

    # Every stored record of one identity, in delivery order
    python -m apps.relay.info alice
"""

import sys
from typing import Any, Iterator

import orjson

from apps.relay.cursors import identity_from_partition, partition_name
from apps.relay.delivery import decode_record
from apps.relay.state import StateTracker
from utils.config import get_settings
from utils.schemas import Record
from utils.store import RecordStore


def describe_store(store: RecordStore, state: StateTracker) -> list[dict[str, Any]]:
    """Summary of every identity known to the store."""
    cursors = state.cursors()
    identities = {
        name
        for name in map(identity_from_partition, store.list_partitions())
        if name is not None
    } | set(cursors)

    overview = []
    for name in sorted(identities):
        partition = partition_name(name)
        entry: dict[str, Any] = {
            "identity": name,
            "partition": partition,
            "records": 0,
            "first_key": None,
            "last_key": None,
            "fetch_cursor": cursors.get(name, {}).get("fetch"),
            "delivery_cursor": cursors.get(name, {}).get("delivery"),
            "resume_token": cursors.get(name, {}).get("resume"),
        }
        if store.has_partition(partition):
            entry.update(
                records=store.count(partition),
                first_key=store.first_key(partition),
                last_key=store.last_key(partition),
            )
        overview.append(entry)
    return overview


def export_records(store: RecordStore, identity: str) -> Iterator[Record]:
    """Stored records of one identity, oldest first."""
    partition = partition_name(identity)
    if not store.has_partition(partition):
        return
    for _, value in store.iterate(partition):
        yield decode_record(value)


def main(argv: list[str]) -> None:
    store = RecordStore(get_settings().STORE_PATH)
    try:
        if argv:
            for record in export_records(store, argv[0]):
                sys.stdout.write(orjson.dumps(record.model_dump(mode="json")).decode() + "\n")
        else:
            for entry in describe_store(store, StateTracker(store)):
                sys.stdout.write(orjson.dumps(entry).decode() + "\n")
    finally:
        store.close()


if __name__ == "__main__":
    main(sys.argv[1:])
