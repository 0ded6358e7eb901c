"""
Record store - ordered, partitioned key-value storage on SQLite.

Each partition is an ordered set of (key, value) pairs. Keys are strings and
sort lexicographically; values are raw bytes. Writes are committed before the
call returns. Operations on a partition that was never created raise
NoSuchPartition.

Usage:
    from utils.store import RecordStore

    store = RecordStore("/app/data/relay.db")
    store.create_partition("timeline:alice")
    store.put("timeline:alice", "00000000000000000001", b"...")
    for key, value in store.iterate("timeline:alice"):
        ...
"""

import enum
import logging
import sqlite3
from pathlib import Path
from typing import Iterable, Iterator, Optional

from utils.errors import NoSuchPartition, StorageError

logger = logging.getLogger(__name__)

SCAN_BATCH_SIZE = 256


class Direction(enum.Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


class RangeScan:
    """Lazy scan over one partition.

    Iterating the same scan again starts over from `from_key`. Rows are read
    in batches keyed on the last key seen, so keys may be deleted while the
    scan is in progress.
    """

    def __init__(
        self,
        store: "RecordStore",
        partition: str,
        from_key: Optional[str],
        direction: Direction,
        batch_size: int = SCAN_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.partition = partition
        self.from_key = from_key
        self.direction = direction
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[tuple[str, bytes]]:
        forward = self.direction is Direction.FORWARD
        order = "ASC" if forward else "DESC"
        bound = self.from_key
        inclusive = True

        while True:
            if bound is None:
                clause, params = "", ()
            else:
                op = (">=" if inclusive else ">") if forward else ("<=" if inclusive else "<")
                clause, params = f"AND key {op} ?", (bound,)

            rows = self.store._conn.execute(
                f"SELECT key, value FROM records WHERE partition = ? {clause} "
                f"ORDER BY key {order} LIMIT ?",
                (self.partition, *params, self.batch_size),
            ).fetchall()

            for key, value in rows:
                yield key, bytes(value)

            if len(rows) < self.batch_size:
                return
            bound = rows[-1][0]
            inclusive = False


class RecordStore:
    """Partitioned, ordered, durable key-value store backed by one SQLite file."""

    def __init__(self, path: str) -> None:
        """
        Open (or create) the store.

        Args:
            path: SQLite database file path, or ":memory:"
        """
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        self.path = path
        self._conn = sqlite3.connect(path, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS partitions (
                    name TEXT PRIMARY KEY
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    partition TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value BLOB NOT NULL,
                    PRIMARY KEY (partition, key)
                ) WITHOUT ROWID
            """)
        logger.debug("Store schema ready", extra={"store_path": self.path})

    def _transaction(self) -> "_Transaction":
        return _Transaction(self._conn)

    def _require(self, partition: str) -> None:
        if not self.has_partition(partition):
            raise NoSuchPartition(partition)

    # Partitions

    def has_partition(self, partition: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM partitions WHERE name = ?", (partition,)
        ).fetchone()
        return row is not None

    def create_partition(self, partition: str) -> bool:
        """Create a partition. Returns False if it already existed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO partitions (name) VALUES (?)", (partition,)
            )
        created = cursor.rowcount == 1
        if created:
            logger.info("Created partition", extra={"partition": partition})
        return created

    def drop_partition(self, partition: str) -> None:
        self._require(partition)
        with self._transaction() as conn:
            conn.execute("DELETE FROM records WHERE partition = ?", (partition,))
            conn.execute("DELETE FROM partitions WHERE name = ?", (partition,))
        logger.info("Dropped partition", extra={"partition": partition})

    def list_partitions(self) -> list[str]:
        rows = self._conn.execute("SELECT name FROM partitions ORDER BY name").fetchall()
        return [name for (name,) in rows]

    # Records

    def put(self, partition: str, key: str, value: bytes) -> None:
        """Insert or overwrite one key."""
        self.put_many(partition, [(key, value)])

    def put_many(self, partition: str, items: Iterable[tuple[str, bytes]]) -> int:
        """Insert or overwrite several keys in one atomic write."""
        self._require(partition)
        rows = [(partition, key, value) for key, value in items]
        with self._transaction() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO records (partition, key, value) VALUES (?, ?, ?)",
                rows,
            )
        return len(rows)

    def get(self, partition: str, key: str) -> Optional[bytes]:
        self._require(partition)
        row = self._conn.execute(
            "SELECT value FROM records WHERE partition = ? AND key = ?", (partition, key)
        ).fetchone()
        return bytes(row[0]) if row is not None else None

    def delete(self, partition: str, key: str) -> None:
        self._require(partition)
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM records WHERE partition = ? AND key = ?", (partition, key)
            )

    def iterate(
        self,
        partition: str,
        from_key: Optional[str] = None,
        direction: Direction = Direction.FORWARD,
    ) -> RangeScan:
        """
        Scan a partition starting at `from_key` (inclusive).

        Forward scans return keys >= from_key in ascending order, backward
        scans keys <= from_key in descending order. Without `from_key` the
        scan starts at the first (or last) key.
        """
        self._require(partition)
        return RangeScan(self, partition, from_key, direction)

    def delete_range(
        self,
        partition: str,
        from_key: Optional[str],
        to_key: Optional[str],
    ) -> int:
        """
        Delete keys in [from_key, to_key). A None bound is open.

        Returns:
            Number of deleted keys
        """
        self._require(partition)
        clauses, params = ["partition = ?"], [partition]
        if from_key is not None:
            clauses.append("key >= ?")
            params.append(from_key)
        if to_key is not None:
            clauses.append("key < ?")
            params.append(to_key)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM records WHERE {' AND '.join(clauses)}", params
            )
        return cursor.rowcount

    def first_key(self, partition: str) -> Optional[str]:
        return next(iter(self._edge_keys(partition, Direction.FORWARD)), None)

    def last_key(self, partition: str) -> Optional[str]:
        return next(iter(self._edge_keys(partition, Direction.BACKWARD)), None)

    def _edge_keys(self, partition: str, direction: Direction) -> list[str]:
        self._require(partition)
        order = "ASC" if direction is Direction.FORWARD else "DESC"
        rows = self._conn.execute(
            f"SELECT key FROM records WHERE partition = ? ORDER BY key {order} LIMIT 1",
            (partition,),
        ).fetchall()
        return [key for (key,) in rows]

    def count(self, partition: str) -> int:
        self._require(partition)
        (total,) = self._conn.execute(
            "SELECT COUNT(*) FROM records WHERE partition = ?", (partition,)
        ).fetchone()
        return total

    def close(self) -> None:
        self._conn.close()


class _Transaction:
    """BEGIN/COMMIT around a block, ROLLBACK on error."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def __enter__(self) -> sqlite3.Connection:
        self.conn.execute("BEGIN IMMEDIATE")
        return self.conn

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.conn.execute("COMMIT")
            return
        self.conn.execute("ROLLBACK")
        if isinstance(exc, sqlite3.Error):
            raise StorageError(f"store write failed: {exc}") from exc
