"""
Cursor value types, partition naming and record keys.

A fetch cursor is either a `NextToken` (exact upstream continuation) or a
`SinceMarker` (last seen record id or timestamp). A delivery cursor names the
key of the next record to deliver.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from utils.schemas import IdentityConfig

TIMELINE_PREFIX = "timeline"
STATE_PARTITION = "state"
DELIVERY_SUFFIX = ":delivery"
RESUME_SUFFIX = ":resume"

RECORD_KEY_WIDTH = 20

# Seconds added to a persisted time marker before it is sent as start_time,
# so the record that set the marker is not fetched again.
MARKER_RESUME_OFFSET = timedelta(seconds=1)


@dataclass(frozen=True)
class NextToken:
    token: str


@dataclass(frozen=True)
class SinceMarker:
    since_id: Optional[str] = None
    start_time: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.since_id is None and self.start_time is None:
            raise ValueError("SinceMarker needs since_id or start_time")


FetchCursor = Union[NextToken, SinceMarker]


@dataclass(frozen=True)
class DeliveryCursor:
    key: str


def partition_name(identity_name: str) -> str:
    return f"{TIMELINE_PREFIX}:{identity_name}"


def identity_from_partition(partition: str) -> Optional[str]:
    """Inverse of partition_name; None for partitions that hold no records."""
    prefix, sep, name = partition.partition(":")
    if prefix != TIMELINE_PREFIX or not sep or not name:
        return None
    return name


def record_key(record_id: str) -> str:
    """
    Store key for a record id.

    Numeric ids are zero padded so that key order matches numeric order
    (upstream ids grow with creation time).
    """
    if record_id.isdigit():
        return record_id.zfill(RECORD_KEY_WIDTH)
    return record_id


def key_after(key: str) -> str:
    """Smallest key strictly greater than `key`."""
    return key + "\x00"


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def rfc3339(value: datetime) -> str:
    """Format accepted by the upstream start_time/end_time parameters."""
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def encode_fetch_cursor(cursor: FetchCursor) -> str:
    if isinstance(cursor, NextToken):
        return cursor.token
    if cursor.start_time is not None:
        return to_utc(cursor.start_time).isoformat()
    # Id markers are only ever seeded from configuration.
    raise ValueError("only time markers and tokens are persisted")


def decode_fetch_cursor(value: str) -> FetchCursor:
    """ISO-8601 values are time markers; anything else is an upstream token."""
    try:
        return SinceMarker(start_time=to_utc(datetime.fromisoformat(value.replace("Z", "+00:00"))))
    except ValueError:
        return NextToken(value)


def resolve_resume_cursor(
    persisted: Optional[FetchCursor],
    identity: IdentityConfig,
    resume_token: Optional[NextToken] = None,
) -> Optional[FetchCursor]:
    """
    Pick where a poll starts.

    An unfinished traversal (`resume_token`) is continued first. Otherwise
    persisted state wins over configuration. A persisted time marker is
    advanced by one second. Without state, a configured since_id is used
    before a configured start_time.
    """
    if resume_token is not None:
        return resume_token
    if isinstance(persisted, NextToken):
        return persisted
    if isinstance(persisted, SinceMarker):
        if persisted.start_time is not None:
            return SinceMarker(start_time=persisted.start_time + MARKER_RESUME_OFFSET)
        return persisted

    if identity.since_id:
        return SinceMarker(since_id=identity.since_id)
    if identity.start_time is not None:
        return SinceMarker(start_time=to_utc(identity.start_time))
    return None
