"""
State tracker - durable per-identity cursors.

Cursors live in a dedicated `state` partition of the record store:
- `<identity>` holds the fetch cursor (ISO-8601 marker or upstream token)
- `<identity>:delivery` holds the key of the next record to deliver
- `<identity>:resume` holds the upstream token of a traversal that stopped
  before its last page

Identity names never contain ":", so these keys cannot collide.
"""

import logging
from typing import Optional

from apps.relay.cursors import (
    DELIVERY_SUFFIX,
    STATE_PARTITION,
    RESUME_SUFFIX,
    DeliveryCursor,
    FetchCursor,
    NextToken,
    SinceMarker,
    decode_fetch_cursor,
    encode_fetch_cursor,
    to_utc,
)
from utils.store import RecordStore

logger = logging.getLogger(__name__)


class StateTracker:
    """Fetch and delivery cursors for every identity."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self.store.create_partition(STATE_PARTITION)

    def get_fetch_cursor(self, identity: str) -> Optional[FetchCursor]:
        value = self.store.get(STATE_PARTITION, identity)
        if value is None:
            return None
        return decode_fetch_cursor(value.decode("utf-8"))

    def set_fetch_cursor(self, identity: str, cursor: FetchCursor) -> bool:
        """
        Persist a fetch cursor. The write is committed before returning.

        A time marker older than the stored one is ignored so the fetch
        cursor never moves backwards.

        Returns:
            True if the cursor was written
        """
        current = self.get_fetch_cursor(identity)
        if (
            isinstance(cursor, SinceMarker)
            and isinstance(current, SinceMarker)
            and cursor.start_time is not None
            and current.start_time is not None
            and to_utc(cursor.start_time) < current.start_time
        ):
            logger.warning(
                "Ignoring fetch cursor older than stored marker",
                extra={
                    "identity": identity,
                    "stored": current.start_time.isoformat(),
                    "offered": to_utc(cursor.start_time).isoformat(),
                },
            )
            return False

        value = encode_fetch_cursor(cursor)
        self.store.put(STATE_PARTITION, identity, value.encode("utf-8"))
        logger.debug("Fetch cursor set", extra={"identity": identity, "cursor": value})
        return True

    def get_delivery_cursor(self, identity: str) -> Optional[DeliveryCursor]:
        value = self.store.get(STATE_PARTITION, identity + DELIVERY_SUFFIX)
        if value is None:
            return None
        return DeliveryCursor(key=value.decode("utf-8"))

    def set_delivery_cursor(self, identity: str, cursor: DeliveryCursor) -> None:
        current = self.get_delivery_cursor(identity)
        if current is not None and cursor.key < current.key:
            raise ValueError(
                f"delivery cursor for {identity} cannot move back "
                f"from {current.key} to {cursor.key}"
            )
        self.store.put(STATE_PARTITION, identity + DELIVERY_SUFFIX, cursor.key.encode("utf-8"))
        logger.debug("Delivery cursor set", extra={"identity": identity, "key": cursor.key})

    def clear_delivery_cursor(self, identity: str) -> None:
        self.store.delete(STATE_PARTITION, identity + DELIVERY_SUFFIX)

    def get_resume_token(self, identity: str) -> Optional[NextToken]:
        value = self.store.get(STATE_PARTITION, identity + RESUME_SUFFIX)
        if value is None:
            return None
        return NextToken(value.decode("utf-8"))

    def set_resume_token(self, identity: str, token: NextToken) -> None:
        """Remember where an unfinished traversal continues on the next poll."""
        self.store.put(STATE_PARTITION, identity + RESUME_SUFFIX, token.token.encode("utf-8"))
        logger.debug("Resume token set", extra={"identity": identity, "token": token.token})

    def clear_resume_token(self, identity: str) -> None:
        self.store.delete(STATE_PARTITION, identity + RESUME_SUFFIX)

    def cursors(self) -> dict[str, dict[str, str]]:
        """All persisted cursors keyed by identity, for inspection."""
        result: dict[str, dict[str, str]] = {}
        for key, value in self.store.iterate(STATE_PARTITION):
            if key.endswith(DELIVERY_SUFFIX):
                identity, kind = key[: -len(DELIVERY_SUFFIX)], "delivery"
            elif key.endswith(RESUME_SUFFIX):
                identity, kind = key[: -len(RESUME_SUFFIX)], "resume"
            else:
                identity, kind = key, "fetch"
            result.setdefault(identity, {})[kind] = value.decode("utf-8")
        return result
