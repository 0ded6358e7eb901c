"""
Delivery engine - drains an identity's partition to its downstream channel.

Records are read oldest-first (ascending key) starting at the delivery
cursor, sent one at a time with a fixed pause after every success, and
the cursor is persisted only at checkpoints or when the drain stops early.

Per identity the engine moves Idle -> Draining -> Compacted | PartialFailure:
- Compacted: everything up to the last delivered key is deleted, the cursor
  is cleared and an empty partition is dropped.
- PartialFailure (downstream rejection or shutdown): the cursor points at the
  record that was not delivered, so the next drain retries it first.

Delivery is at-least-once: a crash between a send and the next cursor write
repeats the unrecorded sends on the next drain.
"""

import asyncio
import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Optional

import orjson
from pydantic import ValidationError

from apps.relay.cursors import DeliveryCursor, key_after, partition_name
from apps.relay.state import StateTracker
from apps.relay.telegram import TelegramClient, render_message
from utils.errors import ConfigurationError, DeliveryRejected, StorageError
from utils.schemas import IdentityConfig, Record
from utils.store import RecordStore

logger = logging.getLogger(__name__)


class DrainStatus(enum.Enum):
    DRAINING = "draining"
    EMPTY = "empty"
    COMPACTED = "compacted"
    PARTIAL_FAILURE = "partial_failure"
    CANCELLED = "cancelled"


@dataclass
class DrainResult:
    identity: str
    status: DrainStatus
    delivered: int = 0
    compacted: int = 0
    cursor: Optional[str] = None
    error: Optional[DeliveryRejected] = None

    @property
    def ok(self) -> bool:
        return self.status in (DrainStatus.EMPTY, DrainStatus.COMPACTED)


def decode_record(value: bytes) -> Record:
    try:
        return Record.model_validate(orjson.loads(value))
    except (orjson.JSONDecodeError, ValidationError) as e:
        raise StorageError(f"undecodable record value: {e}") from e


def encode_record(record: Record) -> bytes:
    return orjson.dumps(record.model_dump(mode="json"))


class DeliveryEngine:
    """Relays stored records downstream in insertion order."""

    def __init__(
        self,
        store: RecordStore,
        state: StateTracker,
        sender: TelegramClient,
        delay_seconds: float = 3.0,
        checkpoint_interval: int = 50,
        shutdown_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.store = store
        self.state = state
        self.sender = sender
        self.delay_seconds = delay_seconds
        self.checkpoint_interval = checkpoint_interval
        self.shutdown_event = shutdown_event

    def _shutdown_requested(self) -> bool:
        return self.shutdown_event is not None and self.shutdown_event.is_set()

    async def drain(self, identity: IdentityConfig) -> DrainResult:
        """
        Deliver every undelivered record of one identity.

        Downstream rejections are returned as a PARTIAL_FAILURE result rather
        than raised. Storage errors propagate after the cursor is saved.
        """
        if not identity.channel:
            raise ConfigurationError(f"identity {identity.name} has no delivery channel")

        name = identity.name
        partition = partition_name(name)
        cursor = self.state.get_delivery_cursor(name)

        if not self.store.has_partition(partition):
            if cursor is not None:
                logger.warning(
                    "Clearing delivery cursor of missing partition",
                    extra={"identity": name, "partition": partition, "key": cursor.key},
                )
                self.state.clear_delivery_cursor(name)
            return DrainResult(identity=name, status=DrainStatus.EMPTY)

        result = DrainResult(identity=name, status=DrainStatus.DRAINING)
        start_key = cursor.key if cursor is not None else None
        last_delivered: Optional[str] = None
        in_flight: Optional[str] = None
        since_checkpoint = 0

        logger.info(
            "Draining partition",
            extra={"identity": name, "channel": identity.channel, "from_key": start_key},
        )

        # Records written after this point belong to the next drain.
        end_key = self.store.last_key(partition)
        scan = itertools.takewhile(
            lambda item: end_key is not None and item[0] <= end_key,
            self.store.iterate(partition, from_key=start_key),
        )

        try:
            for key, value in scan:
                if self._shutdown_requested():
                    logger.info("Shutdown requested, stopping delivery", extra={"identity": name, "key": key})
                    result.status = DrainStatus.CANCELLED
                    result.cursor = key
                    break

                in_flight = key
                if self.checkpoint_interval and since_checkpoint >= self.checkpoint_interval:
                    self.state.set_delivery_cursor(name, DeliveryCursor(key))
                    since_checkpoint = 0

                record = decode_record(value)
                try:
                    await self.sender.send_message(render_message(record, identity.channel))
                except DeliveryRejected as e:
                    result.status = DrainStatus.PARTIAL_FAILURE
                    result.cursor = key
                    result.error = e
                    log = logger.info if e.rate_limited else logger.warning
                    log(
                        "Delivery not successful, saving position",
                        extra={
                            "identity": name,
                            "key": key,
                            "status_code": e.status_code,
                            "retry_after": e.retry_after,
                            "body": e.body,
                        },
                    )
                    break

                result.delivered += 1
                since_checkpoint += 1
                last_delivered = key
                in_flight = None
                logger.info(
                    "Delivered record",
                    extra={"identity": name, "record_id": record.id, "delivered": result.delivered},
                )

                if self.delay_seconds:
                    await asyncio.sleep(self.delay_seconds)
            else:
                result.status = DrainStatus.COMPACTED if result.delivered or start_key else DrainStatus.EMPTY
        finally:
            self._settle(name, partition, start_key, last_delivered, in_flight, result)

        return result

    def _settle(
        self,
        name: str,
        partition: str,
        start_key: Optional[str],
        last_delivered: Optional[str],
        in_flight: Optional[str],
        result: DrainResult,
    ) -> None:
        """Runs once per drain on every exit path."""
        if result.status is DrainStatus.DRAINING:
            # Left through an exception: keep the position of the unfinished record.
            result.cursor = in_flight or self._next_key(partition, last_delivered, start_key)
            if result.cursor is None:
                result.status = DrainStatus.COMPACTED

        if result.cursor is not None:
            self.state.set_delivery_cursor(name, DeliveryCursor(result.cursor))
            logger.info(
                "Delivery cursor saved",
                extra={"identity": name, "key": result.cursor, "delivered": result.delivered},
            )
            return

        # Everything before the stored cursor was delivered by an earlier drain.
        if last_delivered is not None:
            upper = key_after(last_delivered)
        else:
            upper = start_key
        if upper is not None:
            result.compacted = self.store.delete_range(partition, None, upper)
        self.state.clear_delivery_cursor(name)

        if self.store.count(partition) == 0:
            self.store.drop_partition(partition)
        logger.info(
            "Finished delivery",
            extra={"identity": name, "delivered": result.delivered, "compacted": result.compacted},
        )

    def _next_key(self, partition: str, after: Optional[str], start_key: Optional[str]) -> Optional[str]:
        from_key = key_after(after) if after is not None else start_key
        for key, _ in self.store.iterate(partition, from_key=from_key):
            return key
        return None
