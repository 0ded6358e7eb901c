"""
Relay event publisher.

Publishes one `identity_synced` event per identity cycle to a Redis Pub/Sub
channel so other services can follow ingestion and delivery progress.
Publishing is best effort: a failure is logged and never affects the cycle
that produced the event.
"""

import logging
from typing import Optional

import orjson
import redis.asyncio as redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.schemas import RelayEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes RelayEvent payloads to one Redis channel over a pooled connection."""

    def __init__(self, redis_url: str, channel: str, max_connections: int = 10) -> None:
        self.redis_url = redis_url
        self.channel = channel
        self.max_connections = max_connections
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                decode_responses=False,
            )

    @retry(
        retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _send(self, payload: bytes) -> None:
        await self.connect()
        await self.client.publish(self.channel, payload)

    async def publish(self, event: RelayEvent) -> bool:
        """
        Publish a relay event.

        Connection and timeout errors are retried before giving up.

        Returns:
            True if the event was published
        """
        try:
            await self._send(orjson.dumps(event.model_dump(mode="json")))
        except (redis.RedisError, OSError) as e:
            logger.error(
                "Failed to publish relay event",
                extra={"channel": self.channel, "identity": event.identity, "error": str(e)},
            )
            return False

        logger.debug(
            "Published relay event",
            extra={"channel": self.channel, "identity": event.identity, "event_type": event.type},
        )
        return True

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None


def build_event_publisher(redis_url: str, channel: str, max_connections: int = 10) -> Optional[EventPublisher]:
    """An EventPublisher for `redis_url`, or None when events are disabled."""
    if not redis_url:
        return None
    return EventPublisher(redis_url, channel, max_connections=max_connections)
