"""
Client for the Telegram Bot API sendMessage method.

The bot token travels in the URL path: POST {base}/bot{token}/sendMessage
with a JSON body {chat_id, text}. Only HTTP 200 counts as delivered.
"""

import logging
from typing import Optional

import httpx
import orjson

from utils.errors import DeliveryRejected
from utils.schemas import OutboundMessage, Record

logger = logging.getLogger(__name__)


def chat_id_for(channel: str) -> str:
    """Numeric chat ids and @usernames pass through; bare names get an @."""
    if channel.startswith("@") or channel.lstrip("-").isdigit():
        return channel
    return f"@{channel}"


def render_message(record: Record, channel: str) -> OutboundMessage:
    return OutboundMessage(
        chat_id=chat_id_for(channel),
        text=f"{record.text}\n\n{record.created_at.isoformat()}",
    )


class TelegramClient:
    """Sends messages through one bot."""

    def __init__(self, http: httpx.AsyncClient, base_url: str, bot_token: str) -> None:
        self.http = http
        self.endpoint = f"{base_url.rstrip('/')}/bot{bot_token}/sendMessage"

    async def send_message(self, message: OutboundMessage) -> None:
        """
        Send one message.

        Raises:
            DeliveryRejected: On any non-200 response or transport failure
        """
        try:
            response = await self.http.post(self.endpoint, json=message.model_dump())
        except httpx.TransportError as e:
            raise DeliveryRejected(f"sendMessage request failed: {e}") from e

        if response.status_code == 200:
            return

        raise DeliveryRejected(
            f"sendMessage returned {response.status_code}",
            status_code=response.status_code,
            body=response.text,
            retry_after=_retry_after(response),
        )


def _retry_after(response: httpx.Response) -> Optional[int]:
    try:
        body = orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(body, dict):
        return None
    parameters = body.get("parameters") or {}
    value = parameters.get("retry_after")
    return int(value) if isinstance(value, (int, float)) else None
