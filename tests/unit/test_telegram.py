"""
Tests for the Telegram sendMessage client.
"""

from datetime import datetime, timezone

import httpx
import pytest

from apps.relay.telegram import chat_id_for, render_message
from utils.errors import DeliveryRejected
from utils.schemas import OutboundMessage, Record


@pytest.mark.parametrize(
    "channel, expected",
    [("news", "@news"), ("@news", "@news"), ("-1001234", "-1001234"), ("42", "42")],
)
def test_chat_id_for(channel, expected):
    assert chat_id_for(channel) == expected


def test_render_message_appends_timestamp():
    record = Record(id="1", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc), text="hello")

    message = render_message(record, "news")

    assert message.chat_id == "@news"
    assert message.text == "hello\n\n2024-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_send_message_posts_to_bot_endpoint(telegram, api):
    await telegram.send_message(OutboundMessage(chat_id="@news", text="hi"))

    assert api.sent == [{"chat_id": "@news", "text": "hi"}]
    assert telegram.endpoint == "https://telegram.test/botbot-token/sendMessage"


@pytest.mark.asyncio
async def test_rate_limited_send_carries_retry_after(telegram, api):
    api.send_results = [
        httpx.Response(429, json={"ok": False, "parameters": {"retry_after": 17}}),
    ]

    with pytest.raises(DeliveryRejected) as excinfo:
        await telegram.send_message(OutboundMessage(chat_id="@news", text="hi"))

    assert excinfo.value.rate_limited
    assert excinfo.value.retry_after == 17


@pytest.mark.asyncio
async def test_error_status_is_rejected(telegram, api):
    api.send_results = [httpx.Response(400, text="Bad Request: chat not found")]

    with pytest.raises(DeliveryRejected) as excinfo:
        await telegram.send_message(OutboundMessage(chat_id="@news", text="hi"))

    assert excinfo.value.status_code == 400
    assert not excinfo.value.rate_limited
    assert excinfo.value.retry_after is None
    assert "chat not found" in excinfo.value.body


@pytest.mark.asyncio
async def test_transport_failure_is_rejected(telegram, api):
    api.send_results = [httpx.ConnectError("refused")]

    with pytest.raises(DeliveryRejected) as excinfo:
        await telegram.send_message(OutboundMessage(chat_id="@news", text="hi"))

    assert excinfo.value.status_code is None
