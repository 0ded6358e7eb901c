"""
Shared fixtures for the relay tests.
"""

import asyncio

import pytest

from apps.relay.delivery import DeliveryEngine
from apps.relay.fetcher import PaginationFetcher, TimelineClient
from apps.relay.orchestrator import Orchestrator
from apps.relay.state import StateTracker
from apps.relay.telegram import TelegramClient
from tests.fakes import TELEGRAM_BASE, TIMELINE_BASE, FakeApi
from utils.schemas import IdentityConfig
from utils.store import RecordStore


@pytest.fixture
def store(tmp_path):
    store = RecordStore(str(tmp_path / "relay.db"))
    yield store
    store.close()


@pytest.fixture
def state(store):
    return StateTracker(store)


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def shutdown_event():
    return asyncio.Event()


@pytest.fixture
def alice():
    return IdentityConfig(username="alice", user_id="100", channel="alice_channel")


@pytest.fixture
def timeline_client(api):
    return TimelineClient(api.client(), TIMELINE_BASE, "upstream-token", max_retries=3, backoff=0)


@pytest.fixture
def fetcher(timeline_client, shutdown_event):
    return PaginationFetcher(timeline_client, page_size=100, shutdown_event=shutdown_event)


@pytest.fixture
def telegram(api):
    return TelegramClient(api.client(), TELEGRAM_BASE, "bot-token")


@pytest.fixture
def delivery(store, state, telegram, shutdown_event):
    return DeliveryEngine(store, state, telegram, delay_seconds=0, shutdown_event=shutdown_event)


@pytest.fixture
def make_orchestrator(store, state, fetcher, delivery, timeline_client, shutdown_event):
    def build(*identities: IdentityConfig, **kwargs) -> Orchestrator:
        return Orchestrator(
            identities=list(identities),
            store=store,
            state=state,
            fetcher=fetcher,
            delivery=delivery,
            client=timeline_client,
            shutdown_event=shutdown_event,
            **kwargs,
        )

    return build
