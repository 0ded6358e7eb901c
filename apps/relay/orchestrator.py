"""
Orchestrator - runs the fetch-then-drain cycle for every identity.

Identities are put on a work queue and picked up by a fixed number of
workers. A worker holds the identity's lease while it polls the upstream
timeline into the identity's partition and then drains that partition to
the identity's channel. A failing identity is logged and reported; it never
stops the others.

Usage:
    async with open_relay(settings, shutdown_event) as orchestrator:
        reports = await orchestrator.run_cycle()
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import httpx

from apps.relay.cursors import (
    NextToken,
    SinceMarker,
    identity_from_partition,
    partition_name,
    record_key,
    resolve_resume_cursor,
)
from apps.relay.delivery import DeliveryEngine, DrainResult, encode_record
from apps.relay.fetcher import FetchOutcome, Page, PaginationFetcher, TimelineClient
from apps.relay.locks import IdentityLocks
from apps.relay.publisher import EventPublisher, build_event_publisher
from apps.relay.state import StateTracker
from apps.relay.telegram import TelegramClient
from utils.config import Settings
from utils.errors import UpstreamError, UpstreamRateLimited
from utils.schemas import IdentityConfig, RelayEvent
from utils.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    identity: str
    outcome: FetchOutcome
    pages: int = 0
    ingested: int = 0
    error: Optional[UpstreamError] = None


@dataclass
class IdentityReport:
    identity: str
    poll: Optional[PollResult] = None
    drain: Optional[DrainResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        if self.poll is not None and self.poll.outcome is FetchOutcome.FAILED:
            return False
        return self.drain is None or self.drain.ok


@dataclass
class Orchestrator:
    """Sequences PaginationFetcher -> RecordStore -> StateTracker -> DeliveryEngine."""

    identities: list[IdentityConfig]
    store: RecordStore
    state: StateTracker
    fetcher: PaginationFetcher
    delivery: DeliveryEngine
    client: TimelineClient
    concurrency: int = 4
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    events: Optional[EventPublisher] = None
    locks: IdentityLocks = field(default_factory=IdentityLocks)
    user_ids: dict[str, str] = field(default_factory=dict)

    async def run_cycle(self) -> list[IdentityReport]:
        """Process every configured identity once."""
        self.report_unconfigured_partitions()
        await self.resolve_user_ids()

        queue: asyncio.Queue[IdentityConfig] = asyncio.Queue()
        for identity in self.identities:
            queue.put_nowait(identity)

        reports: list[IdentityReport] = []

        async def worker() -> None:
            while not self.shutdown_event.is_set():
                try:
                    identity = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    reports.append(await self.process_identity(identity))
                finally:
                    queue.task_done()

        workers = max(1, min(self.concurrency, len(self.identities)))
        await asyncio.gather(*(worker() for _ in range(workers)))

        logger.info(
            "Cycle finished",
            extra={
                "identities": len(self.identities),
                "processed": len(reports),
                "failed": sum(1 for report in reports if not report.ok),
            },
        )
        return reports

    async def process_identity(self, identity: IdentityConfig) -> IdentityReport:
        """Poll then drain one identity while holding its lease."""
        report = IdentityReport(identity=identity.name)
        try:
            async with self.locks.lease(identity.name):
                if identity.included:
                    report.poll = await self.poll(identity)
                if identity.channel and not self.shutdown_event.is_set():
                    report.drain = await self.delivery.drain(identity)
        except Exception as e:
            report.error = str(e)
            logger.error(
                "Identity cycle failed",
                extra={"identity": identity.name, "error": str(e)},
                exc_info=True,
            )

        if self.events is not None:
            await self.events.publish(_event_from_report(report))
        return report

    async def poll(self, identity: IdentityConfig) -> PollResult:
        """
        Fetch new records into the identity's partition.

        The first record of the first page is the newest one; its timestamp
        becomes the fetch cursor before any record of this poll is written.
        A traversal that stops before its last page leaves a resume token, and
        the next poll continues from that token before it returns to the marker.
        """
        user_id = identity.user_id or self.user_ids.get(identity.username)
        if not user_id:
            logger.warning("Skipping poll, user id not resolved", extra={"identity": identity.name})
            return PollResult(
                identity=identity.name,
                outcome=FetchOutcome.FAILED,
                error=UpstreamError(f"unresolved upstream user: {identity.username}"),
            )
        if identity.user_id != user_id:
            identity = identity.model_copy(update={"user_id": user_id})

        partition = partition_name(identity.name)
        self.store.create_partition(partition)

        resume_token = self.state.get_resume_token(identity.name)
        resume = resolve_resume_cursor(self.state.get_fetch_cursor(identity.name), identity, resume_token)
        logger.info(
            "Polling timeline",
            extra={"identity": identity.name, "resume_cursor": repr(resume)},
        )

        traversal = self.fetcher.fetch(identity, resume)
        ingested = 0
        # A continued traversal only reaches records older than the stored marker.
        marker_saved = resume_token is not None
        last_page: Optional[Page] = None
        try:
            async for page in traversal:
                if not marker_saved:
                    newest = page.records[0]
                    self.state.set_fetch_cursor(identity.name, SinceMarker(start_time=newest.created_at))
                    marker_saved = True
                ingested += self.store.put_many(
                    partition,
                    [(record_key(record.id), encode_record(record)) for record in page.records],
                )
                last_page = page
        finally:
            self._save_resume_point(identity.name, traversal.outcome, resume_token, last_page)

        logger.info(
            "Poll finished",
            extra={
                "identity": identity.name,
                "outcome": traversal.outcome.value,
                "pages": traversal.pages,
                "ingested": ingested,
            },
        )
        return PollResult(
            identity=identity.name,
            outcome=traversal.outcome,
            pages=traversal.pages,
            ingested=ingested,
            error=traversal.error,
        )

    def _save_resume_point(
        self,
        name: str,
        outcome: FetchOutcome,
        resume_token: Optional[NextToken],
        last_page: Optional[Page],
    ) -> None:
        if outcome is FetchOutcome.COMPLETED:
            if resume_token is not None:
                self.state.clear_resume_token(name)
                logger.info("Resumed traversal completed", extra={"identity": name})
            return
        if last_page is not None and last_page.next_token is not None:
            self.state.set_resume_token(name, NextToken(last_page.next_token))
            logger.info(
                "Traversal stopped before its last page, resume token saved",
                extra={"identity": name, "outcome": outcome.value, "token": last_page.next_token},
            )

    async def resolve_user_ids(self) -> None:
        """Look up upstream ids for polled identities configured without one."""
        missing = sorted({
            identity.username
            for identity in self.identities
            if identity.included and not identity.user_id and identity.username not in self.user_ids
        })
        if not missing:
            return
        try:
            resolved = await self.client.lookup_user_ids(missing)
        except UpstreamRateLimited:
            logger.info("User lookup rate limited", extra={"usernames": missing})
            return
        except UpstreamError as e:
            logger.warning("User lookup failed", extra={"usernames": missing, "error": str(e)})
            return

        self.user_ids.update(resolved)
        unresolved = [username for username in missing if username not in resolved]
        if unresolved:
            logger.warning("Upstream users not found", extra={"usernames": unresolved})

    def report_unconfigured_partitions(self) -> list[str]:
        """Identities with stored records but no configuration entry."""
        configured = {identity.name for identity in self.identities}
        orphans = []
        for partition in self.store.list_partitions():
            name = identity_from_partition(partition)
            if name is not None and name not in configured:
                orphans.append(name)
        if orphans:
            logger.warning(
                "Stored identities without configuration, records kept until configured",
                extra={"identities": orphans},
            )
        return orphans


def _event_from_report(report: IdentityReport) -> RelayEvent:
    return RelayEvent(
        identity=report.identity,
        poll_outcome=report.poll.outcome.value if report.poll else None,
        ingested=report.poll.ingested if report.poll else 0,
        drain_status=report.drain.status.value if report.drain else None,
        delivered=report.drain.delivered if report.drain else 0,
        error=report.error,
    )


@asynccontextmanager
async def open_relay(
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> AsyncIterator[Orchestrator]:
    """Build an Orchestrator and its collaborators, closing them on exit."""
    store = RecordStore(settings.STORE_PATH)
    events = build_event_publisher(
        settings.REDIS_URL, settings.REDIS_CHANNEL_EVENTS, settings.REDIS_MAX_CONNECTIONS
    )
    try:
        async with httpx.AsyncClient(timeout=settings.API_TIMEOUT) as http:
            state = StateTracker(store)
            client = TimelineClient(
                http,
                settings.TIMELINE_API_BASE,
                settings.TIMELINE_API_TOKEN,
                max_retries=settings.FETCH_MAX_RETRIES,
                backoff=settings.FETCH_RETRY_BACKOFF,
            )
            yield Orchestrator(
                identities=list(settings.IDENTITIES),
                store=store,
                state=state,
                fetcher=PaginationFetcher(client, settings.TIMELINE_PAGE_SIZE, shutdown_event),
                delivery=DeliveryEngine(
                    store,
                    state,
                    TelegramClient(http, settings.TELEGRAM_API_BASE, settings.TELEGRAM_BOT_TOKEN),
                    delay_seconds=settings.DELIVERY_DELAY_SECONDS,
                    checkpoint_interval=settings.DELIVERY_CHECKPOINT_INTERVAL,
                    shutdown_event=shutdown_event,
                ),
                client=client,
                concurrency=settings.WORKER_CONCURRENCY,
                shutdown_event=shutdown_event,
                events=events,
            )
    finally:
        if events is not None:
            await events.close()
        store.close()
