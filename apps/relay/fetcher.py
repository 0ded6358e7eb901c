"""
Pagination fetcher - traverses an identity's upstream timeline page by page.

Each page comes back newest-first together with either a continuation token
or nothing (the last page). The traversal never raises while iterating:
rate limits, error statuses, transport failures and malformed bodies end the
page sequence and are recorded on the traversal, so pages already handed out
stay valid.

Usage:
    client = TimelineClient(http, base_url, token)
    fetcher = PaginationFetcher(client, page_size=100, shutdown_event=event)

    traversal = fetcher.fetch(identity, resume_cursor)
    async for page in traversal:
        ...
    if traversal.outcome is FetchOutcome.FAILED:
        logger.warning("poll failed", extra={"error": str(traversal.error)})
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import httpx
import orjson
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from apps.relay.cursors import FetchCursor, NextToken, SinceMarker, rfc3339
from utils.errors import UpstreamError, UpstreamRateLimited
from utils.schemas import IdentityConfig, Record, TimelineResponse, UserLookupResponse

logger = logging.getLogger(__name__)

TWEET_FIELDS = "created_at"


class TimelineClient:
    """Thin upstream API client with bearer auth and transport retries."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        token: str,
        max_retries: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self.http = http
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.token = token
        self.max_retries = max_retries
        self.backoff = backoff

    async def get(self, path: str, params: dict[str, str]) -> httpx.Response:
        """
        GET an upstream path, retrying transport errors with exponential backoff.

        Raises:
            httpx.TransportError: If every attempt failed
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff, max=30),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.http.get(
                    self.base_url + path,
                    params=params,
                    headers={"Authorization": f"Bearer {self.token}"},
                )
        raise AssertionError("unreachable")

    async def get_timeline(self, user_id: str, params: dict[str, str]) -> httpx.Response:
        return await self.get(f"users/{user_id}/tweets", params)

    async def lookup_user_ids(self, usernames: list[str]) -> dict[str, str]:
        """
        Resolve upstream usernames to user ids.

        Returns:
            Mapping username -> user id for every username found

        Raises:
            UpstreamRateLimited: On HTTP 429
            UpstreamError: On any other failure
        """
        try:
            response = await self.get("users/by", {"usernames": ",".join(usernames)})
        except httpx.TransportError as e:
            raise UpstreamError(f"user lookup request failed: {e}") from e

        if response.status_code == 429:
            raise UpstreamRateLimited("user lookup rate limited", status_code=429)
        if response.status_code != 200:
            raise UpstreamError(
                f"user lookup failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            users = UserLookupResponse.model_validate(orjson.loads(response.content))
        except (orjson.JSONDecodeError, ValidationError) as e:
            raise UpstreamError(f"malformed user lookup response: {e}") from e

        if users.errors:
            logger.warning("User lookup reported errors", extra={"errors": users.errors})
        return {user.username: user.id for user in users.data or []}


@dataclass
class Page:
    """One upstream page. `next_token` is None on the terminal page."""

    records: list[Record]
    next_token: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.next_token is None


class FetchOutcome(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Traversal:
    """A single pass over an identity's timeline.

    Iterate it once; afterwards `outcome`, `pages` and `error` describe how
    the pass ended.
    """

    fetcher: "PaginationFetcher"
    identity: IdentityConfig
    resume_cursor: Optional[FetchCursor]
    outcome: FetchOutcome = FetchOutcome.PENDING
    pages: int = 0
    error: Optional[UpstreamError] = None
    _started: bool = field(default=False, repr=False)

    def __aiter__(self) -> AsyncIterator[Page]:
        if self._started:
            raise RuntimeError("a traversal can only be iterated once")
        self._started = True
        return self._pages()

    def _fail(self, error: UpstreamError) -> None:
        self.outcome = FetchOutcome.FAILED
        self.error = error
        logger.warning(
            "Timeline request not successful",
            extra={
                "identity": self.identity.name,
                "status_code": error.status_code,
                "error": str(error),
                "pages": self.pages,
            },
        )

    async def _pages(self) -> AsyncIterator[Page]:
        client = self.fetcher.client
        cursor = self.resume_cursor

        while True:
            if self.fetcher.shutdown_requested():
                self.outcome = FetchOutcome.CANCELLED
                logger.info(
                    "Shutdown requested, stopping timeline traversal",
                    extra={"identity": self.identity.name, "pages": self.pages},
                )
                return

            params = self.fetcher.build_params(self.identity, cursor)
            try:
                response = await client.get_timeline(self.identity.user_id, params)
            except httpx.TransportError as e:
                self._fail(UpstreamError(f"timeline request failed: {e}"))
                return

            if response.status_code == 429:
                self.outcome = FetchOutcome.RATE_LIMITED
                logger.info(
                    "Timeline rate limit reached, wait at least 15 minutes before the next try",
                    extra={"identity": self.identity.name, "pages": self.pages},
                )
                return

            if response.status_code != 200:
                self._fail(UpstreamError(
                    f"timeline request returned {response.status_code}: {response.text}",
                    status_code=response.status_code,
                ))
                return

            try:
                body = TimelineResponse.model_validate(orjson.loads(response.content))
            except (orjson.JSONDecodeError, ValidationError) as e:
                self._fail(UpstreamError(f"malformed timeline response: {e}", status_code=200))
                return

            # A time-filtered request can keep returning next_token on empty pages.
            if not body.records:
                self.outcome = FetchOutcome.COMPLETED
                logger.info(
                    "Finished polling timeline",
                    extra={"identity": self.identity.name, "pages": self.pages},
                )
                return

            self.pages += 1
            page = Page(records=body.records, next_token=body.meta.next_token)
            logger.debug(
                "Fetched timeline page",
                extra={
                    "identity": self.identity.name,
                    "page": self.pages,
                    "records": len(page.records),
                    "newest_id": body.meta.newest_id,
                    "oldest_id": body.meta.oldest_id,
                },
            )
            yield page

            if page.terminal:
                self.outcome = FetchOutcome.COMPLETED
                logger.info(
                    "Finished polling timeline",
                    extra={"identity": self.identity.name, "pages": self.pages},
                )
                return
            cursor = NextToken(page.next_token)


class PaginationFetcher:
    """Builds timeline traversals for identities."""

    def __init__(
        self,
        client: TimelineClient,
        page_size: int = 100,
        shutdown_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.client = client
        self.page_size = page_size
        self.shutdown_event = shutdown_event

    def shutdown_requested(self) -> bool:
        return self.shutdown_event is not None and self.shutdown_event.is_set()

    def fetch(self, identity: IdentityConfig, resume_cursor: Optional[FetchCursor] = None) -> Traversal:
        """
        Start a traversal of the identity's timeline.

        Args:
            identity: Identity with a resolved user_id
            resume_cursor: Where to continue from; None starts at the newest page
        """
        if not identity.user_id:
            raise ValueError(f"identity {identity.name} has no resolved user_id")
        return Traversal(fetcher=self, identity=identity, resume_cursor=resume_cursor)

    def build_params(self, identity: IdentityConfig, cursor: Optional[FetchCursor]) -> dict[str, str]:
        """
        Query parameters for one page request.

        Exactly one continuation mechanism is sent: pagination_token for a
        token, otherwise since_id (preferred) or start_time for a marker.
        """
        params = {
            "tweet.fields": TWEET_FIELDS,
            "max_results": str(identity.max_results or self.page_size),
        }
        if identity.end_time is not None:
            params["end_time"] = rfc3339(identity.end_time)

        if isinstance(cursor, NextToken):
            params["pagination_token"] = cursor.token
        elif isinstance(cursor, SinceMarker):
            if cursor.since_id is not None:
                params["since_id"] = cursor.since_id
            else:
                params["start_time"] = rfc3339(cursor.start_time)
        return params
