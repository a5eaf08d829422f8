"""Fetch strategy contract and the session state machine shared by remote backends."""

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import TypeVar

import httpx

from ..errors import AuthError, NetworkError, NotFound, ParseError
from ..models import Abstract, BatchResult, FeedUpdate, Summary

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FetchStrategy(ABC):
    """Backend-specific way of pulling feeds and pushing article state."""

    kind: str

    @abstractmethod
    async def fetch_one(self, feed_url: str, summary: Summary | None, force: bool) -> FeedUpdate:
        """Fetch one feed. Unless ``force`` is set, stored validators skip unchanged feeds."""

    @abstractmethod
    async def fetch_all(self, summaries: Mapping[str, Summary], force: bool) -> BatchResult:
        """Fetch every feed. Per-feed failures are recorded, never raised."""

    @abstractmethod
    async def add_feed(self, feed_url: str) -> FeedUpdate:
        """Validate (and for remote services, subscribe to) a new feed."""

    async def del_feed(self, feed_url: str, summary: Summary | None) -> None:
        """Unsubscribe upstream. Nothing to do for purely local backends."""

    async def push_mutation(self, abstract: Abstract, fields: frozenset[str]) -> None:
        """Mirror a read/favorite change upstream. Nothing to do for local backends."""

    async def fetch_content(self, abstract: Abstract) -> str:
        raise NotFound(f"Content for article {abstract.id} is not available")

    async def open(self) -> None:
        """Establish whatever session the backend needs."""

    async def aclose(self) -> None:
        """Release network resources."""


def translate_http_error(e: Exception, what: str) -> Exception:
    """Map an httpx failure onto the feedsync error taxonomy."""
    if isinstance(e, httpx.InvalidURL):
        return ParseError(f"Invalid URL {what}: {e}")
    if isinstance(e, httpx.TimeoutException):
        return NetworkError(f"Timed out fetching {what}")
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        if status in (404, 410):
            return NotFound(f"{what} returned HTTP {status}")
        return NetworkError(f"{what} returned HTTP {status}")
    return NetworkError(f"Failed to fetch {what}: {e}")


def stream_since(
    subscribed: Iterable[str], summaries: Mapping[str, Summary], force: bool
) -> int | None:
    """Oldest sync cursor across upstream feeds, or None when a full listing is needed.

    A feed subscribed upstream without a local cursor has never been synced,
    so its older articles are only reachable through a full listing.
    """
    if force:
        return None
    cursors = []
    for url in subscribed:
        summary = summaries.get(url)
        if summary is None or summary.cursor is None:
            return None
        cursors.append(int(summary.cursor))
    return min(cursors, default=None)


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class RemoteSession(FetchStrategy):
    """Base for strategies that talk to an authenticated aggregation service.

    ``call`` runs one API request inside the session state machine: a request
    failing with :class:`AuthError` expires the session, triggers exactly one
    re-authentication and one retry, and a second auth failure is raised.
    """

    def __init__(self, timeout: float, http_client: httpx.AsyncClient | None = None):
        self.state = SessionState.UNAUTHENTICATED
        self._login_lock = asyncio.Lock()
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @abstractmethod
    async def authenticate(self) -> None:
        """Obtain a fresh session token, raising AuthError on rejection."""

    async def _login(self) -> None:
        async with self._login_lock:
            # Another task may have logged in while we waited for the lock.
            if self.state is SessionState.AUTHENTICATED:
                return
            self.state = SessionState.AUTHENTICATING
            try:
                await self.authenticate()
            except BaseException:
                self.state = SessionState.UNAUTHENTICATED
                raise
            self.state = SessionState.AUTHENTICATED

    async def open(self) -> None:
        await self._login()

    async def call(self, request: Callable[[], Awaitable[T]]) -> T:
        if self.state is not SessionState.AUTHENTICATED:
            await self._login()
        try:
            return await request()
        except AuthError:
            self.state = SessionState.EXPIRED
            logger.info("%s session expired, re-authenticating", self.kind)
        await self._login()
        try:
            return await request()
        except AuthError:
            self.state = SessionState.EXPIRED
            raise

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()
