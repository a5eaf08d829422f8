"""Tiny Tiny RSS backend using its JSON API."""

import logging
from collections.abc import Mapping

import httpx

from ..errors import AuthError, FeedSyncError, InvalidFeed, NetworkError, NotFound, ParseError
from ..models import Abstract, BatchResult, FeedUpdate, FetchedItem, Summary
from .base import RemoteSession, stream_since, translate_http_error

logger = logging.getLogger(__name__)

ALL_FEEDS = -3  # getFeeds: every feed, categorized or not
ALL_ARTICLES = -4  # getHeadlines: virtual feed of every article
FIELD_STARRED = 0
FIELD_UNREAD = 2
MAX_HEADLINES = 200  # server-side cap per getHeadlines call


class TTRSSFetch(RemoteSession):
    """Mirrors a TTRSS account. Session ids come from the ``login`` op."""

    kind = "ttrss"

    def __init__(
        self,
        api_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        page_size: int = MAX_HEADLINES,
        max_items: int = 5000,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout, http_client)
        self.api_url = api_url
        self._username = username
        self._password = password
        self._page_size = min(page_size, MAX_HEADLINES)
        self._max_items = max_items
        self._session_id: str | None = None

    async def _post(self, op: str, **params):
        """Issue one API op and return its ``content``; raises AuthError on NOT_LOGGED_IN."""
        payload = {"op": op, **params}
        if self._session_id and op != "login":
            payload["sid"] = self._session_id
        try:
            response = await self._client.post(self.api_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise translate_http_error(e, f"TTRSS {op}") from e
        except ValueError as e:
            raise ParseError(f"TTRSS {op} returned invalid JSON") from e

        content = data.get("content")
        if data.get("status", 0) != 0:
            error = content.get("error", "unknown error") if isinstance(content, dict) else content
            if error in ("NOT_LOGGED_IN", "LOGIN_ERROR"):
                raise AuthError(f"TTRSS {op}: {error}")
            raise NetworkError(f"TTRSS {op} failed: {error}")
        return content

    async def _api(self, op: str, **params):
        return await self.call(lambda: self._post(op, **params))

    async def authenticate(self) -> None:
        logger.debug("Authenticating to %s", self.api_url)
        self._session_id = None
        content = await self._post("login", user=self._username, password=self._password)
        session_id = content.get("session_id") if isinstance(content, dict) else None
        if not session_id:
            raise AuthError("No session_id found in login response")
        self._session_id = session_id
        logger.info("TTRSS authentication successful")

    async def _list_feeds(self) -> dict[str, FeedUpdate]:
        categories = await self._api("getCategories", include_empty=True)
        names = {str(c["id"]): c.get("title", "") for c in categories or []}
        feeds = await self._api("getFeeds", cat_id=ALL_FEEDS)

        result = {}
        for feed in feeds or []:
            url = feed.get("feed_url")
            if not url:
                continue
            cat = names.get(str(feed.get("cat_id", 0)), "")
            # cat_id 0 is "Uncategorized" and maps to the tree root.
            folder = (cat,) if cat and str(feed.get("cat_id", 0)) != "0" else ()
            result[url] = FeedUpdate(
                feed_url=url,
                title=feed.get("title") or url,
                link=feed.get("site_url", ""),
                remote_id=str(feed["id"]),
                folder=folder,
                authoritative_state=True,
            )
        return result

    async def _headlines(self, feed_id: int | str, since_id: int | None) -> list[dict]:
        """Page through getHeadlines until a short page or the item cap."""
        headlines: list[dict] = []
        while len(headlines) < self._max_items:
            params = {
                "feed_id": feed_id,
                "limit": min(self._page_size, self._max_items - len(headlines)),
                "skip": len(headlines),
                "show_content": True,
                "view_mode": "all_articles",
                "order_by": "feed_dates",
            }
            if since_id:
                params["since_id"] = since_id
            page = await self._api("getHeadlines", **params) or []
            headlines.extend(page)
            if len(page) < params["limit"]:
                break
        return headlines

    @staticmethod
    def _item(feed_url: str, headline: dict) -> FetchedItem:
        abstract = Abstract(
            id=str(headline["id"]),
            feed=feed_url,
            title=headline.get("title", "Untitled"),
            link=headline.get("link", ""),
            published=int(headline.get("updated", 0)),
            read=not headline.get("unread", True),
            favorite=bool(headline.get("marked", False)),
        )
        return FetchedItem(abstract=abstract, content=headline.get("content"))

    @staticmethod
    def _cursor(summary: Summary | None, force: bool) -> int | None:
        if force or summary is None or not summary.cursor:
            return None
        return int(summary.cursor)

    @staticmethod
    def _advance(update: FeedUpdate, previous: str | None) -> None:
        ids = [int(item.abstract.id) for item in update.items]
        if previous:
            ids.append(int(previous))
        update.cursor = str(max(ids)) if ids else None

    async def fetch_one(self, feed_url: str, summary: Summary | None, force: bool) -> FeedUpdate:
        feeds = await self._list_feeds()
        if feed_url not in feeds:
            raise NotFound(f"{feed_url} is not subscribed on {self.api_url}")
        update = feeds[feed_url]
        since_id = self._cursor(summary, force)
        headlines = await self._headlines(update.remote_id, since_id)
        update.items = [self._item(feed_url, h) for h in headlines]
        self._advance(update, summary.cursor if summary else None)
        return update

    async def fetch_all(self, summaries: Mapping[str, Summary], force: bool) -> BatchResult:
        result = BatchResult()
        try:
            feeds = await self._list_feeds()
            by_id = {u.remote_id: u for u in feeds.values()}
            since = stream_since(feeds, summaries, force)
            headlines = await self._headlines(ALL_ARTICLES, since)
        except FeedSyncError as e:
            logger.warning("TTRSS sync failed: %s", e)
            result.error = e
            return result

        for headline in headlines:
            update = by_id.get(str(headline.get("feed_id")))
            if update is None:
                continue
            update.items.append(self._item(update.feed_url, headline))
        # Every feed saw the whole listing, so all of them are synced up to its newest id.
        high = max((int(h["id"]) for h in headlines), default=since or 0)
        for update in feeds.values():
            summary = summaries.get(update.feed_url)
            previous = int(summary.cursor) if summary and summary.cursor else 0
            update.cursor = str(max(high, previous))
        result.updates = list(feeds.values())
        result.subscribed = list(feeds)
        logger.info("Retrieved %d headlines across %d feeds", len(headlines), len(feeds))
        return result

    async def add_feed(self, feed_url: str) -> FeedUpdate:
        status = await self._api("subscribeToFeed", feed_url=feed_url, category_id=0)
        code = (status or {}).get("status", {}).get("code")
        if code not in (0, 1):
            raise InvalidFeed(f"TTRSS could not subscribe to {feed_url} (code {code})")
        return await self.fetch_one(feed_url, None, force=True)

    async def del_feed(self, feed_url: str, summary: Summary | None) -> None:
        remote_id = summary.remote_id if summary else None
        if remote_id is None:
            feeds = await self._list_feeds()
            if feed_url not in feeds:
                return
            remote_id = feeds[feed_url].remote_id
        await self._api("unsubscribeFeed", feed_id=int(remote_id))
        logger.info("Unsubscribed from %s", feed_url)

    async def push_mutation(self, abstract: Abstract, fields: frozenset[str]) -> None:
        if "read" in fields:
            await self._api(
                "updateArticle",
                article_ids=abstract.id,
                mode=0 if abstract.read else 1,
                field=FIELD_UNREAD,
            )
        if "favorite" in fields:
            await self._api(
                "updateArticle",
                article_ids=abstract.id,
                mode=1 if abstract.favorite else 0,
                field=FIELD_STARRED,
            )

    async def fetch_content(self, abstract: Abstract) -> str:
        articles = await self._api("getArticle", article_id=abstract.id)
        if not articles:
            raise NotFound(f"TTRSS has no article {abstract.id}")
        return articles[0].get("content", "")
