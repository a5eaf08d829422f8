"""Inoreader backend using the Google Reader API."""

import logging
from collections.abc import Mapping
from urllib.parse import quote

import httpx

from ..errors import AuthError, FeedSyncError, InvalidFeed, NotFound, ParseError
from ..models import Abstract, BatchResult, FeedUpdate, FetchedItem, Summary
from .base import RemoteSession, stream_since, translate_http_error

logger = logging.getLogger(__name__)

READING_LIST = "user/-/state/com.google/reading-list"
READ_TAG = "user/-/state/com.google/read"
STARRED_TAG = "user/-/state/com.google/starred"
ITEM_PREFIX = "tag:google.com,2005:reader/item/"
MAX_PAGE = 1000  # stream/contents rejects larger n


class InoreaderFetch(RemoteSession):
    """Mirrors an Inoreader account.

    Designed for single-instance lifecycle per account: authenticate once,
    then reuse the token until the service rejects it.
    """

    kind = "inoreader"

    def __init__(
        self,
        username: str,
        password: str,
        appid: str,
        appkey: str,
        server: str = "https://www.inoreader.com",
        timeout: float = 30.0,
        page_size: int = MAX_PAGE,
        max_items: int = 5000,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout, http_client)
        self.api_url = f"{server.rstrip('/')}/reader/api/0"
        self.login_url = f"{server.rstrip('/')}/accounts/ClientLogin"
        self._username = username
        self._password = password
        self._appid = appid
        self._appkey = appkey
        self._page_size = min(page_size, MAX_PAGE)
        self._max_items = max_items
        self._auth_token: str | None = None

    async def authenticate(self) -> None:
        """Obtain an auth token via ClientLogin.

        Raises:
            AuthError: If the credentials are rejected or no token is returned
            NetworkError: If the service cannot be reached
        """
        logger.debug("Authenticating to %s", self.login_url)
        self._auth_token = None
        try:
            response = await self._client.post(
                self.login_url,
                headers=self._app_headers(),
                data={"Email": self._username, "Passwd": self._password},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (401, 403):
                raise AuthError(f"Authentication failed: {e.response.status_code}") from e
            raise translate_http_error(e, "Inoreader login") from e
        except httpx.HTTPError as e:
            raise translate_http_error(e, "Inoreader login") from e

        tokens = dict(
            line.split("=", 1) for line in response.text.splitlines() if "=" in line
        )
        token = tokens.get("Auth") or tokens.get("SID")
        if not token:
            raise AuthError("No Auth token found in authentication response")
        self._auth_token = token
        logger.info("Inoreader authentication successful")

    def _app_headers(self) -> dict[str, str]:
        return {"AppId": self._appid, "AppKey": self._appkey}

    def _get_auth_headers(self) -> dict[str, str]:
        """Get headers with authentication token."""
        if not self._auth_token:
            raise AuthError("Not authenticated. Call authenticate() first.")
        return {**self._app_headers(), "Authorization": f"GoogleLogin auth={self._auth_token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(
                method, f"{self.api_url}/{path}", headers=self._get_auth_headers(), **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (401, 403):
                raise AuthError(f"Inoreader rejected token: {e.response.status_code}") from e
            raise translate_http_error(e, f"Inoreader {path}") from e
        except httpx.HTTPError as e:
            raise translate_http_error(e, f"Inoreader {path}") from e
        return response

    async def _json(self, method: str, path: str, **kwargs) -> dict:
        response = await self.call(lambda: self._request(method, path, **kwargs))
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Inoreader {path} returned invalid JSON") from e

    async def _list_feeds(self) -> dict[str, FeedUpdate]:
        """List all subscribed feeds keyed by feed URL."""
        data = await self._json("GET", "subscription/list", params={"output": "json"})
        feeds = {}
        for sub in data.get("subscriptions", []):
            url = sub.get("url") or self._extract_feed_url(sub.get("id", ""))
            if not url:
                continue
            labels = [c.get("label") for c in sub.get("categories", []) if c.get("label")]
            feeds[url] = FeedUpdate(
                feed_url=url,
                title=sub.get("title") or url,
                link=sub.get("htmlUrl", ""),
                remote_id=sub.get("id") or f"feed/{url}",
                folder=(labels[0],) if labels else (),
                authoritative_state=True,
            )
        logger.info("Retrieved %d feeds", len(feeds))
        return feeds

    async def _stream(self, stream_id: str, since: int | None) -> list[dict]:
        """Page through a stream using continuation tokens, up to the item cap."""
        items: list[dict] = []
        continuation = None
        while len(items) < self._max_items:
            params: dict[str, str | int] = {
                "output": "json",
                "n": min(self._page_size, self._max_items - len(items)),
            }
            if since:
                params["ot"] = since
            if continuation:
                params["c"] = continuation
            path = f"stream/contents/{quote(stream_id, safe='/:')}"
            data = await self._json("GET", path, params=params)
            page = data.get("items", [])
            items.extend(page)
            continuation = data.get("continuation")
            if not continuation or not page:
                break
        return items

    def _parse_item(self, item: dict, feed_url: str | None = None) -> FetchedItem | None:
        """Parse a stream item into a FetchedItem."""
        try:
            origin = item.get("origin", {})
            feed_url = feed_url or self._extract_feed_url(origin.get("streamId", ""))
            if not feed_url:
                return None
            categories = item.get("categories", [])
            alternates = item.get("canonical") or item.get("alternate") or []
            abstract = Abstract(
                id=self._extract_article_id(item["id"]),
                feed=feed_url,
                title=item.get("title", "Untitled"),
                link=alternates[0].get("href", "") if alternates else "",
                published=int(item.get("published", 0)),
                read=READ_TAG in categories,
                favorite=STARRED_TAG in categories,
            )
            content = (item.get("content") or item.get("summary") or {}).get("content")
            return FetchedItem(abstract=abstract, content=content)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse article: %s", e)
            return None

    @staticmethod
    def _extract_feed_url(stream_id: str) -> str:
        return stream_id[5:] if stream_id.startswith("feed/") else ""

    @staticmethod
    def _extract_article_id(article_id_str: str) -> str:
        """Extract the hex item id from ``tag:google.com,2005:reader/item/<hex>``."""
        if article_id_str.startswith(ITEM_PREFIX):
            return article_id_str[len(ITEM_PREFIX):]
        return article_id_str

    @staticmethod
    def _advance(update: FeedUpdate, previous: str | None) -> None:
        stamps = [item.abstract.published for item in update.items]
        if previous:
            stamps.append(int(previous))
        update.cursor = str(max(stamps)) if stamps else None

    async def fetch_one(self, feed_url: str, summary: Summary | None, force: bool) -> FeedUpdate:
        feeds = await self._list_feeds()
        if feed_url not in feeds:
            raise NotFound(f"{feed_url} is not subscribed")
        update = feeds[feed_url]
        since = None
        if not force and summary is not None and summary.cursor:
            since = int(summary.cursor)
        items = await self._stream(update.remote_id, since)
        update.items = [p for p in (self._parse_item(i, feed_url) for i in items) if p]
        self._advance(update, summary.cursor if summary else None)
        return update

    async def fetch_all(self, summaries: Mapping[str, Summary], force: bool) -> BatchResult:
        result = BatchResult()
        try:
            feeds = await self._list_feeds()
            since = stream_since(feeds, summaries, force)
            items = await self._stream(READING_LIST, since)
        except FeedSyncError as e:
            logger.warning("Inoreader sync failed: %s", e)
            result.error = e
            return result

        high = since or 0
        for item in items:
            parsed = self._parse_item(item)
            if parsed is None:
                continue
            high = max(high, parsed.abstract.published)
            if parsed.abstract.feed in feeds:
                feeds[parsed.abstract.feed].items.append(parsed)
        for update in feeds.values():
            summary = summaries.get(update.feed_url)
            previous = int(summary.cursor) if summary and summary.cursor else 0
            update.cursor = str(max(high, previous))
        result.updates = list(feeds.values())
        result.subscribed = list(feeds)
        logger.info("Retrieved %d articles across %d feeds", len(items), len(feeds))
        return result

    async def add_feed(self, feed_url: str) -> FeedUpdate:
        data = await self._json(
            "POST", "subscription/quickadd", params={"quickadd": f"feed/{feed_url}"}
        )
        if not data.get("numResults"):
            raise InvalidFeed(f"Inoreader could not subscribe to {feed_url}")
        return await self.fetch_one(feed_url, None, force=True)

    async def del_feed(self, feed_url: str, summary: Summary | None) -> None:
        stream_id = (summary.remote_id if summary else None) or f"feed/{feed_url}"
        await self.call(
            lambda: self._request(
                "POST", "subscription/edit", data={"ac": "unsubscribe", "s": stream_id}
            )
        )
        logger.info("Unsubscribed from %s", feed_url)

    async def push_mutation(self, abstract: Abstract, fields: frozenset[str]) -> None:
        if "read" in fields:
            await self._edit_tags(abstract, READ_TAG, abstract.read)
        if "favorite" in fields:
            await self._edit_tags(abstract, STARRED_TAG, abstract.favorite)

    async def _edit_tags(self, abstract: Abstract, tag: str, add: bool) -> None:
        data = {"i": f"{ITEM_PREFIX}{abstract.id}", "a" if add else "r": tag}
        await self.call(lambda: self._request("POST", "edit-tag", data=data))
        logger.debug("%s %s on %s", "Added" if add else "Removed", tag, abstract.id)

    async def fetch_content(self, abstract: Abstract) -> str:
        data = await self._json(
            "POST", "stream/items/contents", data={"i": f"{ITEM_PREFIX}{abstract.id}"}
        )
        for item in data.get("items", []):
            parsed = self._parse_item(item, abstract.feed)
            if parsed and parsed.content is not None:
                return parsed.content
        raise NotFound(f"Inoreader has no content for article {abstract.id}")
