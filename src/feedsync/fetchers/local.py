"""Direct polling of feed URLs with conditional HTTP GET."""

import asyncio
import calendar
import hashlib
import logging
import time
from collections.abc import Mapping

import feedparser
import httpx

from ..errors import FeedSyncError, ParseError
from ..models import Abstract, BatchResult, FeedUpdate, FetchedItem, Summary
from .base import FetchStrategy, translate_http_error

logger = logging.getLogger(__name__)

HTTP_NOT_MODIFIED = 304
ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"


def article_id(feed_url: str, guid: str | None, link: str, title: str) -> str:
    """Stable id for a parsed entry: its guid when present, else link and title."""
    key = guid.strip() if guid and guid.strip() else f"{link}\n{title}"
    raw = f"{feed_url}\n{key}".encode("utf-8")
    return hashlib.sha1(raw, usedforsecurity=False).hexdigest()


def _published(entry) -> int:
    for name in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed = entry.get(name)
        if parsed:
            return calendar.timegm(parsed)
    return int(time.time())


def _content(entry) -> str:
    contents = entry.get("content")
    if contents:
        return contents[0].get("value", "")
    return entry.get("summary", "")


def parse_feed(feed_url: str, raw: bytes) -> FeedUpdate:
    """Parse RSS/Atom bytes into a FeedUpdate. Raises ParseError on garbage."""
    parsed = feedparser.parse(raw)
    feed = parsed.get("feed", {})
    if parsed.get("bozo") and not parsed.entries and not feed.get("title"):
        raise ParseError(f"Malformed feed {feed_url}: {parsed.get('bozo_exception')}")
    if not parsed.get("version") and not parsed.entries:
        raise ParseError(f"{feed_url} is not an RSS or Atom feed")

    items = []
    for entry in parsed.entries:
        link = entry.get("link", "")
        title = entry.get("title", "Untitled")
        abstract = Abstract(
            id=article_id(feed_url, entry.get("id"), link, title),
            feed=feed_url,
            title=title,
            link=link,
            published=_published(entry),
        )
        items.append(FetchedItem(abstract=abstract, content=_content(entry)))

    return FeedUpdate(
        feed_url=feed_url,
        title=feed.get("title") or feed_url,
        link=feed.get("link", ""),
        items=items,
    )


class LocalFetch(FetchStrategy):
    """Fetches every feed directly from its publisher."""

    kind = "local"

    def __init__(
        self,
        concurrency: int = 8,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._concurrency = concurrency
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    async def fetch_one(self, feed_url: str, summary: Summary | None, force: bool) -> FeedUpdate:
        headers = {"Accept": ACCEPT}
        if summary is not None and not force:
            if summary.etag:
                headers["If-None-Match"] = summary.etag
            if summary.last_modified:
                headers["If-Modified-Since"] = summary.last_modified

        try:
            response = await self._client.get(feed_url, headers=headers)
            if response.status_code == HTTP_NOT_MODIFIED:
                logger.debug("%s not modified", feed_url)
                return FeedUpdate(feed_url=feed_url, not_modified=True)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise translate_http_error(e, feed_url) from e

        update = await asyncio.to_thread(parse_feed, feed_url, response.content)
        update.etag = response.headers.get("ETag")
        update.last_modified = response.headers.get("Last-Modified")
        logger.debug("Fetched %d items from %s", len(update.items), feed_url)
        return update

    async def fetch_all(self, summaries: Mapping[str, Summary], force: bool) -> BatchResult:
        semaphore = asyncio.Semaphore(self._concurrency)
        result = BatchResult()

        async def fetch(url: str) -> None:
            async with semaphore:
                try:
                    result.updates.append(await self.fetch_one(url, summaries[url], force))
                except FeedSyncError as e:
                    logger.warning("Failed to fetch %s: %s", url, e)
                    result.failed[url] = e
                except Exception as e:
                    logger.error("Unexpected error fetching %s: %s", url, e, exc_info=True)
                    result.failed[url] = FeedSyncError(f"Unexpected error fetching {url}: {e}")

        await asyncio.gather(*(fetch(url) for url in summaries))
        logger.info(
            "Fetched %d feeds (%d failed)", len(summaries) - len(result.failed), len(result.failed)
        )
        return result

    async def add_feed(self, feed_url: str) -> FeedUpdate:
        return await self.fetch_one(feed_url, None, force=True)

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()
