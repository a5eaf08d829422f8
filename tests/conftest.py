"""Shared test fixtures."""

import asyncio
import dataclasses
import time

import pytest

from feedsync.collection import Collection
from feedsync.errors import FeedSyncError, NotFound
from feedsync.fetchers.base import FetchStrategy, RemoteSession
from feedsync.models import Abstract, BatchResult, FeedUpdate, FetchedItem
from feedsync.store import ContentStore

NOW = int(time.time())
DAY = 86400


def make_item(feed, article_id, published=None, read=False, favorite=False, content="<p>body</p>"):
    abstract = Abstract(
        id=article_id,
        feed=feed,
        title=f"Title {article_id}",
        link=f"{feed}#{article_id}",
        published=NOW if published is None else published,
        read=read,
        favorite=favorite,
    )
    return FetchedItem(abstract=abstract, content=content)


class FakeFetch(FetchStrategy):
    """Scripted strategy: ``feeds`` maps a URL to its items or to an exception."""

    kind = "local"

    def __init__(self):
        self.feeds: dict[str, list[FetchedItem] | Exception] = {}
        self.fetches: list[tuple[str, bool]] = []
        self.pushed: list[tuple[str, frozenset[str]]] = []
        self.removed: list[str] = []
        self.contents: dict[str, str] = {}
        self.push_error: FeedSyncError | None = None
        self.push_gate: asyncio.Event | None = None
        self.push_started = asyncio.Event()
        self.authoritative = False

    async def fetch_one(self, feed_url, summary, force):
        self.fetches.append((feed_url, force))
        feed = self.feeds.get(feed_url)
        if feed is None:
            raise NotFound(feed_url)
        if isinstance(feed, Exception):
            raise feed
        etag = "-".join(i.abstract.id for i in feed)
        if not force and summary is not None and summary.etag == etag:
            return FeedUpdate(feed_url=feed_url, not_modified=True)
        return FeedUpdate(
            feed_url=feed_url,
            title=f"Feed {feed_url}",
            link=feed_url,
            items=[
                FetchedItem(dataclasses.replace(i.abstract), i.content) for i in feed
            ],
            etag=etag,
            authoritative_state=self.authoritative,
        )

    async def fetch_all(self, summaries, force):
        result = BatchResult()
        for url in summaries:
            try:
                result.updates.append(await self.fetch_one(url, summaries[url], force))
            except FeedSyncError as e:
                result.failed[url] = e
        return result

    async def add_feed(self, feed_url):
        return await self.fetch_one(feed_url, None, force=True)

    async def del_feed(self, feed_url, summary):
        self.removed.append(feed_url)

    async def push_mutation(self, abstract, fields):
        self.push_started.set()
        if self.push_gate is not None:
            await self.push_gate.wait()
        if self.push_error is not None:
            raise self.push_error
        self.pushed.append((abstract.id, fields))

    async def fetch_content(self, abstract):
        if abstract.id in self.contents:
            return self.contents[abstract.id]
        return await super().fetch_content(abstract)


class FakeRemoteFetch(FakeFetch, RemoteSession):
    """FakeFetch that presents itself as an authenticated remote service."""

    kind = "ttrss"

    def __init__(self):
        FakeFetch.__init__(self)
        RemoteSession.__init__(self, timeout=1.0)
        self.logins = 0
        self.authoritative = True

    async def authenticate(self):
        self.logins += 1


def assert_favorites_consistent(collection):
    listed = {a.id for a in collection.get_favorites()}
    flagged = {
        a.id
        for url in collection.get_feed_list().walk()
        for a in collection.get_articles(url)
        if a.favorite
    }
    assert listed == flagged


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "account")


@pytest.fixture
def fetch():
    return FakeFetch()


@pytest.fixture
def remote_fetch():
    return FakeRemoteFetch()


@pytest.fixture
def collection(store, fetch):
    return Collection("account", "Test", store, fetch)


@pytest.fixture
def remote_collection(store, remote_fetch):
    return Collection("account", "Remote", store, remote_fetch)
