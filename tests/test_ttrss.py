"""Tests for fetchers/ttrss.py — Tiny Tiny RSS API over mocked HTTP."""

import json

import httpx
import pytest

from feedsync.errors import AuthError, InvalidFeed, NetworkError, NotFound
from feedsync.fetchers.ttrss import ALL_ARTICLES, FIELD_STARRED, FIELD_UNREAD, TTRSSFetch
from feedsync.models import Abstract, Summary

API = "https://rss.example.com/api/"
FEED_A = "https://a.example/rss"
FEED_B = "https://b.example/rss"


class FakeServer:
    """Minimal TTRSS API: ops are answered from ``self.responses``."""

    def __init__(self):
        self.calls: list[dict] = []
        self.logins = 0
        self.valid_sid = "sid-1"
        self.headlines: list[dict] = []
        self.responses = {
            "getCategories": [{"id": 0, "title": "Uncategorized"}, {"id": 4, "title": "Tech"}],
            "getFeeds": [
                {"id": 11, "feed_url": FEED_A, "title": "A", "site_url": "https://a", "cat_id": 4},
                {"id": 12, "feed_url": FEED_B, "title": "B", "site_url": "https://b", "cat_id": 0},
            ],
            "subscribeToFeed": {"status": {"code": 1}},
            "unsubscribeFeed": {"status": "OK"},
            "updateArticle": {"status": "OK", "updated": 1},
            "getArticle": [{"id": 1, "content": "<p>full</p>"}],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append(payload)
        op = payload["op"]
        if op == "login":
            self.logins += 1
            if payload["password"] != "secret":
                return self._error("LOGIN_ERROR")
            return self._ok({"session_id": self.valid_sid, "api_level": 18})
        if payload.get("sid") != self.valid_sid:
            return self._error("NOT_LOGGED_IN")
        if op == "getHeadlines":
            rows = [h for h in self.headlines if h["id"] > payload.get("since_id", 0)]
            if payload["feed_id"] != ALL_ARTICLES:
                rows = [h for h in rows if str(h["feed_id"]) == str(payload["feed_id"])]
            skip, limit = payload["skip"], payload["limit"]
            return self._ok(rows[skip : skip + limit])
        return self._ok(self.responses[op])

    @staticmethod
    def _ok(content):
        return httpx.Response(200, json={"seq": 0, "status": 0, "content": content})

    @staticmethod
    def _error(error):
        return httpx.Response(200, json={"seq": 0, "status": 1, "content": {"error": error}})

    def ops(self, name):
        return [c for c in self.calls if c["op"] == name]


def headline(article_id, feed_id, unread=True, marked=False):
    return {
        "id": article_id,
        "feed_id": feed_id,
        "title": f"Article {article_id}",
        "link": f"https://x/{article_id}",
        "updated": 1700000000 + article_id,
        "unread": unread,
        "marked": marked,
        "content": f"<p>{article_id}</p>",
    }


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def fetch(server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return TTRSSFetch(API, "alice", "secret", page_size=2, max_items=100, http_client=client)


# --- Authentication ---


@pytest.mark.asyncio
async def test_login_sends_credentials(fetch, server):
    await fetch.open()
    assert server.ops("login")[0]["user"] == "alice"
    assert fetch._session_id == "sid-1"


@pytest.mark.asyncio
async def test_bad_password_raises_auth_error(server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    fetch = TTRSSFetch(API, "alice", "wrong", http_client=client)
    with pytest.raises(AuthError, match="LOGIN_ERROR"):
        await fetch.open()


@pytest.mark.asyncio
async def test_expired_sid_triggers_single_relogin(fetch, server):
    await fetch.open()
    # The server forgets sid-1; the next login hands out sid-2.
    server.valid_sid = "sid-2"

    feeds = await fetch._list_feeds()
    assert server.logins == 2
    assert set(feeds) == {FEED_A, FEED_B}


@pytest.mark.asyncio
async def test_other_api_errors_raise_network_error(fetch, server):
    def handler(request):
        payload = json.loads(request.content)
        if payload["op"] == "getFeeds":
            return FakeServer._error("INCORRECT_USAGE")
        return server.handler(request)

    fetch._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(NetworkError, match="INCORRECT_USAGE"):
        await fetch._list_feeds()


# --- Fetching ---


@pytest.mark.asyncio
async def test_list_feeds_maps_categories(fetch):
    feeds = await fetch._list_feeds()
    assert feeds[FEED_A].folder == ("Tech",)
    assert feeds[FEED_B].folder == ()
    assert feeds[FEED_A].remote_id == "11"
    assert feeds[FEED_A].authoritative_state


@pytest.mark.asyncio
async def test_fetch_all_pages_and_groups_headlines(fetch, server):
    server.headlines = [
        headline(1, 11),
        headline(2, 12, unread=False),
        headline(3, 11, marked=True),
        headline(4, 99),
    ]

    result = await fetch.fetch_all({}, force=True)

    assert result.ok
    assert result.subscribed == [FEED_A, FEED_B]
    by_url = {u.feed_url: u for u in result.updates}
    assert [i.abstract.id for i in by_url[FEED_A].items] == ["1", "3"]
    assert by_url[FEED_A].items[1].abstract.favorite is True
    assert by_url[FEED_B].items[0].abstract.read is True
    # The cursor covers the whole listing, including headlines of unlisted feeds.
    assert by_url[FEED_A].cursor == "4"
    assert by_url[FEED_B].cursor == "4"
    # page_size=2 with four headlines: a full page, a full page, then an empty one.
    assert len(server.ops("getHeadlines")) == 3


@pytest.mark.asyncio
async def test_fetch_all_is_incremental_when_every_feed_has_cursor(fetch, server):
    server.headlines = [headline(1, 11), headline(5, 12)]
    summaries = {
        FEED_A: Summary(url=FEED_A, title="A", cursor="4"),
        FEED_B: Summary(url=FEED_B, title="B", cursor="3"),
    }

    result = await fetch.fetch_all(summaries, force=False)

    assert server.ops("getHeadlines")[0]["since_id"] == 3
    by_url = {u.feed_url: u for u in result.updates}
    assert [i.abstract.id for i in by_url[FEED_B].items] == ["5"]
    assert by_url[FEED_A].cursor == "5"
    assert by_url[FEED_B].cursor == "5"


@pytest.mark.asyncio
async def test_fetch_all_without_cursor_is_full(fetch, server):
    summaries = {
        FEED_A: Summary(url=FEED_A, title="A", cursor="4"),
        FEED_B: Summary(url=FEED_B, title="B"),
    }
    await fetch.fetch_all(summaries, force=False)
    assert "since_id" not in server.ops("getHeadlines")[0]


@pytest.mark.asyncio
async def test_fetch_all_gives_empty_feeds_a_cursor(fetch, server):
    server.headlines = [headline(1, 11), headline(2, 11)]

    first = await fetch.fetch_all({}, force=True)

    by_url = {u.feed_url: u for u in first.updates}
    assert by_url[FEED_B].items == []
    assert by_url[FEED_B].cursor == "2"

    server.headlines.append(headline(3, 12))
    summaries = {
        u.feed_url: Summary(url=u.feed_url, title=u.title, cursor=u.cursor) for u in first.updates
    }
    second = await fetch.fetch_all(summaries, force=False)

    assert server.ops("getHeadlines")[-1]["since_id"] == 2
    by_url = {u.feed_url: u for u in second.updates}
    assert [i.abstract.id for i in by_url[FEED_B].items] == ["3"]
    assert by_url[FEED_A].items == []


@pytest.mark.asyncio
async def test_fetch_all_full_when_upstream_has_unsynced_feed(fetch, server):
    server.headlines = [headline(1, 12), headline(5, 11)]
    summaries = {FEED_A: Summary(url=FEED_A, title="A", cursor="4")}

    result = await fetch.fetch_all(summaries, force=False)

    assert "since_id" not in server.ops("getHeadlines")[0]
    by_url = {u.feed_url: u for u in result.updates}
    assert [i.abstract.id for i in by_url[FEED_B].items] == ["1"]


@pytest.mark.asyncio
async def test_headline_paging_stops_at_item_cap(server):
    def handler(request):
        payload = json.loads(request.content)
        if payload["op"] == "getHeadlines" and payload.get("sid") == server.valid_sid:
            server.calls.append(payload)
            skip, limit = payload["skip"], payload["limit"]
            return FakeServer._ok([headline(i, 11) for i in range(skip + 1, skip + limit + 1)])
        return server.handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetch = TTRSSFetch(API, "alice", "secret", page_size=2, max_items=5, http_client=client)

    result = await fetch.fetch_all({}, force=True)

    assert [c["limit"] for c in server.ops("getHeadlines")] == [2, 2, 1]
    by_url = {u.feed_url: u for u in result.updates}
    assert [i.abstract.id for i in by_url[FEED_A].items] == ["1", "2", "3", "4", "5"]


@pytest.mark.asyncio
async def test_fetch_all_reports_listing_failure(server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
    fetch = TTRSSFetch(API, "alice", "secret", http_client=client)

    result = await fetch.fetch_all({}, force=False)

    assert isinstance(result.error, NetworkError)
    assert result.updates == []


@pytest.mark.asyncio
async def test_fetch_one_unknown_feed(fetch):
    with pytest.raises(NotFound):
        await fetch.fetch_one("https://missing.example/rss", None, force=True)


@pytest.mark.asyncio
async def test_fetch_one_filters_by_feed(fetch, server):
    server.headlines = [headline(1, 11), headline(2, 12)]
    update = await fetch.fetch_one(FEED_B, None, force=False)
    assert [i.abstract.id for i in update.items] == ["2"]
    assert update.items[0].content == "<p>2</p>"


# --- Writes ---


@pytest.mark.asyncio
async def test_add_feed_subscribes_then_fetches(fetch, server):
    update = await fetch.add_feed(FEED_A)
    assert server.ops("subscribeToFeed")[0]["feed_url"] == FEED_A
    assert update.feed_url == FEED_A


@pytest.mark.asyncio
async def test_add_feed_rejected(fetch, server):
    server.responses["subscribeToFeed"] = {"status": {"code": 2}}
    with pytest.raises(InvalidFeed, match="code 2"):
        await fetch.add_feed("https://bad.example")


@pytest.mark.asyncio
async def test_del_feed_uses_remote_id(fetch, server):
    await fetch.del_feed(FEED_A, Summary(url=FEED_A, title="A", remote_id="11"))
    assert server.ops("unsubscribeFeed")[0]["feed_id"] == 11


@pytest.mark.asyncio
async def test_del_feed_looks_up_unknown_id(fetch, server):
    await fetch.del_feed(FEED_B, None)
    assert server.ops("unsubscribeFeed")[0]["feed_id"] == 12


@pytest.mark.asyncio
async def test_push_mutation_updates_both_fields(fetch, server):
    abstract = Abstract(
        id="7", feed=FEED_A, title="", link="", published=0, read=True, favorite=True
    )

    await fetch.push_mutation(abstract, frozenset({"read", "favorite"}))

    updates = {c["field"]: c for c in server.ops("updateArticle")}
    assert updates[FIELD_UNREAD]["mode"] == 0
    assert updates[FIELD_STARRED]["mode"] == 1
    assert updates[FIELD_UNREAD]["article_ids"] == "7"


@pytest.mark.asyncio
async def test_push_mutation_only_sends_changed_field(fetch, server):
    abstract = Abstract(id="7", feed=FEED_A, title="", link="", published=0)
    await fetch.push_mutation(abstract, frozenset({"read"}))
    assert [(c["field"], c["mode"]) for c in server.ops("updateArticle")] == [(FIELD_UNREAD, 1)]


@pytest.mark.asyncio
async def test_fetch_content(fetch):
    abstract = Abstract(id="1", feed=FEED_A, title="", link="", published=0)
    assert await fetch.fetch_content(abstract) == "<p>full</p>"
