"""Data models for feedsync collections."""

from dataclasses import dataclass, field
from typing import NamedTuple

from .errors import FeedSyncError

UNREAD = "<unread>"


@dataclass
class Abstract:
    """Lightweight per-article record kept in memory for every cached article."""

    id: str
    feed: str
    title: str
    link: str
    published: int  # Unix timestamp
    read: bool = False
    favorite: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "feed": self.feed,
            "title": self.title,
            "link": self.link,
            "published": self.published,
            "read": self.read,
            "favorite": self.favorite,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Abstract":
        return cls(
            id=str(data["id"]),
            feed=data["feed"],
            title=data.get("title", ""),
            link=data.get("link", ""),
            published=int(data.get("published", 0)),
            read=bool(data.get("read", False)),
            favorite=bool(data.get("favorite", False)),
        )


@dataclass
class Summary:
    """Per-feed metadata plus the ordered catalog of its abstracts.

    ``abstracts`` preserves insertion order, which is the catalog order.
    """

    url: str
    title: str
    link: str = ""
    abstracts: dict[str, Abstract] = field(default_factory=dict)
    etag: str | None = None
    last_modified: str | None = None
    cursor: str | None = None
    remote_id: str | None = None
    folder: tuple[str, ...] = ()

    @property
    def catalog(self) -> list[str]:
        return list(self.abstracts)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "link": self.link,
            "etag": self.etag,
            "last_modified": self.last_modified,
            "cursor": self.cursor,
            "remote_id": self.remote_id,
            "folder": list(self.folder),
            "abstracts": [a.to_dict() for a in self.abstracts.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Summary":
        abstracts = [Abstract.from_dict(a) for a in data.get("abstracts", [])]
        return cls(
            url=data["url"],
            title=data.get("title", data["url"]),
            link=data.get("link", ""),
            abstracts={a.id: a for a in abstracts},
            etag=data.get("etag"),
            last_modified=data.get("last_modified"),
            cursor=data.get("cursor"),
            remote_id=data.get("remote_id"),
            folder=tuple(data.get("folder", ())),
        )


@dataclass
class FetchedItem:
    """One article as reported by a fetch strategy."""

    abstract: Abstract
    content: str | None = None


@dataclass
class FeedUpdate:
    """Result of fetching a single feed.

    ``authoritative_state`` is set by backends whose read/favorite flags come
    from the service itself, as opposed to freshly parsed feed XML.
    """

    feed_url: str
    title: str | None = None
    link: str | None = None
    items: list[FetchedItem] = field(default_factory=list)
    etag: str | None = None
    last_modified: str | None = None
    cursor: str | None = None
    remote_id: str | None = None
    folder: tuple[str, ...] | None = None
    not_modified: bool = False
    authoritative_state: bool = False


@dataclass
class BatchResult:
    """Aggregate outcome of fetching every feed of a collection."""

    updates: list[FeedUpdate] = field(default_factory=list)
    failed: dict[str, FeedSyncError] = field(default_factory=dict)
    merged: dict[str, list[Abstract]] = field(default_factory=dict)
    subscribed: list[str] | None = None
    error: FeedSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed

    def to_dict(self) -> dict:
        return {
            "updated": {url: len(items) for url, items in self.merged.items()},
            "failed": {url: str(err) for url, err in self.failed.items()},
            "error": str(self.error) if self.error else None,
        }


@dataclass
class CommitResult:
    """Outcome of flushing pending mutations."""

    persisted: int = 0
    pushed: int = 0
    failed: dict[str, FeedSyncError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.failed) and (self.persisted > 0 or self.pushed > 0)


class OutlineEntry(NamedTuple):
    """Feed description exchanged with OPML import/export."""

    feed_url: str
    title: str
    link: str = ""
    folder: tuple[str, ...] = ()
