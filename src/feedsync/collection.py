"""Per-account façade over a fetch strategy, the content store and dirty tracking."""

import asyncio
import contextlib
import dataclasses
import enum
import logging
import time
from collections.abc import Iterable, Iterator
from datetime import timedelta

from .dirty import FAVORITE, READ, DirtyTracker, StructuralChange
from .errors import FeedSyncError, InvalidFeed, NotFound, StorageError
from .feed_tree import FeedTree
from .fetchers.base import FetchStrategy, RemoteSession
from .models import (
    UNREAD,
    Abstract,
    BatchResult,
    CommitResult,
    FeedUpdate,
    OutlineEntry,
    Summary,
)
from .store import ContentStore

logger = logging.getLogger(__name__)


class RefreshState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class RefreshGuard:
    """Refuses to start a refresh while another one in the same scope runs."""

    def __init__(self) -> None:
        self.state = RefreshState.IDLE

    @property
    def running(self) -> bool:
        return self.state is RefreshState.RUNNING

    @contextlib.contextmanager
    def hold(self) -> Iterator[bool]:
        """Yield True if this caller now owns the scope, False if it must back off."""
        if self.running:
            yield False
            return
        self.state = RefreshState.RUNNING
        try:
            yield True
        finally:
            self.state = RefreshState.IDLE


class PendingCommit:
    """Handle returned by :meth:`Collection.update_abstract`."""

    def __init__(self, collection: "Collection"):
        self._collection = collection

    async def commit(self) -> CommitResult:
        return await self._collection.commit()


class Collection:
    """Everything the application needs for one account.

    Reads are served from memory and never touch the network. The in-memory
    catalog is loaded from the ContentStore by :meth:`init` and kept in step
    with it by fetch merges and commits.
    """

    def __init__(
        self,
        key: str,
        name: str,
        store: ContentStore,
        strategy: FetchStrategy,
        seed_feeds: Iterable[str] = (),
    ):
        self.key = key
        self.name = name
        self.refresh_guard = RefreshGuard()
        self._store = store
        self._strategy = strategy
        self._seed_feeds = list(seed_feeds)
        self._dirty = DirtyTracker()
        self._commit_lock = asyncio.Lock()
        self._tree = FeedTree()
        self._summaries: dict[str, Summary] = {}
        self._abstracts: dict[str, Abstract] = {}
        self._favorites: list[str] = []
        self._removed: dict[str, Summary] = {}

    @property
    def kind(self) -> str:
        return self._strategy.kind

    @property
    def remote(self) -> bool:
        return isinstance(self._strategy, RemoteSession)

    @property
    def pending(self) -> int:
        """Number of mutations and structural changes not yet committed."""
        return len(self._dirty)

    # --- Lifecycle ---

    async def init(self) -> None:
        """Load the persisted catalog and, for remote accounts, open a session."""
        tree = self._store.get_feed_tree()
        first_run = tree is None
        self._tree = tree or FeedTree()
        self._summaries.clear()
        self._abstracts.clear()

        tree_changed = False
        for url in sorted(self._store.list_feeds() | set(self._tree.walk())):
            summary = self._store.get_summary(url)
            if summary is None:
                summary = Summary(url=url, title=url, folder=self._tree.find(url) or ())
                self._store.put_summary(summary)
            self._summaries[url] = summary
            self._abstracts.update(summary.abstracts)
            if url not in self._tree:
                tree_changed |= self._tree.insert(url, summary.folder)

        if first_run:
            for url in self._seed_feeds:
                if url not in self._summaries:
                    summary = Summary(url=url, title=url)
                    self._store.put_summary(summary)
                    self._summaries[url] = summary
                    self._tree.insert(url)
            tree_changed = True
        if tree_changed:
            self._store.put_feed_tree(self._tree)

        stored = self._store.get_favorites()
        favorites = [
            i for i in dict.fromkeys(stored) if i in self._abstracts and self._abstracts[i].favorite
        ]
        favorites += [
            a.id for a in self._abstracts.values() if a.favorite and a.id not in favorites
        ]
        self._favorites = favorites
        if favorites != stored:
            self._store.put_favorites(favorites)

        logger.info(
            "Loaded %s account %r: %d feeds, %d articles",
            self.kind,
            self.name,
            len(self._summaries),
            len(self._abstracts),
        )

        if self.remote:
            try:
                await self._strategy.open()
            except FeedSyncError as e:
                logger.warning("Could not open %s session for %r: %s", self.kind, self.name, e)

    async def close(self) -> None:
        await self._strategy.aclose()

    async def clean(self) -> None:
        """Remove every persisted trace of this account."""
        await self._strategy.aclose()
        self._store.clear()
        self._tree = FeedTree()
        self._summaries.clear()
        self._abstracts.clear()
        self._favorites.clear()
        self._dirty = DirtyTracker()

    # --- Reads ---

    def get_summary(self, feed_url: str) -> Summary | None:
        return self._summaries.get(feed_url)

    def get_feed_list(self) -> FeedTree:
        return self._tree

    def get_feed_entries(self) -> list[OutlineEntry]:
        """Feeds as (url, title, link, folder) tuples for OPML export."""
        entries = []
        for url, path in self._tree.entries():
            summary = self._summaries.get(url)
            if summary is not None:
                entries.append(OutlineEntry(url, summary.title, summary.link, path))
        return entries

    def get_abstract(self, abstract_id: str) -> Abstract:
        try:
            return self._abstracts[abstract_id]
        except KeyError:
            raise NotFound(f"No article {abstract_id} in {self.name}") from None

    def get_articles(self, feed_url: str) -> list[Abstract]:
        """Abstracts of one feed, or of every unread article for ``<unread>``, newest first."""
        if feed_url == UNREAD:
            abstracts = [a for a in self._abstracts.values() if not a.read]
        else:
            summary = self._summaries.get(feed_url)
            if summary is None:
                raise NotFound(f"{feed_url} is not in {self.name}")
            abstracts = list(summary.abstracts.values())
        return sorted(abstracts, key=lambda a: a.published, reverse=True)

    def get_favorites(self) -> list[Abstract]:
        return [self._abstracts[i] for i in self._favorites]

    def unread_count(self, feed_url: str | None = None) -> int:
        if feed_url is None:
            return sum(1 for a in self._abstracts.values() if not a.read)
        summary = self._summaries.get(feed_url)
        if summary is None:
            return 0
        return sum(1 for a in summary.abstracts.values() if not a.read)

    async def get_content(self, abstract_id: str) -> str:
        """Cached content body, fetched from the backend on first access."""
        try:
            return self._store.get_content(abstract_id)
        except NotFound:
            abstract = self.get_abstract(abstract_id)
        content = await self._strategy.fetch_content(abstract)
        self._store.put_content(abstract_id, content)
        return content

    # --- Fetching ---

    async def fetch_one(self, feed_url: str, force: bool = False) -> list[Abstract]:
        """Fetch one feed and return the abstracts that are new or changed."""
        summary = self._summaries.get(feed_url)
        if summary is None:
            raise NotFound(f"{feed_url} is not in {self.name}")
        update = await self._strategy.fetch_one(feed_url, summary, force)
        return self._merge(update)

    async def fetch_all(self, force: bool = False) -> BatchResult:
        batch = await self._strategy.fetch_all(dict(self._summaries), force)
        if batch.error is not None:
            return batch

        for update in batch.updates:
            if self._dirty.pending_removal(update.feed_url):
                continue
            try:
                batch.merged[update.feed_url] = self._merge(update)
            except StorageError as e:
                logger.error("Failed to store %s: %s", update.feed_url, e)
                batch.failed[update.feed_url] = e

        if batch.subscribed is not None:
            for url in set(self._summaries) - set(batch.subscribed):
                logger.info("%s was unsubscribed upstream, dropping it", url)
                self._drop_feed(url)

        logger.info(
            "Refreshed %r: %d new or changed articles, %d feeds failed",
            self.name,
            sum(len(v) for v in batch.merged.values()),
            len(batch.failed),
        )
        return batch

    async def refresh(self, force: bool = True) -> BatchResult | None:
        """Guarded :meth:`fetch_all`; returns None if a refresh is already running."""
        with self.refresh_guard.hold() as acquired:
            if not acquired:
                logger.info("Refresh of %r already running, ignoring request", self.name)
                return None
            return await self.fetch_all(force)

    def _merge(self, update: FeedUpdate) -> list[Abstract]:
        """Fold one fetch result into the catalog and persist what changed.

        Runs without awaiting, so merges of concurrent fetches never interleave.
        """
        if update.not_modified:
            return []

        url = update.feed_url
        summary = self._summaries.get(url)
        summary_changed = tree_changed = favorites_changed = False
        if summary is None:
            summary = Summary(url=url, title=update.title or url, folder=update.folder or ())
            self._summaries[url] = summary
            tree_changed = self._tree.insert(url, summary.folder)
            summary_changed = True

        for attr in ("title", "link", "etag", "last_modified", "cursor", "remote_id"):
            value = getattr(update, attr)
            if value is not None and getattr(summary, attr) != value:
                setattr(summary, attr, value)
                summary_changed = True
        if update.folder is not None and update.folder != summary.folder:
            summary.folder = update.folder
            self._tree.remove(url)
            self._tree.insert(url, update.folder)
            summary_changed = tree_changed = True

        changed = []
        for item in update.items:
            incoming = item.abstract
            existing = self._abstracts.get(incoming.id)
            if existing is None:
                incoming.feed = url
                summary.abstracts[incoming.id] = incoming
                self._abstracts[incoming.id] = incoming
                if incoming.favorite:
                    self._favorites.append(incoming.id)
                    favorites_changed = True
                if item.content is not None:
                    self._store.put_content(incoming.id, item.content)
                changed.append(incoming)
                continue
            if existing.feed != url:
                continue

            modified = False
            if (existing.title, existing.link) != (incoming.title, incoming.link):
                existing.title = incoming.title
                existing.link = incoming.link
                modified = True
            # Unflushed local changes win over upstream state.
            if update.authoritative_state and existing.id not in self._dirty:
                if existing.read != incoming.read:
                    existing.read = incoming.read
                    modified = True
                if existing.favorite != incoming.favorite:
                    self._set_favorite(existing, incoming.favorite)
                    favorites_changed = modified = True
            if modified:
                changed.append(existing)

        if changed or summary_changed:
            self._store.put_summary(summary)
        if favorites_changed:
            self._store.put_favorites(self._favorites)
        if tree_changed:
            self._store.put_feed_tree(self._tree)
        return changed

    # --- Feed management ---

    async def add_feed(self, feed_url: str) -> Summary:
        """Validate a feed with one fetch and add it to the root of the tree."""
        if feed_url in self._summaries:
            return self._summaries[feed_url]
        try:
            update = await self._strategy.add_feed(feed_url)
        except InvalidFeed:
            raise
        except FeedSyncError as e:
            raise InvalidFeed(f"Cannot add {feed_url}: {e}") from e

        update.folder = ()
        self._removed.pop(feed_url, None)
        self._merge(update)
        self._dirty.mark_structural(StructuralChange("add", feed_url))
        await self.commit()
        logger.info("Added feed %s to %r", feed_url, self.name)
        return self._summaries[feed_url]

    async def add_feeds(self, entries: Iterable[OutlineEntry]) -> dict[str, FeedSyncError]:
        """Bulk add from OPML import. Returns the entries that could not be added."""
        failures: dict[str, FeedSyncError] = {}
        for entry in entries:
            url = entry.feed_url
            if url in self._summaries:
                continue
            if self.remote:
                try:
                    await self.add_feed(url)
                except InvalidFeed as e:
                    failures[url] = e
                continue
            # Local feeds are only validated on the next refresh.
            summary = Summary(
                url=url, title=entry.title or url, link=entry.link, folder=tuple(entry.folder)
            )
            self._store.put_summary(summary)
            self._summaries[url] = summary
            self._tree.insert(url, summary.folder)
            self._dirty.mark_structural(StructuralChange("add", url))
        await self.commit()
        return failures

    async def del_feed(self, feed_url: str) -> CommitResult:
        """Remove a feed with its articles, content and any favorites pointing into it."""
        summary = self._summaries.get(feed_url)
        if summary is None:
            raise NotFound(f"{feed_url} is not in {self.name}")
        self._drop_feed(feed_url)
        self._removed[feed_url] = summary
        self._dirty.mark_structural(StructuralChange("remove", feed_url))
        return await self.commit()

    def _drop_feed(self, feed_url: str) -> None:
        self._store.delete_feed(feed_url)
        summary = self._summaries.pop(feed_url)
        ids = set(summary.catalog)
        for abstract_id in ids:
            self._abstracts.pop(abstract_id, None)
        self._favorites = [i for i in self._favorites if i not in ids]
        self._dirty.discard(ids)
        self._tree.remove(feed_url)
        self._store.put_feed_tree(self._tree)
        self._store.put_favorites(self._favorites)

    # --- Mutations ---

    def _set_favorite(self, abstract: Abstract, value: bool) -> None:
        abstract.favorite = value
        self._sync_favorite(abstract)

    def _sync_favorite(self, abstract: Abstract) -> None:
        listed = abstract.id in self._favorites
        if abstract.favorite and not listed:
            self._favorites.append(abstract.id)
        elif not abstract.favorite and listed:
            self._favorites.remove(abstract.id)

    def update_abstract(
        self,
        abstract_id: str,
        read: bool | None = None,
        favorite: bool | None = None,
    ) -> PendingCommit:
        """Apply a read/favorite change in memory and stage it for the next commit.

        With neither flag given, the abstract is assumed to have been changed in
        place by the caller and both flags are staged.
        """
        abstract = self.get_abstract(abstract_id)
        if read is None and favorite is None:
            self._sync_favorite(abstract)
            self._dirty.mark_mutated(abstract, READ, FAVORITE)
            return PendingCommit(self)

        fields = []
        if read is not None and abstract.read != read:
            abstract.read = read
            fields.append(READ)
        if favorite is not None and abstract.favorite != favorite:
            self._set_favorite(abstract, favorite)
            fields.append(FAVORITE)
        if fields:
            self._dirty.mark_mutated(abstract, *fields)
        return PendingCommit(self)

    async def add_to_favorites(self, abstract_id: str) -> CommitResult:
        return await self.update_abstract(abstract_id, favorite=True).commit()

    async def remove_from_favorites(self, abstract_id: str) -> CommitResult:
        return await self.update_abstract(abstract_id, favorite=False).commit()

    async def mark_all_read(self, feed_url: str = UNREAD) -> CommitResult:
        for abstract in self.get_articles(feed_url):
            if not abstract.read:
                self.update_abstract(abstract.id, read=True)
        return await self.commit()

    async def commit(self) -> CommitResult:
        """Flush pending changes locally, then upstream.

        Local persistence happens first and a StorageError aborts the commit
        with everything still pending. Upstream failures are reported in the
        result and stay pending for the next commit.
        """
        async with self._commit_lock:
            snapshot = self._dirty.snapshot()
            if not snapshot:
                return CommitResult()

            feeds = {self._abstracts[i].feed for i in snapshot.mutations if i in self._abstracts}
            try:
                for url in feeds:
                    self._store.put_summary(self._summaries[url])
                if any(FAVORITE in m.fields for m in snapshot.mutations.values()):
                    self._store.put_favorites(self._favorites)
                if snapshot.structural:
                    self._store.put_feed_tree(self._tree)
            except StorageError:
                logger.error(
                    "Commit for %r failed, %d changes kept pending", self.name, len(self._dirty)
                )
                raise

            result = CommitResult(persisted=len(snapshot.mutations))
            error: FeedSyncError | None = None
            for url, (change, _) in snapshot.structural.items():
                if change.kind != "remove":
                    continue
                if error is not None:
                    result.failed[url] = error
                    continue
                try:
                    await self._strategy.del_feed(url, self._removed.get(url))
                except NotFound:
                    pass
                except FeedSyncError as e:
                    error = result.failed[url] = e
                    continue
                self._removed.pop(url, None)

            for abstract_id, mutation in snapshot.mutations.items():
                abstract = self._abstracts.get(abstract_id)
                if abstract is None:
                    continue
                # Once one push fails the rest of the snapshot is not attempted.
                if error is not None:
                    result.failed[abstract_id] = error
                    continue
                try:
                    await self._strategy.push_mutation(abstract, mutation.fields)
                except FeedSyncError as e:
                    error = result.failed[abstract_id] = e
                    continue
                if self.remote:
                    result.pushed += 1

            self._dirty.clear(snapshot, failed=result.failed)
            if result.failed:
                logger.warning(
                    "Commit for %r left %d changes pending: %s",
                    self.name,
                    len(result.failed),
                    error,
                )
            else:
                logger.debug("Committed %d changes for %r", len(snapshot.mutations), self.name)
            return result

    # --- Retention ---

    def _clean(self, summary: Summary, cutoff: float) -> int:
        victims = [
            a.id
            for a in summary.abstracts.values()
            if a.read and not a.favorite and a.published < cutoff and a.id not in self._dirty
        ]
        if not victims:
            return 0
        gone = set(victims)
        remaining = {i: a for i, a in summary.abstracts.items() if i not in gone}
        self._store.put_summary(dataclasses.replace(summary, abstracts=remaining))
        self._store.delete_articles(victims)
        summary.abstracts = remaining
        for abstract_id in victims:
            self._abstracts.pop(abstract_id, None)
        return len(victims)

    def clean_old_articles(self, feed_url: str, max_age: timedelta) -> int:
        """Delete read, non-favorite articles older than ``max_age``; returns how many."""
        summary = self._summaries.get(feed_url)
        if summary is None:
            raise NotFound(f"{feed_url} is not in {self.name}")
        removed = self._clean(summary, time.time() - max_age.total_seconds())
        logger.info("Cleaned %d old articles from %s", removed, feed_url)
        return removed

    def clean_all_old_articles(self, max_age: timedelta) -> int:
        cutoff = time.time() - max_age.total_seconds()
        removed = sum(self._clean(s, cutoff) for s in self._summaries.values())
        logger.info("Cleaned %d old articles from %r", removed, self.name)
        return removed
