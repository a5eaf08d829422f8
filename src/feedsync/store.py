"""Durable on-disk cache for one account: feed summaries and article bodies.

Layout under the account root::

    feeds/<sha1 of feed url>.json   serialized Summary with its abstracts
    articles/<article key>.html     content body
    feed_list.json                  FeedTree
    favorites.json                  ordered favorite ids

Every write goes through a temp file, fsync and ``os.replace`` so a crash
leaves either the previous or the new version of a file, never a torn one.
"""

import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path

from .errors import NotFound, StorageError
from .feed_tree import FeedTree
from .models import Summary

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def feed_key(feed_url: str) -> str:
    """Deterministic storage key for a feed URL."""
    return hashlib.sha1(feed_url.encode("utf-8"), usedforsecurity=False).hexdigest()


def article_key(article_id: str) -> str:
    """Storage key for an article id; ids that are not filename-safe are hashed."""
    if _SAFE_KEY.match(article_id) and article_id not in (".", ".."):
        return article_id
    return "h-" + hashlib.sha1(article_id.encode("utf-8"), usedforsecurity=False).hexdigest()


class ContentStore:
    """Filesystem-backed persistence for a single account."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self._feeds = self.root / "feeds"
        self._articles = self.root / "articles"

    def _write(self, path: Path, text: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def _read_json(self, path: Path):
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e

    # --- Summaries ---

    def put_summary(self, summary: Summary) -> None:
        self._write(self._feeds / f"{feed_key(summary.url)}.json", json.dumps(summary.to_dict()))

    def get_summary(self, feed_url: str) -> Summary | None:
        data = self._read_json(self._feeds / f"{feed_key(feed_url)}.json")
        if data is None:
            return None
        return Summary.from_dict(data)

    def list_feeds(self) -> set[str]:
        """Return the URL of every persisted feed."""
        if not self._feeds.is_dir():
            return set()
        urls = set()
        for path in self._feeds.glob("*.json"):
            data = self._read_json(path)
            if data and "url" in data:
                urls.add(data["url"])
        return urls

    def delete_feed(self, feed_url: str) -> None:
        """Remove a feed summary and the content of every article in its catalog."""
        summary = self.get_summary(feed_url)
        if summary is not None:
            self.delete_articles(summary.catalog)
        self._unlink(self._feeds / f"{feed_key(feed_url)}.json")
        logger.debug("Deleted feed %s", feed_url)

    # --- Content bodies ---

    def put_content(self, article_id: str, body: str) -> None:
        self._write(self._articles / f"{article_key(article_id)}.html", body)

    def get_content(self, article_id: str) -> str:
        path = self._articles / f"{article_key(article_id)}.html"
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFound(f"No cached content for article {article_id}") from None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def has_content(self, article_id: str) -> bool:
        return (self._articles / f"{article_key(article_id)}.html").is_file()

    def delete_articles(self, ids: Iterable[str]) -> None:
        for article_id in ids:
            self._unlink(self._articles / f"{article_key(article_id)}.html")

    # --- Feed tree and favorites ---

    def put_feed_tree(self, tree: FeedTree) -> None:
        self._write(self.root / "feed_list.json", json.dumps(tree.to_dict()))

    def get_feed_tree(self) -> FeedTree | None:
        """Return the persisted tree, or None if this account never saved one."""
        data = self._read_json(self.root / "feed_list.json")
        return FeedTree.from_dict(data) if data is not None else None

    def put_favorites(self, ids: list[str]) -> None:
        self._write(self.root / "favorites.json", json.dumps(list(ids)))

    def get_favorites(self) -> list[str]:
        return [str(i) for i in self._read_json(self.root / "favorites.json") or []]

    def clear(self) -> None:
        """Delete everything persisted for this account."""
        try:
            shutil.rmtree(self.root, ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove {self.root}: {e}") from e
        logger.info("Removed storage at %s", self.root)
