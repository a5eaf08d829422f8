"""Hierarchical folders of feed URLs."""

from collections.abc import Iterator
from dataclasses import dataclass, field


@dataclass
class FeedTree:
    """A folder holding child folders and leaf feed URLs.

    The root folder has an empty name. Folder names are unique among
    siblings and a feed URL appears at most once in the whole tree.
    """

    name: str = ""
    folders: list["FeedTree"] = field(default_factory=list)
    feeds: list[str] = field(default_factory=list)

    def walk(self) -> Iterator[str]:
        """Yield every feed URL, depth first."""
        yield from self.feeds
        for folder in self.folders:
            yield from folder.walk()

    def entries(self, path: tuple[str, ...] = ()) -> Iterator[tuple[str, tuple[str, ...]]]:
        """Yield ``(feed_url, folder_path)`` pairs."""
        for url in self.feeds:
            yield url, path
        for folder in self.folders:
            yield from folder.entries(path + (folder.name,))

    def __contains__(self, feed_url: str) -> bool:
        return self.find(feed_url) is not None

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())

    def find(self, feed_url: str) -> tuple[str, ...] | None:
        """Return the folder path of a feed, or None if absent."""
        for url, path in self.entries():
            if url == feed_url:
                return path
        return None

    def folder(self, path: tuple[str, ...] | list[str]) -> "FeedTree":
        """Return the folder at ``path``, creating missing folders."""
        node = self
        for name in path:
            for child in node.folders:
                if child.name == name:
                    node = child
                    break
            else:
                child = FeedTree(name=name)
                node.folders.append(child)
                node = child
        return node

    def insert(self, feed_url: str, path: tuple[str, ...] = ()) -> bool:
        """Add a feed under ``path``. Returns False if it is already present."""
        if feed_url in self:
            return False
        self.folder(path).feeds.append(feed_url)
        return True

    def remove(self, feed_url: str) -> bool:
        """Remove a feed and prune folders left empty. Returns True if found."""
        if feed_url in self.feeds:
            self.feeds.remove(feed_url)
            return True
        for child in list(self.folders):
            if child.remove(feed_url):
                if not child.feeds and not child.folders:
                    self.folders.remove(child)
                return True
        return False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "folders": [f.to_dict() for f in self.folders],
            "feeds": list(self.feeds),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeedTree":
        tree = cls(name=data.get("name", ""))
        for child in data.get("folders", []):
            folder = cls.from_dict(child)
            # Merge duplicate sibling names instead of keeping both.
            existing = next((f for f in tree.folders if f.name == folder.name), None)
            if existing is None:
                tree.folders.append(folder)
            else:
                existing.folders.extend(folder.folders)
                existing.feeds.extend(u for u in folder.feeds if u not in existing.feeds)
        for url in data.get("feeds", []):
            if url not in tree.feeds:
                tree.feeds.append(url)
        return tree

    @classmethod
    def from_entries(cls, entries: list[tuple[str, tuple[str, ...]]]) -> "FeedTree":
        tree = cls()
        for url, path in entries:
            tree.insert(url, tuple(path))
        return tree
