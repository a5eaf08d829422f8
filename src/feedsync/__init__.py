"""feedsync: multi-backend feed collections with a durable local cache."""

from .accounts import AccountManager
from .collection import Collection, RefreshGuard
from .errors import (
    AuthError,
    FeedSyncError,
    InvalidFeed,
    NetworkError,
    NotFound,
    ParseError,
    StorageError,
)
from .feed_tree import FeedTree
from .models import UNREAD, Abstract, BatchResult, CommitResult, OutlineEntry, Summary
from .store import ContentStore

__all__ = [
    "AccountManager",
    "Collection",
    "RefreshGuard",
    "ContentStore",
    "FeedTree",
    "Abstract",
    "Summary",
    "BatchResult",
    "CommitResult",
    "OutlineEntry",
    "UNREAD",
    "FeedSyncError",
    "NetworkError",
    "AuthError",
    "ParseError",
    "NotFound",
    "InvalidFeed",
    "StorageError",
]

__version__ = "0.1.0"
