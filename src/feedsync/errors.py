"""Error taxonomy shared by stores, fetch strategies and collections."""


class FeedSyncError(Exception):
    """Base class for all feedsync errors."""


class NetworkError(FeedSyncError):
    """Timeout, connection failure or unexpected HTTP status.

    Never retried in a loop; the next scheduled or manual refresh retries.
    """


class AuthError(FeedSyncError):
    """Raised when a remote session cannot be established or has expired."""


class ParseError(FeedSyncError):
    """Malformed feed or article payload."""


class NotFound(FeedSyncError):
    """Missing feed, article or content body."""


class InvalidFeed(FeedSyncError):
    """A feed could not be validated when it was added."""


class StorageError(FeedSyncError):
    """Local persistence failed."""
