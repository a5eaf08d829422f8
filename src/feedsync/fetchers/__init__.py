"""Fetch strategies, one per backend kind."""

from ..config import Account, Config, InoreaderAccount, LocalAccount, TTRSSAccount
from .base import FetchStrategy, RemoteSession, SessionState
from .inoreader import InoreaderFetch
from .local import LocalFetch
from .ttrss import TTRSSFetch


def create_strategy(account: Account, config: Config) -> FetchStrategy:
    """Build the strategy matching ``account.type``."""
    if isinstance(account, LocalAccount):
        return LocalFetch(concurrency=config.fetch_concurrency, timeout=config.request_timeout)
    if isinstance(account, TTRSSAccount):
        return TTRSSFetch(
            api_url=account.server,
            username=account.username,
            password=account.password.get_secret_value(),
            timeout=config.request_timeout,
            page_size=config.page_size,
            max_items=config.max_remote_items,
        )
    if isinstance(account, InoreaderAccount):
        return InoreaderFetch(
            username=account.username,
            password=account.password.get_secret_value(),
            appid=account.appid,
            appkey=account.appkey.get_secret_value(),
            server=account.server,
            timeout=config.request_timeout,
            page_size=config.page_size,
            max_items=config.max_remote_items,
        )
    raise ValueError(f"Unknown account type: {account.type}")


__all__ = [
    "FetchStrategy",
    "RemoteSession",
    "SessionState",
    "LocalFetch",
    "TTRSSFetch",
    "InoreaderFetch",
    "create_strategy",
]
