"""Registry of accounts and their collections."""

import asyncio
import logging
import uuid

from pydantic import SecretStr

from .collection import Collection, RefreshGuard
from .config import (
    INOREADER_DEFAULT_APPID,
    Account,
    Config,
    InoreaderAccount,
    LocalAccount,
    TTRSSAccount,
    load_accounts,
    save_accounts,
    ttrss_api_url,
)
from .errors import NotFound
from .fetchers import create_strategy
from .models import UNREAD, BatchResult, CommitResult
from .store import ContentStore

logger = logging.getLogger(__name__)


class AccountManager:
    """Owns one Collection per configured account.

    Account definitions are written back to the accounts file on every change;
    each account's cache lives in ``<storage root>/<account key>``.
    """

    def __init__(self, config: Config):
        self.config = config
        self.accounts: dict[str, Account] = {}
        self.collections: dict[str, Collection] = {}
        self.refresh_guard = RefreshGuard()
        self._init_lock = asyncio.Lock()
        self._ready = False

    def _build(self, key: str, account: Account) -> Collection:
        seed = account.feeds if isinstance(account, LocalAccount) else ()
        return Collection(
            key,
            account.name,
            ContentStore(self.config.root / key),
            create_strategy(account, self.config),
            seed_feeds=seed,
        )

    async def init(self) -> None:
        """Load accounts, creating a default local one if there are none."""
        self.accounts = load_accounts(self.config.accounts_path)
        if not self.accounts:
            self._add_account(LocalAccount(name="Default"))

        for key, account in self.accounts.items():
            if key in self.collections:
                continue
            collection = self._build(key, account)
            await collection.init()
            self.collections[key] = collection

        for key in list(self.collections):
            if key not in self.accounts:
                await self.collections.pop(key).close()
        self._ready = True

    async def ensure_ready(self) -> None:
        async with self._init_lock:
            if not self._ready:
                await self.init()

    def get(self, key: str | None = None) -> Collection:
        """Collection for ``key``; the first account when ``key`` is None."""
        if key is None:
            if not self.collections:
                raise NotFound("No accounts configured")
            return next(iter(self.collections.values()))
        try:
            return self.collections[key]
        except KeyError:
            raise NotFound(f"No account {key}") from None

    # --- Account definitions ---

    def _add_account(self, account: Account) -> str:
        key = str(uuid.uuid1())
        self.accounts[key] = account
        save_accounts(self.config.accounts_path, self.accounts)
        logger.info("Created %s account %r (%s)", account.type, account.name, key)
        return key

    async def _activate(self, key: str) -> Collection:
        collection = self._build(key, self.accounts[key])
        await collection.init()
        self.collections[key] = collection
        return collection

    async def create_local_account(self, name: str, feeds: list[str] | None = None) -> str:
        key = self._add_account(LocalAccount(name=name, feeds=feeds or []))
        await self._activate(key)
        return key

    async def create_ttrss_account(
        self, name: str, server: str, username: str, password: str
    ) -> str:
        account = TTRSSAccount(
            name=name,
            server=ttrss_api_url(server),
            username=username,
            password=SecretStr(password),
        )
        key = self._add_account(account)
        await self._activate(key)
        return key

    async def create_inoreader_account(
        self,
        name: str,
        username: str,
        password: str,
        appid: str = INOREADER_DEFAULT_APPID,
        appkey: str = "",
    ) -> str:
        account = InoreaderAccount(
            name=name,
            username=username,
            password=SecretStr(password),
            appid=appid,
            appkey=SecretStr(appkey),
        )
        key = self._add_account(account)
        await self._activate(key)
        return key

    async def remove_account(self, key: str) -> None:
        """Delete an account and everything cached for it."""
        collection = self.collections.pop(key, None)
        if collection is None:
            raise NotFound(f"No account {key}")
        await collection.clean()
        self.accounts.pop(key, None)
        save_accounts(self.config.accounts_path, self.accounts)
        logger.info("Removed account %r (%s)", collection.name, key)

    def rename_account(self, key: str, name: str) -> None:
        collection = self.get(key)
        self.accounts[key] = self.accounts[key].model_copy(update={"name": name})
        collection.name = name
        save_accounts(self.config.accounts_path, self.accounts)

    async def modify_account(self, key: str, **changes) -> None:
        """Update credentials or server of an account and reconnect it."""
        old = self.get(key)
        account = self.accounts[key]
        for field in ("password", "appkey"):
            if field in changes and not isinstance(changes[field], SecretStr):
                changes[field] = SecretStr(changes[field])
        if isinstance(account, TTRSSAccount) and "server" in changes:
            changes["server"] = ttrss_api_url(changes["server"])
        self.accounts[key] = account.model_validate({**account.model_dump(), **changes})
        save_accounts(self.config.accounts_path, self.accounts)
        await old.close()
        await self._activate(key)

    # --- Refresh scopes ---

    async def refresh_all(self, force: bool = True) -> dict[str, BatchResult | None] | None:
        """Refresh every account concurrently. Ignored if an app-wide refresh is running."""
        with self.refresh_guard.hold() as acquired:
            if not acquired:
                logger.info("Refresh already running, ignoring request")
                return None
            keys = list(self.collections)
            results = await asyncio.gather(*(self.collections[k].refresh(force) for k in keys))
            return dict(zip(keys, results))

    async def refresh_account(
        self, key: str | None = None, force: bool = True
    ) -> BatchResult | None:
        if self.refresh_guard.running:
            logger.info("Refresh already running, ignoring request")
            return None
        return await self.get(key).refresh(force)

    async def refresh_one(self, key: str | None, feed_url: str):
        """Force-fetch a single feed; returns None if a refresh is running."""
        collection = self.get(key)
        if self.refresh_guard.running:
            return None
        with collection.refresh_guard.hold() as acquired:
            if not acquired:
                return None
            return await collection.fetch_one(feed_url, force=True)

    async def mark_account_read(self, key: str | None = None) -> CommitResult:
        return await self.get(key).mark_all_read(UNREAD)

    async def close(self) -> None:
        for collection in self.collections.values():
            await collection.close()
