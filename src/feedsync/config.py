"""Configuration management for feedsync.

Runtime settings come from environment variables via pydantic-settings.
Account definitions live in a JSON file owned by the host application; they
are validated here so malformed credentials fail when the file is loaded
rather than on the first network call.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, TypeAdapter
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import StorageError

logger = logging.getLogger(__name__)

INOREADER_DEFAULT_APPID = "999999367"


class Config(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    storage_path: Path = Field(default=Path("~/.feedsync"), alias="FEEDSYNC_STORAGE_PATH")
    accounts_file: Path | None = Field(default=None, alias="FEEDSYNC_ACCOUNTS_FILE")
    fetch_concurrency: int = Field(default=8, ge=1, alias="FEEDSYNC_FETCH_CONCURRENCY")
    request_timeout: float = Field(default=30.0, gt=0, alias="FEEDSYNC_REQUEST_TIMEOUT")
    max_remote_items: int = Field(default=5000, ge=1, alias="FEEDSYNC_MAX_REMOTE_ITEMS")
    page_size: int = Field(default=200, ge=1, alias="FEEDSYNC_PAGE_SIZE")
    server_host: str = Field(default="127.0.0.1", alias="MCP_SERVER_HOST")
    server_port: int = Field(default=8000, alias="MCP_SERVER_PORT")

    model_config = SettingsConfigDict(
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def root(self) -> Path:
        return self.storage_path.expanduser()

    @property
    def accounts_path(self) -> Path:
        if self.accounts_file is not None:
            return self.accounts_file.expanduser()
        return self.root / "accounts.json"


class LocalAccount(BaseModel):
    type: Literal["local"] = "local"
    name: str
    feeds: list[str] = Field(default_factory=list)


class TTRSSAccount(BaseModel):
    type: Literal["ttrss"] = "ttrss"
    name: str
    server: str
    username: str
    password: SecretStr


class InoreaderAccount(BaseModel):
    type: Literal["inoreader"] = "inoreader"
    name: str
    username: str
    password: SecretStr
    appid: str = INOREADER_DEFAULT_APPID
    appkey: SecretStr = SecretStr("")
    server: str = "https://www.inoreader.com"


Account = Annotated[LocalAccount | TTRSSAccount | InoreaderAccount, Field(discriminator="type")]

_accounts_adapter = TypeAdapter(dict[str, Account])


def ttrss_api_url(server: str) -> str:
    """Turn a TTRSS SELF_URL_PATH into its JSON API endpoint."""
    server = server.rstrip("/")
    if server.endswith("/api"):
        return server + "/"
    return server + "/api/"


def load_config() -> Config:
    """Load and validate config from environment."""
    return Config()


def load_accounts(path: Path) -> dict[str, Account]:
    """Read account definitions keyed by account id. A missing file means no accounts."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e
    return _accounts_adapter.validate_json(raw)


def dump_account(account: Account) -> dict:
    data = account.model_dump()
    for key, value in data.items():
        if isinstance(value, SecretStr):
            data[key] = value.get_secret_value()
    return data


def save_accounts(path: Path, accounts: dict[str, Account]) -> None:
    """Persist account definitions atomically."""
    payload = json.dumps({key: dump_account(a) for key, a in accounts.items()}, indent=2)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".accounts-")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}") from e
    logger.debug("Saved %d accounts to %s", len(accounts), path)
