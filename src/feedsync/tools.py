"""MCP tool definitions over the account manager.

Each tool does exactly one thing. All exceptions are caught at the
tool boundary and returned as "Error: ..." strings so the MCP protocol
never sees an uncaught exception.
"""

import json
import logging
from datetime import timedelta

from fastmcp import FastMCP

from .accounts import AccountManager
from .models import UNREAD

logger = logging.getLogger(__name__)


def _truncate(text: str, max_length: int) -> str:
    """Truncate text to max_length at a word boundary."""
    if len(text) <= max_length:
        return text
    return text[:max_length].rsplit(" ", 1)[0] + "..."


def register_tools(mcp: FastMCP, manager: AccountManager) -> None:
    """Register all feedsync tools on the given MCP server instance."""

    @mcp.tool()
    async def list_accounts() -> str:
        """List configured accounts with their backend type and unread counts."""
        try:
            await manager.ensure_ready()
            result = [
                {"key": key, "name": c.name, "type": c.kind, "unread_count": c.unread_count()}
                for key, c in manager.collections.items()
            ]
            return json.dumps(result)
        except Exception as e:
            logger.error("list_accounts failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def list_feeds(account: str | None = None) -> str:
        """List the feeds of an account with folder path and unread count.

        Args:
            account: Account key (default: first account).
        """
        try:
            await manager.ensure_ready()
            collection = manager.get(account)
            result = [
                {
                    "url": entry.feed_url,
                    "title": entry.title,
                    "link": entry.link,
                    "folder": "/".join(entry.folder),
                    "unread_count": collection.unread_count(entry.feed_url),
                }
                for entry in collection.get_feed_entries()
            ]
            return json.dumps(result)
        except Exception as e:
            logger.error("list_feeds failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def get_articles(feed: str = UNREAD, account: str | None = None, limit: int = 20) -> str:
        """Get articles of a feed, newest first.

        Args:
            feed: Feed URL, or "<unread>" for unread articles across all feeds.
            account: Account key (default: first account).
            limit: Maximum number of articles to return (default 20).
        """
        try:
            await manager.ensure_ready()
            articles = manager.get(account).get_articles(feed)[:limit]
            return json.dumps([a.to_dict() for a in articles])
        except Exception as e:
            logger.error("get_articles failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def get_favorites(account: str | None = None) -> str:
        """Get favorite articles of an account."""
        try:
            await manager.ensure_ready()
            return json.dumps([a.to_dict() for a in manager.get(account).get_favorites()])
        except Exception as e:
            logger.error("get_favorites failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def read_article(
        article_id: str, account: str | None = None, max_length: int = 20000
    ) -> str:
        """Return an article's content and mark it as read.

        Args:
            article_id: ID of the article.
            account: Account key (default: first account).
            max_length: Maximum characters of content to return (default 20000).
        """
        try:
            await manager.ensure_ready()
            collection = manager.get(account)
            content = await collection.get_content(article_id)
            result = await collection.update_abstract(article_id, read=True).commit()
            d = collection.get_abstract(article_id).to_dict()
            d["content"] = _truncate(content, max_length)
            if not result.ok:
                d["warning"] = "read state not yet synced upstream"
            return json.dumps(d)
        except Exception as e:
            logger.error("read_article failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def mark_as_read(article_ids: list[str], account: str | None = None) -> str:
        """Mark articles as read. Returns "OK" on success or an error message."""
        try:
            await manager.ensure_ready()
            collection = manager.get(account)
            for article_id in article_ids:
                collection.update_abstract(article_id, read=True)
            result = await collection.commit()
            return "OK" if result.ok else f"Partial: {len(result.failed)} changes pending"
        except Exception as e:
            logger.error("mark_as_read failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def mark_as_unread(article_ids: list[str], account: str | None = None) -> str:
        """Mark articles as unread. Returns "OK" on success or an error message."""
        try:
            await manager.ensure_ready()
            collection = manager.get(account)
            for article_id in article_ids:
                collection.update_abstract(article_id, read=False)
            result = await collection.commit()
            return "OK" if result.ok else f"Partial: {len(result.failed)} changes pending"
        except Exception as e:
            logger.error("mark_as_unread failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def mark_all_read(feed: str = UNREAD, account: str | None = None) -> str:
        """Mark every article of a feed (or every unread article) as read."""
        try:
            await manager.ensure_ready()
            result = await manager.get(account).mark_all_read(feed)
            return "OK" if result.ok else f"Partial: {len(result.failed)} changes pending"
        except Exception as e:
            logger.error("mark_all_read failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def star_article(article_id: str, account: str | None = None) -> str:
        """Add an article to favorites."""
        try:
            await manager.ensure_ready()
            await manager.get(account).add_to_favorites(article_id)
            return "OK"
        except Exception as e:
            logger.error("star_article failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def unstar_article(article_id: str, account: str | None = None) -> str:
        """Remove an article from favorites."""
        try:
            await manager.ensure_ready()
            await manager.get(account).remove_from_favorites(article_id)
            return "OK"
        except Exception as e:
            logger.error("unstar_article failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def refresh(account: str | None = None) -> str:
        """Fetch new articles for one account, or for all accounts when none is given."""
        try:
            await manager.ensure_ready()
            if account is None:
                results = await manager.refresh_all()
                if results is None:
                    return "Refresh already running"
                return json.dumps({k: r.to_dict() if r else None for k, r in results.items()})
            result = await manager.refresh_account(account)
            if result is None:
                return "Refresh already running"
            return json.dumps(result.to_dict())
        except Exception as e:
            logger.error("refresh failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def add_feed(url: str, account: str | None = None) -> str:
        """Subscribe to a feed after validating it with one fetch."""
        try:
            await manager.ensure_ready()
            summary = await manager.get(account).add_feed(url)
            return json.dumps(
                {"url": summary.url, "title": summary.title, "articles": len(summary.catalog)}
            )
        except Exception as e:
            logger.error("add_feed failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def remove_feed(url: str, account: str | None = None) -> str:
        """Unsubscribe from a feed and delete its cached articles."""
        try:
            await manager.ensure_ready()
            await manager.get(account).del_feed(url)
            return "OK"
        except Exception as e:
            logger.error("remove_feed failed: %s", e, exc_info=True)
            return f"Error: {e}"

    @mcp.tool()
    async def clean_old_articles(
        days: int, feed: str | None = None, account: str | None = None
    ) -> str:
        """Delete read articles older than ``days``. Unread and favorite articles are kept.

        Args:
            days: Age threshold in days.
            feed: Feed URL (default: every feed of the account).
            account: Account key (default: first account).
        """
        try:
            await manager.ensure_ready()
            collection = manager.get(account)
            max_age = timedelta(days=days)
            if feed is None:
                removed = collection.clean_all_old_articles(max_age)
            else:
                removed = collection.clean_old_articles(feed, max_age)
            return json.dumps({"removed": removed})
        except Exception as e:
            logger.error("clean_old_articles failed: %s", e, exc_info=True)
            return f"Error: {e}"
