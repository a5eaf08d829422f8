"""MCP server entry point for feedsync.

Runs FastMCP with Streamable HTTP transport; every tool operates on the
accounts configured in the accounts file.
"""

import asyncio
import logging
import sys

from fastmcp import FastMCP

from .accounts import AccountManager
from .config import Config, load_config
from .tools import register_tools

logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def serve(config: Config) -> None:
    """Serve the MCP tools until the transport stops, then close every account."""
    manager = AccountManager(config)

    mcp = FastMCP("feedsync")
    register_tools(mcp, manager)

    logger.info(
        "Starting feedsync MCP server on %s:%d (streamable-http), storage at %s",
        config.server_host,
        config.server_port,
        config.root,
    )
    try:
        await mcp.run_async(
            transport="streamable-http",
            host=config.server_host,
            port=config.server_port,
        )
    finally:
        logger.info("Shutting down, closing connections...")
        await manager.close()


def main() -> None:
    """Run the feedsync MCP server."""
    config = load_config()
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
