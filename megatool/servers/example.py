"""megatool-example: a minimal server with a single echo tool."""

from __future__ import annotations

import logging

from mcp.server.fastmcp import FastMCP

from . import _base

log = logging.getLogger(__name__)

NAME = "example"


def create_server() -> FastMCP:
    mcp = _base.create_server("Example", instructions="Echoes messages back. Useful for testing clients.")

    @mcp.tool()
    async def echo(message: str) -> str:
        """Echo a message back to the caller.

        Args:
            message: Text to echo.
        """
        log.info("Echo requested", extra={"length": len(message)})
        return f"Echo: {message}"

    return mcp


def main(argv: list[str] | None = None) -> int:
    return _base.serve(create_server(), NAME, "Example MCP server", argv)


if __name__ == "__main__":
    raise SystemExit(main())
