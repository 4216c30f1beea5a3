"""Shared plumbing for bundled tool servers: FastMCP setup, JSON logging, transports.

A server runs over stdio by default.  When the supervisor passes
``MCP_SERVER_MODE=sse`` it serves the SSE transport with uvicorn instead:

    GET  /sse        long-lived event stream
    POST /message/   client-to-server messages
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import uvicorn
from mcp.server.fastmcp import FastMCP

from megatool import __version__
from megatool.config import Config, ServerSettings, load_server_settings, save_server_settings
from megatool.errors import MegatoolError, NotFoundError

log = logging.getLogger(__name__)

DEFAULT_PORT = 8080
SSE_PATH = "/sse"
MESSAGE_PATH = "/message/"

_LEVEL_NAMES = {"WARNING": "warn", "CRITICAL": "fatal"}
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


def help_mode() -> bool:
    return os.getenv("MCP_HELP_MODE") == "true"


def sse_mode() -> bool:
    return os.getenv("MCP_SERVER_MODE") == "sse"


def create_server(name: str, instructions: str) -> FastMCP:
    """FastMCP instance with the SSE endpoints and port taken from the environment."""
    port = int(os.getenv("MCP_SERVER_PORT") or DEFAULT_PORT)
    return FastMCP(
        name=name,
        instructions=instructions,
        host="127.0.0.1",
        port=port,
        sse_path=SSE_PATH,
        message_path=MESSAGE_PATH,
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, with any ``extra=`` fields inlined."""

    def __init__(self, server: str) -> None:
        super().__init__()
        self.server = server

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).astimezone().isoformat(timespec="microseconds"),
            "level": _LEVEL_NAMES.get(record.levelname, record.levelname.lower()),
            "message": record.getMessage(),
            "server": self.server,
            "pid": os.getpid(),
            "logger": record.name,
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class _SuppressDisconnect(logging.Filter):
    """SSE clients that hang up mid-response are routine; log them at DEBUG without a traceback."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info and record.exc_info[1] is not None:
            if "ClosedResourceError" in repr(record.exc_info[1]):
                record.levelno = logging.DEBUG
                record.levelname = "DEBUG"
                record.msg = "Client disconnected before response completed"
                record.args = None
                record.exc_info = None
                record.exc_text = None
        return True


def setup_logging(server: str, level: int = logging.INFO) -> None:
    """Send JSON logs to stderr, where the supervisor picks them up.

    Skipped in help mode so ``--help`` output stays clean.
    """
    if help_mode():
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonLogFormatter(server))
    # FastMCP installs its own root handler on construction; replace it
    logging.basicConfig(level=level, handlers=[handler], force=True)
    logging.getLogger("mcp.server.sse").addFilter(_SuppressDisconnect())


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _prompt(label: str, current: str | None) -> str | None:
    suffix = f" [{current}]" if current else ""
    answer = input(f"{label}{suffix}: ").strip()
    return answer or current


def configure(server: str, config: Config | None = None) -> int:
    """Interactively collect non-sensitive settings and save them."""
    config = config or Config.from_env()
    try:
        current = load_server_settings(config, server)
    except NotFoundError:
        current = ServerSettings()

    print(f"Configuring {server}")
    try:
        settings = ServerSettings(
            api_endpoint=_prompt("API endpoint", current.api_endpoint),
            username=_prompt("Username", current.username),
        )
    except EOFError:
        print("Configuration cancelled", file=sys.stderr)
        return 1

    path = save_server_settings(config, server, settings)
    print(f"Configuration saved to {path}")
    return 0


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


async def _announce_ready(uvi: uvicorn.Server, port: int, base_url: str) -> None:
    while not uvi.started:
        await asyncio.sleep(0.05)
    log.info("SSE server listening", extra={"port": port, "base_url": base_url})


async def serve_sse(mcp: FastMCP) -> None:
    port = mcp.settings.port
    base_url = os.getenv("MCP_SERVER_BASE_URL") or f"http://localhost:{port}"

    config = uvicorn.Config(
        mcp.sse_app(), host=mcp.settings.host, port=port, log_level="warning", log_config=None,
    )
    uvi = uvicorn.Server(config)

    ready = asyncio.create_task(_announce_ready(uvi, port, base_url))
    try:
        await uvi.serve()
    finally:
        ready.cancel()


def serve(mcp: FastMCP, server: str, description: str, argv: list[str] | None = None) -> int:
    """Entry point shared by every bundled server's ``main``."""
    parser = argparse.ArgumentParser(prog=f"megatool-{server}", description=description)
    parser.add_argument("--configure", action="store_true", help="Configure the server and exit")
    parser.add_argument("--version", action="version", version=f"megatool-{server} {__version__}")
    args = parser.parse_args(argv)

    if args.configure:
        try:
            return configure(server)
        except MegatoolError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    setup_logging(server)
    if sse_mode():
        log.info("Starting %s MCP server (SSE)", server)
        asyncio.run(serve_sse(mcp))
    else:
        log.info("Starting %s MCP server (stdio)", server)
        mcp.run("stdio")
    return 0
