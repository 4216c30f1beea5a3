"""Client-config installer: writes a ``megatool run`` entry into an MCP client's config."""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigError, StorageError, UnsupportedClientError

log = logging.getLogger(__name__)

FRONTEND_COMMAND = "megatool"

_CLINE_SETTINGS = (
    "Code", "User", "globalStorage", "saoudrizwan.claude-dev", "settings",
    "cline_mcp_settings.json",
)
_CLAUDE_DESKTOP = ("Claude", "claude_desktop_config.json")


class ClientType(str, Enum):
    CLINE = "cline"
    CLAUDE_DESKTOP = "claude-desktop"


SUPPORTED_CLIENTS = [c.value for c in ClientType]


class ServerEntry(BaseModel):
    """One ``mcpServers`` value in a client config."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)
    command: str
    args: list[str] = []
    env: dict[str, str] = {}
    disabled: bool = False
    auto_approve: list[str] = Field(default_factory=list, alias="autoApprove")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def parse_client(value: str) -> ClientType:
    try:
        return ClientType(value)
    except ValueError:
        raise UnsupportedClientError(value) from None


def _os_family(platform: str) -> str:
    if platform == "darwin":
        return "darwin"
    if platform in ("win32", "cygwin"):
        return "windows"
    if platform.startswith("linux"):
        return "linux"
    return platform


def client_config_path(
    client: ClientType | str,
    platform: str | None = None,
    home: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Where ``client`` keeps its MCP server config on this OS family."""
    client = parse_client(client) if isinstance(client, str) else client
    family = _os_family(platform or sys.platform)
    home = home or Path.home()
    env = os.environ if env is None else env

    if family == "darwin":
        base = home / "Library" / "Application Support"
    elif family == "linux":
        base = home / ".config"
    elif family == "windows":
        appdata = env.get("APPDATA")
        if not appdata:
            raise UnsupportedClientError(client.value, "APPDATA is not set")
        base = Path(appdata)
    else:
        raise UnsupportedClientError(client.value, f"unsupported operating system: {family}")

    parts = _CLINE_SETTINGS if client is ClientType.CLINE else _CLAUDE_DESKTOP
    return base.joinpath(*parts)


def server_entry(server_name: str, client: str = "") -> ServerEntry:
    args = ["run"]
    if client:
        args += ["--client", client]
    args.append(server_name)
    return ServerEntry(command=FRONTEND_COMMAND, args=args)


def read_client_config(path: Path) -> dict[str, Any]:
    """Load the raw config object; a missing file is an empty config."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise StorageError(f"failed to read config file {path}: {exc}", path=path) from exc
    try:
        data = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse config file {path}: {exc}", path=path) from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object", path=path)
    return data


def install(client: ClientType | str, server_name: str, path: Path | None = None) -> Path:
    """Add or replace ``mcpServers[server_name]``, leaving every other key alone.

    Returns the path written.
    """
    client = parse_client(client) if isinstance(client, str) else client
    path = path or client_config_path(client)

    data = read_client_config(path)
    servers = data.get("mcpServers")
    if servers is None:
        servers = {}
    elif not isinstance(servers, dict):
        raise ConfigError(f"'mcpServers' in {path} must be a JSON object", path=path)

    servers[server_name] = server_entry(server_name, client.value).to_json()
    data["mcpServers"] = servers

    try:
        path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as exc:
        log.warning("Failed to create config directory %s: %s", path.parent, exc)
    try:
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"failed to write config file {path}: {exc}", path=path) from exc
    return path
