from __future__ import annotations

import json
import os
import sys
import sysconfig
from dataclasses import asdict, dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError, NotFoundError, StorageError

REGISTRY_FILE_NAME = "running-servers.json"
SERVER_CONFIG_FILE_NAME = "config.json"


def _user_config_home() -> Path:
    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        if appdata:
            return Path(appdata)
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".config"


def _default_bin_dir() -> Path:
    """Directory holding the running front-end script (and its sibling servers).

    Under ``python -m megatool`` argv[0] is the package's ``__main__.py``, so
    the interpreter's scripts directory is used instead.
    """
    script = Path(sys.argv[0]) if sys.argv and sys.argv[0] else None
    if script is not None and script.name.startswith("megatool") and script.suffix != ".py":
        return script.resolve().parent
    return Path(sysconfig.get_path("scripts"))


@dataclass(frozen=True)
class Config:
    log_root: Path = field(default_factory=lambda: Path.home() / ".megatool" / "logs")
    config_dir: Path = field(default_factory=lambda: _user_config_home() / "megatool")
    bin_dir: Path = field(default_factory=_default_bin_dir)
    log_level: str = "WARNING"

    @property
    def registry_path(self) -> Path:
        return self.config_dir / REGISTRY_FILE_NAME

    def server_config_path(self, server: str) -> Path:
        return self.config_dir / server / SERVER_CONFIG_FILE_NAME

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        load_dotenv(env_path)

        log_dir = os.getenv("MEGATOOL_LOG_DIR")
        config_dir = os.getenv("MEGATOOL_CONFIG_DIR")
        bin_dir = os.getenv("MEGATOOL_BIN_DIR")

        defaults = cls()
        return cls(
            log_root=Path(log_dir).expanduser() if log_dir else defaults.log_root,
            config_dir=Path(config_dir).expanduser() if config_dir else defaults.config_dir,
            bin_dir=Path(bin_dir).expanduser() if bin_dir else defaults.bin_dir,
            log_level=os.getenv("MEGATOOL_LOG_LEVEL", "WARNING").upper(),
        )


# ---------------------------------------------------------------------------
# Per-server settings (non-sensitive; credentials live elsewhere)
# ---------------------------------------------------------------------------


@dataclass
class ServerSettings:
    api_endpoint: str | None = None
    username: str | None = None

    def to_dict(self) -> dict[str, str]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def is_configured(config: Config, server: str) -> bool:
    return config.server_config_path(server).is_file()


def load_server_settings(config: Config, server: str) -> ServerSettings:
    path = config.server_config_path(server)
    if not path.exists():
        raise NotFoundError("configuration file not found, please run with --configure flag")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse config file: {exc}", path=path) from exc
    except OSError as exc:
        raise StorageError(f"failed to read config file {path}: {exc}", path=path) from exc
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a JSON object", path=path)

    return ServerSettings(
        api_endpoint=data.get("api_endpoint"),
        username=data.get("username"),
    )


def save_server_settings(config: Config, server: str, settings: ServerSettings) -> Path:
    path = config.server_config_path(server)
    try:
        path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        path.write_text(json.dumps(settings.to_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"failed to write config file {path}: {exc}", path=path) from exc
    return path
