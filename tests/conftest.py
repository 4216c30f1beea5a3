import subprocess
import sys
from pathlib import Path

import pytest

from megatool.config import Config

ENV_VARS = (
    "MEGATOOL_LOG_DIR",
    "MEGATOOL_CONFIG_DIR",
    "MEGATOOL_BIN_DIR",
    "MEGATOOL_LOG_LEVEL",
    "MCP_SERVER_MODE",
    "MCP_SERVER_PORT",
    "MCP_SERVER_BASE_URL",
    "MCP_HELP_MODE",
    "FORCE_COLOR",
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX only")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    # setenv first so the later delete is undone even if .env loading sets it
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        log_root=tmp_path / "logs",
        config_dir=tmp_path / "config",
        bin_dir=tmp_path / "bin",
    )


@pytest.fixture
def dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def sleeper():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait()


class FakeLiveness:
    """Stand-in for process.alive backed by an explicit set of live pids."""

    def __init__(self, *pids: int) -> None:
        self.pids = set(pids)

    def __call__(self, pid: int) -> bool:
        return pid in self.pids
