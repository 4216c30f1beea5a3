"""Binary locator: finds ``megatool-<server>`` executables."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

from .errors import NotFoundError

BINARY_PREFIX = "megatool-"

# Windows console scripts carry an extension; POSIX ones do not.
_EXTENSIONS = (".exe", ".cmd", ".bat") if sys.platform == "win32" else ()


def binary_name(server: str) -> str:
    return f"{BINARY_PREFIX}{server}"


def locate(name: str, bin_dir: Path) -> Path:
    """Resolve an executable by name.

    Looks next to the front-end first (``bin_dir``), then on ``PATH``.
    Raises NotFoundError if neither has it.
    """
    for candidate in [name, *(name + ext for ext in _EXTENSIONS)]:
        path = bin_dir / candidate
        if path.is_file():
            return path

    found = shutil.which(name)
    if found:
        return Path(found)
    raise NotFoundError(f"executable '{name}' not found in {bin_dir} or PATH")


def available_servers(bin_dir: Path) -> list[str]:
    """Return server names for every ``megatool-*`` file beside the front-end."""
    try:
        entries = list(bin_dir.iterdir())
    except FileNotFoundError:
        return []

    servers: set[str] = set()
    for entry in entries:
        if not entry.name.startswith(BINARY_PREFIX) or entry.is_dir():
            continue
        stem = entry.name[len(BINARY_PREFIX):]
        for ext in _EXTENSIONS:
            if stem.lower().endswith(ext):
                stem = stem[: -len(ext)]
                break
        # Skip pip's "<script>-script.py" shims on Windows
        if stem and not stem.endswith("-script.py"):
            servers.add(stem)
    return sorted(servers)
