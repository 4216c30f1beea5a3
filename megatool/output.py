"""Operator-facing messages.

Errors always go to stderr with an ``Error:`` prefix.  Info goes to stdout
by default, but ``run`` sends it to stderr because stdout carries the
Protocol stream there.
"""

from __future__ import annotations

import sys
from typing import TextIO


def print_error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr, flush=True)


def print_info(message: str, file: TextIO | None = None) -> None:
    print(message, file=file or sys.stdout, flush=True)


def format_bytes(size: int) -> str:
    """Human-readable size in 1024 units: ``512 B``, ``1.5 KB``, ``10.0 MB``."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB", "TB", "PB"):
        value /= 1024
        if value < 1024 or unit == "PB":
            return f"{value:.1f} {unit}"
    return f"{value:.1f} PB"
