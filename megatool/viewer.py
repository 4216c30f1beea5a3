"""Log viewer: parse structured log lines, merge them, and print them in colour."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.text import Text

from .logstore import LogFile, LogStore
from .timestamps import format_timestamp, now, parse_timestamp

log = logging.getLogger(__name__)

LEVELS = ("debug", "info", "warn", "error", "fatal", "panic")
_LEVEL_ALIASES = {"warning": "warn", "trace": "debug", "critical": "fatal"}

LEVEL_STYLES = {
    "debug": "bright_black",
    "info": "bright_white",
    "warn": "yellow",
    "error": "red",
    "fatal": "red",
    "panic": "red",
}

SERVER_STYLES = {
    "calculator": "cyan",
    "github": "green",
    "package-version": "yellow",
}

PALETTE = (
    "cyan", "green", "yellow", "blue", "magenta", "red",
    "bright_cyan", "bright_green", "bright_yellow", "bright_blue", "bright_magenta",
)


@dataclass
class LogEntry:
    """One log line.  ``fields`` holds every key except timestamp/level/message.

    ``level`` is normalised for display; ``raw_timestamp`` and ``raw_level``
    keep the values as written so ``to_dict`` gives back the original object.
    ``level_key``/``message_key`` are None when the line had no such key.
    """

    timestamp: datetime | None
    level: str = "info"
    message: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    raw_timestamp: Any = None
    raw_level: Any = None
    level_key: str | None = "level"
    message_key: str | None = "message"
    raw: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.raw_timestamp is not None:
            data["timestamp"] = self.raw_timestamp
        elif self.timestamp is not None:
            data["timestamp"] = format_timestamp(self.timestamp)
        if self.level_key is not None:
            data[self.level_key] = self.level if self.raw_level is None else self.raw_level
        if self.message_key is not None:
            data[self.message_key] = self.message
        data.update(self.fields)
        return data


def normalize_level(value: Any) -> str:
    if not isinstance(value, str):
        return "info"
    level = value.strip().lower()
    level = _LEVEL_ALIASES.get(level, level)
    return level if level in LEVELS else "info"


def parse_line(line: str) -> LogEntry | None:
    """Parse one JSON log line; None if it is not a JSON object."""
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    raw_ts = data.pop("timestamp", None)
    timestamp = parse_timestamp(raw_ts) if isinstance(raw_ts, str) else None
    level_key = "level" if "level" in data else None
    raw_level = data.pop("level", None)

    message_key: str | None = "message"
    if isinstance(data.get("message"), str):
        message = data.pop("message")
    elif isinstance(data.get("msg"), str):
        message_key = "msg"
        message = data.pop("msg")
    else:
        message_key = None
        message = ""

    return LogEntry(
        timestamp=timestamp,
        level=normalize_level(raw_level),
        message=message,
        fields=dict(sorted(data.items())),
        raw_timestamp=raw_ts,
        raw_level=raw_level,
        level_key=level_key,
        message_key=message_key,
    )


def raw_entry(line: str) -> LogEntry:
    return LogEntry(timestamp=None, level="info", message=line, raw=True)


def annotate(entry: LogEntry, logfile: LogFile) -> LogEntry:
    """Add ``server``/``pid`` from the file path unless the line carries them."""
    entry.fields.setdefault("server", logfile.server)
    entry.fields.setdefault("pid", logfile.pid)
    return entry


def parse_file_lines(lines: Iterable[str], logfile: LogFile, fallback: datetime) -> list[LogEntry]:
    """Parse lines of one file, giving untimed lines their nearest neighbour's time.

    An entry without a usable timestamp takes the previous timed entry's,
    else the next one's, else ``fallback`` (the file's mtime).
    """
    entries = [annotate(parse_line(line) or raw_entry(line), logfile) for line in lines if line.strip()]

    following: datetime | None = None
    next_times: list[datetime | None] = []
    for entry in reversed(entries):
        if entry.timestamp is not None:
            following = entry.timestamp
        next_times.append(following)
    next_times.reverse()

    previous: datetime | None = None
    for entry, upcoming in zip(entries, next_times):
        if entry.timestamp is None:
            entry.timestamp = previous or upcoming or fallback
        else:
            previous = entry.timestamp
    return entries


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class ColorAssigner:
    """Stable per-server colours: fixed ones first, then round-robin."""

    def __init__(self) -> None:
        self._assigned: dict[str, str] = {}

    def style_for(self, server: str) -> str:
        if server in SERVER_STYLES:
            return SERVER_STYLES[server]
        if server not in self._assigned:
            self._assigned[server] = PALETTE[len(self._assigned) % len(PALETTE)]
        return self._assigned[server]


def format_time(ts: datetime) -> str:
    """Local wall-clock time with milliseconds."""
    ts = ts.astimezone()
    return ts.strftime("%Y-%m-%d %H:%M:%S.") + f"{ts.microsecond // 1000:03d}"


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def format_entry(entry: LogEntry, colors: ColorAssigner) -> Text:
    """``<timestamp> <LEVEL> [<server>:<pid>] <message> k=v ...``"""
    text = Text()
    text.append(format_time(entry.timestamp or now()))
    text.append(" ")
    text.append(entry.level.upper(), style=LEVEL_STYLES.get(entry.level, "white"))
    text.append(" ")

    rest = dict(entry.fields)
    if "server" in rest:
        server = _format_value(rest.pop("server"))
        text.append("[")
        text.append(server, style=colors.style_for(server))
        if "pid" in rest:
            text.append(f":{_format_value(rest.pop('pid'))}")
        text.append("] ")

    text.append(entry.message)
    if rest:
        text.append(" ")
        text.append(" ".join(f"{k}={_format_value(rest[k])}" for k in sorted(rest)))
    return text


def make_console() -> Console:
    return Console(highlight=False, markup=False, emoji=False, soft_wrap=True)


# ---------------------------------------------------------------------------
# Read and follow modes
# ---------------------------------------------------------------------------


def collect_entries(store: LogStore, files: list[LogFile], lines: int) -> list[LogEntry]:
    """Last ``lines`` of each file, merged by timestamp, trimmed to ``lines`` overall."""
    merged: list[LogEntry] = []
    for logfile in sorted(files, key=lambda f: f.path):
        try:
            tail = store.tail_last(logfile.path, lines)
            mtime = datetime.fromtimestamp(logfile.path.stat().st_mtime).astimezone()
        except OSError as exc:
            log.warning("Failed to read log file %s: %s", logfile.path, exc)
            continue
        merged.extend(parse_file_lines(tail, logfile, mtime))

    # Stable sort keeps file-path order for equal timestamps
    merged.sort(key=lambda e: e.timestamp)  # type: ignore[arg-type,return-value]
    return merged[-lines:] if lines > 0 else []


def show_logs(
    store: LogStore,
    files: list[LogFile],
    lines: int,
    console: Console | None = None,
) -> int:
    """Print merged entries; returns how many were printed."""
    console = console or make_console()
    colors = ColorAssigner()
    entries = collect_entries(store, files, lines)
    for entry in entries:
        console.print(format_entry(entry, colors))
    return len(entries)


async def follow_logs(
    store: LogStore,
    files: list[LogFile],
    console: Console | None = None,
    poll_interval: float = 0.25,
) -> None:
    """Print new lines from every file as they arrive, in arrival order."""
    console = console or make_console()
    colors = ColorAssigner()
    console.print("Following logs. Press Ctrl+C to exit.")
    async for logfile, line in store.follow(files, poll_interval=poll_interval):
        if not line.strip():
            continue
        entry = parse_line(line) or raw_entry(line)
        if entry.timestamp is None:
            entry.timestamp = now()
        console.print(format_entry(annotate(entry, logfile), colors))
